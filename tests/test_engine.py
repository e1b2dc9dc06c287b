"""Tests for the approval bot poll loop."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import (
    SERVICE_SETTINGS,
    FakeServices,
    make_bot,
    make_message,
    make_query,
    make_user,
    read_document,
    write_document,
)
from telegram import Update
from telegram.error import Conflict

from src.clients.telegram import ChatClient
from src.config import settings
from src.storage.documents import DocumentKey, JsonFileStore
from src.workflow.engine import WorkflowEngine, split_command
from src.workflow.messages import DELETE_USAGE, NOT_AUTHORIZED, START_REPLY


class ChatFactory:
    """Hands out chat clients over mock bots, one per token."""

    def __init__(self):
        self.tokens: list[str] = []
        self.bots: list[AsyncMock] = []

    def __call__(self, token: str) -> ChatClient:
        bot = make_bot()
        self.tokens.append(token)
        self.bots.append(bot)
        return ChatClient(token, bot=bot)

    @property
    def bot(self) -> AsyncMock:
        return self.bots[-1]


@pytest.fixture
def chats() -> ChatFactory:
    return ChatFactory()


@pytest.fixture
def engine(store: JsonFileStore, chats: ChatFactory, services: FakeServices) -> WorkflowEngine:
    write_document(store, DocumentKey.SETTINGS, SERVICE_SETTINGS)
    http = httpx.AsyncClient(transport=services.transport)
    return WorkflowEngine(store, chat_factory=chats, transport=services.transport, http=http)


def text_update(update_id: int, text: str, user_id: int = 111) -> Update:
    message = make_message(chat_id=user_id, text=text, from_user=make_user(user_id))
    return Update(update_id=update_id, message=message)


def replies(bot: AsyncMock) -> list[str]:
    return [call.kwargs["text"] for call in bot.send_message.await_args_list]


class TestSplitCommand:
    """Tests for split_command."""

    def test_plain_and_addressed(self):
        assert split_command("/start") == ("/start", "")
        assert split_command("/delete_request@gate_bot  m1 ") == ("/delete_request", "m1")
        assert split_command("/START") == ("/start", "")


class TestStep:
    """Tests for one loop iteration."""

    async def test_without_token_idles(self, store: JsonFileStore, chats: ChatFactory):
        write_document(store, DocumentKey.SETTINGS, {**SERVICE_SETTINGS, "telegramBotToken": ""})
        engine = WorkflowEngine(store, chat_factory=chats, http=httpx.AsyncClient())
        assert await engine.step() == settings.bot_error_sleep
        assert chats.tokens == []

    async def test_routes_updates_and_advances_cursor(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        assert await engine.step() == settings.bot_idle_sleep
        bot = chats.bot
        assert bot.get_updates.await_args.kwargs["offset"] == 1

        bot.get_updates.return_value = (
            text_update(7, "/start"),
            Update(update_id=8, callback_query=make_query("launch_rocket:1")),
        )
        await engine.step()

        assert replies(bot) == [START_REPLY]
        answer = bot.answer_callback_query.await_args.kwargs
        assert answer["text"] == "Unknown action."
        assert read_document(store, DocumentKey.WORKFLOW_STATE)["lastUpdateId"] == 8

        bot.get_updates.return_value = ()
        await engine.step()
        assert bot.get_updates.await_args.kwargs["offset"] == 9

    async def test_sweep_notifies_and_persists(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        write_document(
            store,
            DocumentKey.SUBSCRIPTIONS,
            [{"id": "s1", "userId": "alice", "username": "alice", "status": "pending"}],
        )
        await engine.step()
        await engine.step()
        assert chats.bot.send_message.await_count == 1
        saved = read_document(store, DocumentKey.WORKFLOW_STATE)
        assert saved["notifiedPayments"] == ["s1"]
        assert saved["paymentMessages"]["s1"][0]["chatId"] == 111

    async def test_webhook_conflict_deletes_webhook(
        self, engine: WorkflowEngine, chats: ChatFactory
    ):
        await engine.step()
        bot = chats.bot
        bot.get_updates.side_effect = Conflict(
            "Conflict: can't use getUpdates method while webhook is active"
        )
        assert await engine.step() == settings.bot_idle_sleep
        bot.delete_webhook.assert_awaited_once()

    async def test_unexpected_failure_backs_off(self, engine: WorkflowEngine, chats: ChatFactory):
        await engine.step()
        chats.bot.get_updates.side_effect = RuntimeError("socket closed")
        assert await engine.step() == settings.bot_error_sleep

    async def test_token_change_reconnects(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        await engine.step()
        await engine.step()
        assert chats.tokens == ["123:abc"]

        write_document(store, DocumentKey.SETTINGS, {**SERVICE_SETTINGS, "telegramBotToken": "9:x"})
        await engine.step()
        assert chats.tokens == ["123:abc", "9:x"]
        assert engine.decisions.chat.token == "9:x"


class TestDeleteRequestCommand:
    """Tests for the /delete_request text command."""

    async def test_admin_deletes(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        write_document(
            store,
            DocumentKey.MEDIA_REQUESTS,
            [{"id": "m1", "title": "Dune", "status": "approved"}],
        )
        await engine.step()
        chats.bot.get_updates.return_value = (text_update(1, "/delete_request m1"),)
        await engine.step()
        assert "Dune" in replies(chats.bot)[-1]
        assert read_document(store, DocumentKey.MEDIA_REQUESTS) == []

    async def test_non_admin_refused(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        write_document(store, DocumentKey.MEDIA_REQUESTS, [{"id": "m1", "status": "approved"}])
        await engine.step()
        chats.bot.get_updates.return_value = (text_update(1, "/delete_request m1", 999),)
        await engine.step()
        assert replies(chats.bot)[-1] == NOT_AUTHORIZED
        assert len(read_document(store, DocumentKey.MEDIA_REQUESTS)) == 1

    async def test_missing_argument(self, engine: WorkflowEngine, chats: ChatFactory):
        await engine.step()
        chats.bot.get_updates.return_value = (text_update(1, "/delete_request"),)
        await engine.step()
        assert replies(chats.bot)[-1] == DELETE_USAGE

    async def test_unknown_request(self, engine: WorkflowEngine, chats: ChatFactory):
        await engine.step()
        chats.bot.get_updates.return_value = (text_update(1, "/delete_request nope"),)
        await engine.step()
        assert replies(chats.bot)[-1] == "Error: Media request not found."


class TestChangeTriggers:
    """Tests for document change pings."""

    async def test_ping_notifies_before_polling(
        self, store: JsonFileStore, engine: WorkflowEngine, chats: ChatFactory
    ):
        await engine.step()
        write_document(
            store,
            DocumentKey.MEDIA_REQUESTS,
            [{"id": "m1", "title": "Dune", "requested_by_username": "alice"}],
        )
        engine.media_ping = True
        await engine.step()
        assert engine.media_ping is False
        assert "Dune" in replies(chats.bot)[0]
        assert read_document(store, DocumentKey.WORKFLOW_STATE)["notifiedMedia"] == ["m1"]

    async def test_document_change_raises_ping_after_debounce(
        self, store: JsonFileStore, engine: WorkflowEngine
    ):
        engine._on_document_change(store.path_for(DocumentKey.SUBSCRIPTIONS))
        engine._on_document_change(store.path_for(DocumentKey.SUBSCRIPTIONS))
        assert engine.payment_ping is False
        await asyncio.sleep(settings.watch_debounce_ms / 1000 + 0.2)
        assert engine.payment_ping is True
        assert engine.media_ping is False

    async def test_unrelated_document_ignored(self, store: JsonFileStore, engine: WorkflowEngine):
        engine._on_document_change(store.path_for(DocumentKey.SETTINGS))
        await asyncio.sleep(settings.watch_debounce_ms / 1000 + 0.2)
        assert not engine.payment_ping
        assert not engine.media_ping


class TestLifecycle:
    """Tests for refresh_media and run."""

    async def test_refresh_media(
        self, store: JsonFileStore, engine: WorkflowEngine, services: FakeServices
    ):
        write_document(
            store,
            DocumentKey.MEDIA_REQUESTS,
            [{"id": "m1", "tmdb_id": 603, "status": "approved", "jellyseerr_request_id": 7}],
        )
        services.upstream_requests["7"] = {"id": 7}
        services.movies = [{"id": 9, "hasFile": True}]
        assert await engine.refresh_media() == 1
        assert read_document(store, DocumentKey.MEDIA_REQUESTS)[0]["status"] == "available"

    async def test_run_until_stopped(self, engine: WorkflowEngine, chats: ChatFactory):
        stop = asyncio.Event()

        async def poll(**_kwargs):
            stop.set()
            return ()

        def stopping_chat(token: str) -> ChatClient:
            chat = chats(token)
            chats.bot.get_updates.side_effect = poll
            return chat

        engine.chat_factory = stopping_chat

        await asyncio.wait_for(engine.run(stop), timeout=5)

        chats.bot.get_updates.assert_awaited_once()
        assert engine.decisions is None
