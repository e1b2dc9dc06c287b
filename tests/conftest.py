"""Shared fixtures: a document store in a temp dir and Telegram object builders."""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from telegram import CallbackQuery, Chat, Message, PhotoSize, User

from src.clients.factory import ClientFactory
from src.clients.telegram import ChatClient
from src.storage.documents import DocumentKey, JsonFileStore
from src.storage.models import ServiceSettings

ADMIN_ID = 111

SERVICE_SETTINGS = {
    "embyUrl": "http://emby.test",
    "apiKey": "emby-key",
    "jellyseerrUrl": "http://seerr.test",
    "jellyseerrApiKey": "seerr-key",
    "radarrUrl": "http://radarr.test",
    "radarrApiKey": "radarr-key",
    "sonarrUrl": "http://sonarr.test",
    "sonarrApiKey": "sonarr-key",
    "telegramBotToken": "123:abc",
    "telegramAdminIds": str(ADMIN_ID),
}


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def store(tmp_path: Path) -> JsonFileStore:
    return JsonFileStore(tmp_path)


def write_document(store: JsonFileStore, key: DocumentKey, document: Any) -> None:
    store.path_for(key).write_text(json.dumps(document), encoding="utf-8")


def read_document(store: JsonFileStore, key: DocumentKey) -> Any:
    return json.loads(store.path_for(key).read_text(encoding="utf-8"))


# =============================================================================
# Telegram objects
# =============================================================================


def make_user(user_id: int = ADMIN_ID, username: str | None = "boss") -> User:
    return User(id=user_id, first_name="Admin", is_bot=False, username=username)


def make_message(
    message_id: int = 1,
    chat_id: int = ADMIN_ID,
    text: str | None = None,
    photo: bool = False,
    from_user: User | None = None,
) -> Message:
    return Message(
        message_id=message_id,
        date=datetime(2024, 1, 1, tzinfo=UTC),
        chat=Chat(id=chat_id, type="private"),
        text=text,
        photo=(
            (PhotoSize(file_id="f", file_unique_id="u", width=10, height=10),) if photo else ()
        ),
        from_user=from_user,
    )


def make_query(
    data: str,
    user_id: int = ADMIN_ID,
    message: Message | None = None,
    query_id: str = "q1",
) -> CallbackQuery:
    return CallbackQuery(
        id=query_id,
        from_user=make_user(user_id),
        chat_instance="ci",
        data=data,
        message=message if message is not None else make_message(chat_id=user_id),
    )


def make_bot() -> AsyncMock:
    """Mock ``telegram.Bot`` whose sends answer with a delivered message."""
    bot = AsyncMock()
    counter = iter(range(100, 10_000))

    async def _sent(chat_id: int | str, **_kwargs: Any) -> Message:
        return make_message(message_id=next(counter), chat_id=int(chat_id))

    async def _sent_photo(chat_id: int | str, **_kwargs: Any) -> Message:
        return make_message(message_id=next(counter), chat_id=int(chat_id), photo=True)

    bot.send_message.side_effect = _sent
    bot.send_photo.side_effect = _sent_photo
    bot.send_document.side_effect = _sent_photo
    bot.get_updates.return_value = ()
    return bot


@pytest.fixture
def bot() -> AsyncMock:
    return make_bot()


@pytest.fixture
def chat(bot: AsyncMock) -> ChatClient:
    return ChatClient("123:abc", bot=bot)


# =============================================================================
# Upstream services
# =============================================================================


class FakeServices:
    """One MockTransport handler standing in for Emby, Jellyseerr, Radarr and Sonarr."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.roots = {"radarr.test": ["/movies"], "sonarr.test": ["/tv"]}
        self.profiles = [{"id": 1, "name": "Any"}, {"id": 4, "name": "HD-1080p"}]
        self.request_status = 201
        self.created_id = 55
        self.upstream_requests: dict[str, dict] = {}
        self.movies: list[dict] = []
        self.series: list[dict] = []
        self.queue: dict = {"records": []}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def requests_to(self, host: str, method: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.calls
            if request.url.host == host and (method is None or request.method == method)
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        host = request.url.host
        path = request.url.path
        if host in self.roots:
            return self._arr(request, host, path)
        if host == "seerr.test":
            return self._seerr(request, path)
        if host == "emby.test":
            if request.method == "GET":
                user_id = path.rsplit("/", 1)[-1]
                return httpx.Response(200, json={"Id": user_id, "Policy": {}})
            return httpx.Response(204)
        return httpx.Response(404)

    def _arr(self, request: httpx.Request, host: str, path: str) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(200, json={})
        if path.endswith("/rootfolder"):
            return httpx.Response(200, json=[{"path": root} for root in self.roots[host]])
        if path.endswith("/qualityprofile"):
            return httpx.Response(200, json=self.profiles)
        if path == "/api/v3/movie":
            return httpx.Response(200, json=self.movies)
        if path == "/api/v3/series/lookup":
            return httpx.Response(200, json=self.series)
        if path == "/api/v3/queue":
            return httpx.Response(200, json=self.queue)
        return httpx.Response(404)

    def _seerr(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.method == "POST" and path == "/api/v1/request":
            if self.request_status >= 400:
                return httpx.Response(self.request_status, text="Request rejected upstream")
            return httpx.Response(self.request_status, json={"id": self.created_id})
        if request.method == "DELETE":
            return httpx.Response(204)
        request_id = path.rsplit("/", 1)[-1]
        if request_id in self.upstream_requests:
            return httpx.Response(200, json=self.upstream_requests[request_id])
        return httpx.Response(404, text="Not found")


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


def client_factory(services: FakeServices, **overrides: Any) -> ClientFactory:
    service = ServiceSettings.model_validate({**SERVICE_SETTINGS, **overrides})
    return ClientFactory(service, transport=services.transport)


@pytest.fixture
def clients(services: FakeServices) -> ClientFactory:
    return client_factory(services)
