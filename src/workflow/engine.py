"""Approval bot poll loop.

Each iteration:
1. Load the settings document; without a bot token, idle and retry.
2. Consume the payment / media change flags raised by the document watcher
   and notify admins right away.
3. Long-poll the Bot API for updates and route callbacks and text commands.
4. Sweep all three notification kinds and persist the workflow state.

Download status of approved media requests is refreshed by a separate
APScheduler job. Iterations and refreshes never overlap.

Usage:
    engine = WorkflowEngine(JsonFileStore(settings.data_dir))
    await engine.run(stop_event)
"""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from html import escape
from pathlib import Path

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from telegram import Message, Update

from src.clients.factory import ClientFactory
from src.clients.telegram import ChatClient
from src.config import settings
from src.storage.documents import (
    DocumentKey,
    DocumentStore,
    load_settings,
    load_workflow_state,
    save_workflow_state,
)
from src.storage.models import ServiceSettings, WorkflowState
from src.storage.watcher import Debouncer, DocumentWatcher
from src.workflow.attachments import SlipLoader
from src.workflow.decisions import DecisionHandler
from src.workflow.errors import WorkflowError
from src.workflow.media import MediaRequestService
from src.workflow.messages import DELETE_USAGE, NOT_AUTHORIZED, START_REPLY, media_deleted_text
from src.workflow.notifier import NotificationDispatcher
from src.workflow.payments import PaymentService

logger = structlog.get_logger(__name__)

ChatFactory = Callable[[str], ChatClient]


def split_command(text: str) -> tuple[str, str]:
    """Split ``/command@botname argument`` into the bare command and the argument."""
    command, _, argument = text.strip().partition(" ")
    return command.split("@", 1)[0].lower(), argument.strip()


def is_admin_message(message: Message, admin_ids: list[str]) -> bool:
    if str(message.chat_id) in admin_ids:
        return True
    return message.from_user is not None and str(message.from_user.id) in admin_ids


class WorkflowEngine:
    """Owns the bot connection, the change triggers and the poll loop."""

    def __init__(
        self,
        store: DocumentStore,
        chat_factory: ChatFactory = ChatClient,
        transport: httpx.AsyncBaseTransport | None = None,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the engine.

        Args:
            store: Document store shared with the dashboard.
            chat_factory: Builds a chat client for a bot token.
            transport: Optional httpx transport for the service clients (tests).
            http: Client used to download payment slips.
            clock: Source of "now", UTC.
        """
        self.store = store
        self.chat_factory = chat_factory
        self.transport = transport
        self._clock = clock or (lambda: datetime.now(UTC))
        self._http = http or httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)
        self._owns_http = http is None

        self.payments = PaymentService(store, self._clock)
        self.media = MediaRequestService(store, self._clock)
        self.slips = SlipLoader(self._http, settings.dashboard_url)

        self._chat: ChatClient | None = None
        self._token = ""
        self.dispatcher: NotificationDispatcher | None = None
        self.decisions: DecisionHandler | None = None

        self.payment_ping = False
        self.media_ping = False
        debounce = settings.watch_debounce_ms / 1000
        self._payment_debouncer = Debouncer(debounce, self._raise_payment_ping)
        self._media_debouncer = Debouncer(debounce, self._raise_media_ping)
        self._watched = {
            key: path
            for key in (DocumentKey.SUBSCRIPTIONS, DocumentKey.MEDIA_REQUESTS)
            if (path := store.path_for(key)) is not None
        }
        self._watcher = DocumentWatcher(
            self._watched.values(), self._on_document_change, interval=settings.watch_poll_interval
        )

        self._lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

    # -------------------------------------------------------------------------
    # Change triggers
    # -------------------------------------------------------------------------

    def _raise_payment_ping(self) -> None:
        self.payment_ping = True

    def _raise_media_ping(self) -> None:
        self.media_ping = True

    def _on_document_change(self, path: Path) -> None:
        if path == self._watched.get(DocumentKey.SUBSCRIPTIONS):
            self._payment_debouncer.trigger()
        elif path == self._watched.get(DocumentKey.MEDIA_REQUESTS):
            self._media_debouncer.trigger()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the document watcher and the media status job."""
        self._watcher.start()
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.refresh_media,
            trigger=IntervalTrigger(seconds=settings.media_status_interval_seconds),
            id="media_status_refresh",
            name="Media Request Status Refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC) + timedelta(seconds=5),
        )
        self._scheduler.start()
        logger.info(
            "workflow_engine_started",
            watched=[str(path) for path in self._watched.values()],
            media_status_interval=settings.media_status_interval_seconds,
        )

    async def stop(self) -> None:
        self._payment_debouncer.cancel()
        self._media_debouncer.cancel()
        await self._watcher.stop()
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        async with self._lock:
            await self._close_chat()
        if self._owns_http:
            await self._http.aclose()
        logger.info("workflow_engine_stopped")

    async def run(self, stop: asyncio.Event) -> None:
        """Run iterations until ``stop`` is set."""
        self.start()
        try:
            while not stop.is_set():
                delay = await self.step()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=delay)
        finally:
            await self.stop()

    async def _close_chat(self) -> None:
        if self._chat is not None:
            await self._chat.__aexit__(None, None, None)
        self._chat = None
        self._token = ""
        self.dispatcher = None
        self.decisions = None

    async def _chat_for(self, token: str) -> ChatClient:
        """Chat client for the current token; a changed token reconnects."""
        if self._chat is not None and token == self._token:
            return self._chat
        if self._chat is not None:
            logger.info("telegram_token_changed")
        await self._close_chat()

        chat = self.chat_factory(token)
        await chat.__aenter__()
        self._chat = chat
        self._token = token
        self.dispatcher = NotificationDispatcher(self.store, chat, self.slips, self._clock)
        self.decisions = DecisionHandler(self.store, chat, self.payments, self.media)
        return chat

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------

    async def step(self) -> float:
        """Run one iteration.

        Returns:
            Seconds to sleep before the next iteration.
        """
        async with self._lock:
            try:
                service = await load_settings(self.store)
                token = service.telegram_bot_token
                if not token:
                    logger.debug("telegram_token_missing")
                    return settings.bot_error_sleep

                chat = await self._chat_for(token)
                state = await load_workflow_state(self.store)
                clients = ClientFactory(service, transport=self.transport)
                await self._consume_pings(state, service)
                await self._poll_updates(chat, state, service, clients)
                await self.dispatcher.sweep(state, service)
                await save_workflow_state(self.store, state)
                return settings.bot_idle_sleep
            except Exception as e:
                logger.exception("workflow_iteration_failed", error=str(e))
                return settings.bot_error_sleep

    async def _consume_pings(self, state: WorkflowState, service: ServiceSettings) -> None:
        if self.payment_ping:
            self.payment_ping = False
            await self.dispatcher.notify_payments(state, service)
            await save_workflow_state(self.store, state)
        if self.media_ping:
            self.media_ping = False
            await self.dispatcher.notify_media(state, service)
            await save_workflow_state(self.store, state)

    async def _poll_updates(
        self,
        chat: ChatClient,
        state: WorkflowState,
        service: ServiceSettings,
        clients: ClientFactory,
    ) -> None:
        result = await chat.get_updates(
            offset=state.last_update_id + 1, timeout=settings.telegram_poll_timeout
        )
        if not result.ok:
            logger.warning("telegram_get_updates_failed", error=result.error)
            # A webhook left over from another deployment blocks long polling
            if "webhook" in result.error.lower():
                await chat.delete_webhook()
            return

        for update in result.body or ():
            state.last_update_id = max(state.last_update_id, update.update_id)
            await self.route(update, chat, state, service, clients)

    async def route(
        self,
        update: Update,
        chat: ChatClient,
        state: WorkflowState,
        service: ServiceSettings,
        clients: ClientFactory,
    ) -> None:
        """Dispatch one update to the decision handler or a text command."""
        if update.callback_query is not None:
            await self.decisions.handle(update.callback_query, state, clients, service.admin_ids)
            return

        message = update.message
        if message is None or not message.text:
            return
        command, argument = split_command(message.text)
        if command == "/start":
            await chat.send_message(message.chat_id, START_REPLY)
        elif command == "/delete_request":
            reply = await self._delete_request(message, argument, service, clients)
            await chat.send_message(message.chat_id, reply)

    async def _delete_request(
        self,
        message: Message,
        request_id: str,
        service: ServiceSettings,
        clients: ClientFactory,
    ) -> str:
        if not is_admin_message(message, service.admin_ids):
            logger.warning("delete_request_not_admin", chat_id=message.chat_id)
            return NOT_AUTHORIZED
        if not request_id:
            return DELETE_USAGE
        try:
            deleted = await self.media.delete(request_id, clients)
        except WorkflowError as e:
            logger.info("delete_request_refused", request_id=request_id, error=str(e))
            return f"Error: {escape(str(e))}"
        return media_deleted_text(deleted)

    # -------------------------------------------------------------------------
    # Media status
    # -------------------------------------------------------------------------

    async def refresh_media(self) -> int:
        """Poll external status and download progress of approved requests.

        Returns:
            Number of records that changed.
        """
        async with self._lock:
            try:
                service = await load_settings(self.store)
                changed = await self.media.refresh_statuses(
                    ClientFactory(service, transport=self.transport)
                )
            except Exception as e:
                logger.exception("media_status_refresh_failed", error=str(e))
                return 0
        if changed:
            logger.info("media_status_refreshed", changed=changed)
        return changed
