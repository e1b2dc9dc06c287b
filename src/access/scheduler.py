"""Policy sync scheduling using APScheduler.

A reconcile run is triggered three ways:
- once at start
- every ``policy_sync_interval_seconds`` as a fallback tick
- when the subscriptions, unlimited-users or settings document changes,
  debounced so a burst of saves becomes one run

Runs never overlap.

Usage:
    scheduler = PolicySyncScheduler(reconciler, store)
    scheduler.start()

    # On shutdown:
    await scheduler.stop()
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.access.reconciler import AccessReconciler, ReconcileReport
from src.config import settings
from src.storage.documents import DocumentKey, DocumentStore
from src.storage.watcher import Debouncer, DocumentWatcher

logger = structlog.get_logger(__name__)

WATCHED_DOCUMENTS = (
    DocumentKey.SUBSCRIPTIONS,
    DocumentKey.UNLIMITED_USERS,
    DocumentKey.SETTINGS,
)


class PolicySyncScheduler:
    """Owns the triggers of the access reconciler."""

    def __init__(
        self,
        reconciler: AccessReconciler,
        store: DocumentStore,
        interval_seconds: float | None = None,
        debounce_seconds: float | None = None,
    ):
        """Initialize the scheduler.

        Args:
            reconciler: Reconciler to run.
            store: Store whose files are watched for changes.
            interval_seconds: Fallback tick interval.
            debounce_seconds: Quiet period after a change before the run starts.
        """
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or settings.policy_sync_interval_seconds
        if debounce_seconds is None:
            debounce_seconds = settings.policy_sync_debounce_ms / 1000
        self._lock = asyncio.Lock()
        self._debouncer = Debouncer(debounce_seconds, self._start_debounced_run)
        self._tasks: set[asyncio.Task] = set()
        self._scheduler: AsyncIOScheduler | None = None
        self._watcher = DocumentWatcher(
            self._watched_paths(store),
            self._on_document_change,
            interval=settings.watch_poll_interval,
        )
        self._is_running = False

    @staticmethod
    def _watched_paths(store: DocumentStore) -> list[Path]:
        paths = (store.path_for(key) for key in WATCHED_DOCUMENTS)
        return [path for path in paths if path is not None]

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Start the interval job (first run immediately) and the document watcher."""
        if self._is_running:
            logger.warning("policy_sync_already_running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="policy_sync",
            name="Access Policy Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(UTC),
        )
        self._scheduler.start()
        self._watcher.start()
        self._is_running = True

        logger.info("policy_sync_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop triggers and wait for in-flight runs."""
        if not self._is_running:
            return
        self._debouncer.cancel()
        await self._watcher.stop()
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._is_running = False
        logger.info("policy_sync_scheduler_stopped")

    def request_sync(self) -> None:
        """Schedule a debounced run; repeated calls restart the quiet period."""
        self._debouncer.trigger()

    def _on_document_change(self, path: Path) -> None:
        logger.debug("policy_sync_document_changed", path=str(path))
        self.request_sync()

    def _start_debounced_run(self) -> None:
        task = asyncio.get_running_loop().create_task(self.run_once())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_once(self) -> ReconcileReport | None:
        """Run one reconcile, waiting for any run already in progress.

        Returns:
            The run's report, or None when it failed.
        """
        async with self._lock:
            try:
                return await self.reconciler.reconcile()
            except Exception as e:
                logger.exception("policy_sync_failed", error=str(e))
                return None
