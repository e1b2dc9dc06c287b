"""Change signals for dashboard documents.

``DocumentWatcher`` polls file modification times and fires a callback when a
watched document changes. ``Debouncer`` collapses a burst of such signals into
a single delayed call. Both are owned by the loop that uses them; nothing here
is module-level state.
"""

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


class Debouncer:
    """Run ``callback`` once, ``delay`` seconds after the last ``trigger()``."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """Restart the countdown; must be called from the event loop."""
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


def _fingerprint(path: Path) -> tuple[int, int] | None:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime_ns, stat.st_size


class DocumentWatcher:
    """Poll a set of files and call ``on_change`` when any of them changes.

    A file appearing or disappearing counts as a change.
    """

    def __init__(
        self,
        paths: Iterable[Path],
        on_change: Callable[[Path], None],
        interval: float = 0.25,
    ):
        self.paths = [Path(p) for p in paths]
        self.interval = interval
        self._on_change = on_change
        self._seen: dict[Path, tuple[int, int] | None] = {}
        self._task: asyncio.Task | None = None

    def snapshot(self) -> None:
        """Record the current state of every file without firing."""
        self._seen = {path: _fingerprint(path) for path in self.paths}

    def poll(self) -> list[Path]:
        """Check all files once; fire for and return the ones that changed."""
        changed = []
        for path in self.paths:
            current = _fingerprint(path)
            if self._seen.get(path) != current:
                self._seen[path] = current
                changed.append(path)
        for path in changed:
            logger.debug("document_changed", path=str(path))
            self._on_change(path)
        return changed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.poll()
            except Exception as e:
                logger.error("document_watch_failed", error=str(e))

    def start(self) -> None:
        if self._task is not None:
            return
        self.snapshot()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
