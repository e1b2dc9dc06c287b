"""Entry point for the access policy reconciler service."""

import asyncio
import contextlib
import signal
import sys
from typing import NoReturn

import structlog

from src.access.reconciler import AccessReconciler
from src.access.scheduler import PolicySyncScheduler
from src.config import settings
from src.logger import bind_service
from src.storage.documents import JsonFileStore

logger = structlog.get_logger(__name__)


async def main_async() -> None:
    """Run the reconciler until SIGINT / SIGTERM."""
    bind_service("policy-reconciler")
    logger.info(
        "policy_reconciler_starting",
        data_dir=str(settings.data_dir),
        environment=settings.environment,
        log_level=settings.log_level,
    )

    store = JsonFileStore(settings.data_dir)
    scheduler = PolicySyncScheduler(AccessReconciler(store), store)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        logger.info("policy_reconciler_stopped")


def main() -> NoReturn:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("policy_reconciler_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("policy_reconciler_crashed", error=str(e))
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
