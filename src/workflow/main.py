"""Entry point for the approval bot."""

import asyncio
import contextlib
import signal
import sys
from typing import NoReturn

import structlog

from src.config import settings
from src.logger import bind_service
from src.storage.documents import JsonFileStore
from src.workflow.engine import WorkflowEngine
from src.workflow.lock import InstanceLock

logger = structlog.get_logger(__name__)


async def main_async() -> None:
    """Run the bot until SIGINT / SIGTERM, unless another instance already runs."""
    bind_service("approval-bot")

    lock = InstanceLock(settings.lock_path)
    if not lock.acquire():
        logger.info("approval_bot_already_running", owner_pid=lock.owner_pid)
        return

    try:
        logger.info(
            "approval_bot_starting",
            data_dir=str(settings.data_dir),
            environment=settings.environment,
            log_level=settings.log_level,
        )
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        engine = WorkflowEngine(JsonFileStore(settings.data_dir))
        await engine.run(stop)
    finally:
        lock.release()
        logger.info("approval_bot_stopped")


def main() -> NoReturn:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("approval_bot_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("approval_bot_crashed", error=str(e))
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
