"""Entry point for the launch indexer worker."""

import asyncio
import signal

from loguru import logger

from config.settings import settings
from src.db.database import close_database
from src.db.redis import close_redis
from src.utils.logger import setup_logger
from src.worker import run_worker


async def main() -> None:
    setup_logger(
        json_logs=settings.json_logs,
        level=settings.log_level,
        log_dir=settings.log_dir,
        retention=settings.log_retention,
    )
    logger.info("Starting launch indexer...")

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    worker_task = asyncio.create_task(run_worker())

    done, pending = await asyncio.wait(
        [worker_task, asyncio.create_task(shutdown_event.wait())],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    for task in done:
        if task is worker_task and task.exception() is not None:
            logger.error(f"Worker stopped with error: {task.exception()}")

    await close_redis()
    await close_database()
    logger.info("Shutdown complete")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
