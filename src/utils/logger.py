import os
import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - "
    "<level>{message}</level>"
)


def setup_logger(
    *,
    json_logs: bool = False,
    level: str = "INFO",
    log_dir: str | None = "logs",
    retention: str = "7 days",
) -> None:
    """Configure loguru for the indexer.

    Console level controlled by LOG_LEVEL env (default: INFO). When
    `log_dir` is set, a daily file always captures DEBUG so skipped
    events and per-entity failures of a pass can be inspected later.
    """
    console_level = os.getenv("LOG_LEVEL", level).upper()
    logger.remove()
    logger.configure(extra={"component": "indexer"})

    if json_logs:
        logger.add(sys.stdout, serialize=True, level=console_level)
    else:
        logger.add(sys.stdout, format=CONSOLE_FORMAT, level=console_level, colorize=True)

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        logger.add(
            str(Path(log_dir) / "indexer_{time:YYYY-MM-DD}.log"),
            rotation="50 MB",
            retention=retention,
            compression="gz",
            level="DEBUG",
            serialize=json_logs,
        )


def component_logger(component: str):
    """Logger bound to one component name, e.g. a worker or a script."""
    return logger.bind(component=component)
