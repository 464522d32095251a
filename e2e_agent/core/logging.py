"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

from e2e_agent.core.config import Settings, get_settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(settings: Settings | None = None, log_to_file: bool = True) -> None:
    """Configure loguru based on settings.

    Removes the default handler, then installs a rotated file sink and a
    colorized console sink.

    Args:
        settings: Optional settings override. Uses default if not provided.
        log_to_file: Whether to add the daily-rotated file sink.
    """
    settings = settings or get_settings()
    logger.remove()

    if log_to_file:
        logs_dir = Path(settings.e2e_log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(logs_dir / "e2e_agent_{time:YYYY-MM-DD}.log"),
            rotation="1 day",
            retention="7 days",
            level=settings.e2e_log_level,
            format=LOG_FORMAT,
        )

    logger.add(
        sys.stderr,
        level="DEBUG" if settings.e2e_debug else settings.e2e_log_level,
        format=LOG_FORMAT,
        colorize=True,
    )
