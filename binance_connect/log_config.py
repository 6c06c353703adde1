"""
Logging setup

Library modules only call `logger`; applications decide where output goes.
"""
import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Install loguru sinks

    Args:
        level: Minimum level for all sinks
        log_file: Optional file sink (rotated daily, kept for a week)
    """
    logger.remove()  # Remove default handler
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper())

    if log_file:
        logger.add(
            log_file,
            format=LOG_FORMAT,
            level=level.upper(),
            rotation="1 day",
            retention="7 days",
            enqueue=True
        )
        logger.info(f"Logging to {log_file}")
