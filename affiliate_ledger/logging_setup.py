import sys

from loguru import logger

from .config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure loguru sinks for the ledger service."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    if settings.log_file:
        logger.add(
            settings.log_file,
            rotation="1 day",
            retention="7 days",
            level=settings.log_level.upper(),
            encoding="utf-8",
        )

    logger.info("Affiliate ledger logging configured at {}", settings.log_level.upper())
