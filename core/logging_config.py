"""
Logging configuration for the knowledge engine.

Jobs and the API log to stderr; client libraries are kept quiet unless
LOG_LEVEL is DEBUG.
"""

import logging

from core.settings import settings

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "sqlalchemy.engine")


def configure_logging(level: str | None = None) -> None:
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=level_name,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if level_name != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
