import logging
import os


def configure_logging(level_name: str | None = None):
    level_name = (level_name or os.getenv("WINLOG_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
