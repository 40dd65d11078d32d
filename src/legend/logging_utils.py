"""Run-scoped logging: ``log.txt`` and ``console.txt`` in the indication folder."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from .config import settings
from .context import StudyPaths

LOGGER_NAME = "legend"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def get_study_logger() -> logging.Logger:
    """Package logger with a single stream handler, set up once."""
    logger = logging.getLogger(LOGGER_NAME)
    if not any(getattr(h, "_legend_stream", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handler.setLevel(settings.LOG_LEVEL.upper())
        handler._legend_stream = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    return logger


@contextmanager
def study_logging(paths: StudyPaths) -> Iterator[logging.Logger]:
    """
    Attach the run's file handlers for the duration of the block.

    ``paths.log_file`` receives every record, ``paths.console_file`` mirrors what the
    console shows (INFO and above). Both handlers are detached and closed on
    exit, including when a stage raises.
    """
    paths.root.mkdir(parents=True, exist_ok=True)
    logger = get_study_logger()

    file_handler = logging.FileHandler(paths.log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.FileHandler(paths.console_file, mode="w", encoding="utf-8")
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    try:
        yield logger
    finally:
        for handler in (file_handler, console_handler):
            logger.removeHandler(handler)
            handler.close()
