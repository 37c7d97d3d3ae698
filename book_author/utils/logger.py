import sys
from contextlib import contextmanager
from loguru import logger
from pathlib import Path
from typing import Iterator, Optional

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
# Trace lines keep milliseconds so backend calls can be lined up with pipeline steps
TRACE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

_configured = False


def setup_logger(log_level: str = "INFO", log_file: Optional[Path] = None):
    global _configured

    if _configured and log_file is None:
        return logger

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=log_level, colorize=True)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=TRACE_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            encoding="utf-8",
        )

    _configured = True
    return logger


@contextmanager
def session_trace(log_file: Path) -> Iterator[Path]:
    """Write a DEBUG-level trace of one generation session to ``log_file``.

    Only records emitted from the ``book_author`` package are captured; the
    sink is removed when the block exits, even if generation raised.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(log_file, format=TRACE_FORMAT, level="DEBUG", filter="book_author", encoding="utf-8")
    try:
        yield log_file
    finally:
        logger.remove(sink_id)
