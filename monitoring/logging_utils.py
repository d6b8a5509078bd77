import logging
import os
from typing import Optional


NOISY_LOGGERS = ("websockets", "aiohttp.access", "uvicorn.access")


def setup_logging(level: Optional[int] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging once from an entrypoint.

    ``MM_LOG_LEVEL`` overrides the level when none is passed. Later calls are
    ignored once the root logger has handlers.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = getattr(logging, os.getenv("MM_LOG_LEVEL", "INFO").upper(), logging.INFO)
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
