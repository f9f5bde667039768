import logging
import os
from typing import Optional


def setup_logging(level: Optional[int] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    The level defaults to the LOG_LEVEL environment variable, then INFO.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
