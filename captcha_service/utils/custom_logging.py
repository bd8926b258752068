"""
Named custom_logging rather than logging so it does not shadow the standard
library module.
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter


def setup_logging(level=logging.INFO):
    """
    Configures structured JSON logging for the application.

    Fields passed through `extra=` (request ids, metrics records) are merged
    into the JSON document.
    """
    handler = logging.StreamHandler(sys.stdout)

    fmt = "%(asctime)s %(name)s %(levelname)s %(message)s"
    formatter = JsonFormatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%S")

    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)

    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Set some specific loggers to higher levels to reduce noise
    for name in ("httpx", "httpcore", "selenium", "urllib3", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)
