"""
Logging setup shared by the publisher side and the worker process.

One stdout handler on the root logger; modules log through
``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Guard against duplicate handlers when called again (tests, re-entry).
    if not any(getattr(h, "_taskqueue_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._taskqueue_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # pika is chatty at INFO (every frame negotiation and channel open).
    logging.getLogger("pika").setLevel(logging.WARNING)
    return root
