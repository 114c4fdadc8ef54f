from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Attach one stderr handler to the package logger."""
    root = logging.getLogger("taskloop")
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        if getattr(handler, "_taskloop_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler._taskloop_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
