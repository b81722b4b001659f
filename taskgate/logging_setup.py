from __future__ import annotations

import logging
import os
import sys

LOG_LEVEL = os.environ.get("TASKGATE_LOG_LEVEL", "INFO").strip().upper()


class _ThirdPartyFilter(logging.Filter):
    """Keep taskgate records; let other libraries through only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("taskgate"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger with one stderr handler.

    Call once at process start; repeated calls replace the handler.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(fmt)
    handler.addFilter(_ThirdPartyFilter())
    root.addHandler(handler)

    logging.captureWarnings(True)
