from __future__ import annotations

import logging
import os
from typing import List, Optional


_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Third-party loggers that flood the console below DEBUG.
_NOISY = ("aioice", "aiortc", "websockets")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure stdlib logging for the command line tools.

    The interactive peer prints call progress itself, so the detailed trace
    (signal sends, poller decisions, connection states) can be sent to
    `log_file` instead of the terminal.
    """

    effective_level = (level or os.environ.get("SLOTCALL_LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.environ.get("SLOTCALL_LOG_FILE") or None

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(effective_level)
    else:
        handlers: List[logging.Handler] = []
        if log_file:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        else:
            handlers.append(logging.StreamHandler())
        logging.basicConfig(level=effective_level, format=_FORMAT, handlers=handlers)

    quiet = logging.NOTSET if effective_level == "DEBUG" else logging.WARNING
    for name in _NOISY:
        logging.getLogger(name).setLevel(quiet)
