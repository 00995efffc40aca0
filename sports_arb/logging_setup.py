from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Per-request INFO lines from the HTTP stack drown out cycle summaries.
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str, log_file: str | None = None) -> None:
    resolved = getattr(logging, level.upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=resolved, format=LOG_FORMAT, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if resolved == logging.INFO and level.upper() != "INFO":
        logging.getLogger(__name__).warning("unknown log level %r, using INFO", level)
