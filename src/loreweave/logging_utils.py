from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Chatty third-party loggers kept at WARNING unless we're debugging.
_NOISY = ("httpx", "httpcore", "qdrant_client", "urllib3")


def configure_logging(level: str = "INFO") -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if level != "DEBUG":
        for name in _NOISY:
            logging.getLogger(name).setLevel(logging.WARNING)
