from __future__ import annotations

import threading

from .errors import Cancelled


class CancelToken:
    """Caller-owned cancellation signal.

    Services check it before every external call and hand it to the port so
    adapters can check it again (e.g. between HTTP retries).
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = "operation cancelled"

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason)


def check(cancel: CancelToken | None) -> None:
    """No-op for ``None`` so call sites don't need to branch."""
    if cancel is not None:
        cancel.raise_if_cancelled()
