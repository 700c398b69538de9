"""Exception hierarchy for loreweave.

Every error raised on purpose by the package derives from :class:`LoreError`,
so callers can catch the whole family at one seam (the CLI does).
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager


class LoreError(Exception):
    """Base class for all loreweave errors."""


class InvalidNameError(LoreError, ValueError):
    def __init__(self, name: str, reason: str = ""):
        self.name = name
        msg = f"invalid type name {name!r}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class AlreadyExistsError(LoreError):
    def __init__(self, message: str, *, name: str | None = None, existing_id: str | None = None):
        self.name = name
        self.existing_id = existing_id
        super().__init__(message)


class NotFoundError(LoreError, LookupError):
    def __init__(self, message: str, *, name: str | None = None):
        self.name = name
        super().__init__(message)


class CannotRemoveDefaultError(LoreError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"cannot remove default entity type {name!r}")


class Cancelled(LoreError):
    """The caller's cancel token fired before or during an external call."""


class SegmentationError(LoreError):
    pass


class ExtractionError(LoreError):
    def __init__(self, message: str, *, segment_index: int | None = None):
        self.segment_index = segment_index
        super().__init__(message)


class EmbeddingError(LoreError):
    pass


class ConsistencyCheckError(LoreError):
    pass


class LLMError(LoreError):
    pass


class StoreError(LoreError):
    pass


@contextmanager
def store_op(op: str) -> Iterator[None]:
    """Re-raise unexpected failures of a store call as ``StoreError``.

    ``LoreError`` subclasses raised by an adapter pass through unchanged.
    """
    try:
        yield
    except LoreError:
        raise
    except Exception as e:
        raise StoreError(f"{op}: {e}") from e


class ParseError(LoreError, ValueError):
    """An import file could not be read into records."""
