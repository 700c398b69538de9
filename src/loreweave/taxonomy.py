"""Entity type taxonomy with a read-through cache.

The store-backed type set (seeded with the defaults) is the single source of
truth for which fact categories are valid. The cache mirrors it completely or
not at all: mutations drop it wholesale and the next reader reloads it.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .cancel import CancelToken, check
from .errors import (
    AlreadyExistsError,
    CannotRemoveDefaultError,
    InvalidNameError,
    NotFoundError,
    StoreError,
    store_op,
)
from .models import DEFAULT_ENTITY_TYPES, EntityType, is_default_type, utcnow
from .ports import RelationalStore

logger = logging.getLogger(__name__)

TYPE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def normalize_type_name(name: str) -> str:
    return name.strip().lower()


class RWLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class EntityTypeService:
    def __init__(self, store: RelationalStore):
        self.store = store
        self._lock = RWLock()
        # Both are swapped together under the write lock; None means Empty.
        self._by_name: dict[str, EntityType] | None = None
        self._sorted_names: tuple[str, ...] = ()

    # --- cache ---

    @property
    def populated(self) -> bool:
        with self._lock.read():
            return self._by_name is not None

    def _snapshot(self, cancel: CancelToken | None) -> tuple[dict[str, EntityType], tuple[str, ...]]:
        with self._lock.read():
            if self._by_name is not None:
                return self._by_name, self._sorted_names

        with self._lock.write():
            # another caller may have loaded it while we waited
            if self._by_name is not None:
                return self._by_name, self._sorted_names
            check(cancel)
            with store_op("listing entity types"):
                types = self.store.list_entity_types(cancel=cancel)
            by_name = {t.name: t for t in types}
            self._by_name = by_name
            self._sorted_names = tuple(sorted(by_name))
            logger.debug("Entity type cache loaded with %d types", len(by_name))
            return self._by_name, self._sorted_names

    def invalidate(self) -> None:
        with self._lock.write():
            self._by_name = None
            self._sorted_names = ()

    def is_valid(self, name: str, *, cancel: CancelToken | None = None) -> bool:
        try:
            by_name, _ = self._snapshot(cancel)
        except StoreError as e:
            logger.warning("Could not load entity types to validate %r: %s", name, e)
            return False
        return name in by_name

    def valid_types(self, *, cancel: CancelToken | None = None) -> tuple[str, ...]:
        """Sorted names of every valid type."""
        _, names = self._snapshot(cancel)
        return names

    def prompt_type_list(self, *, cancel: CancelToken | None = None) -> str:
        return ", ".join(self.valid_types(cancel=cancel))

    # --- store reads ---

    def list(self, *, cancel: CancelToken | None = None) -> list[EntityType]:
        check(cancel)
        with store_op("listing entity types"):
            return self.store.list_entity_types(cancel=cancel)

    def get(self, name: str, *, cancel: CancelToken | None = None) -> EntityType | None:
        check(cancel)
        with store_op("finding entity type"):
            return self.store.find_entity_type(normalize_type_name(name), cancel=cancel)

    # --- mutations ---

    def add(self, name: str, description: str = "", *, cancel: CancelToken | None = None) -> EntityType:
        name = normalize_type_name(name)
        if not TYPE_NAME_RE.match(name):
            raise InvalidNameError(
                name, "must be lowercase alphanumeric with underscores, starting with a letter"
            )
        if is_default_type(name):
            raise AlreadyExistsError(f"entity type {name!r} is a default type", name=name)
        check(cancel)
        with store_op("checking entity type"):
            existing = self.store.find_entity_type(name, cancel=cancel)
        if existing is not None:
            raise AlreadyExistsError(f"entity type {name!r} already exists", name=name)

        et = EntityType(name=name, description=description, created_at=utcnow())
        check(cancel)
        with store_op("saving entity type"):
            self.store.save_entity_type(et, cancel=cancel)
        self.invalidate()
        logger.info("Added entity type %s", name)
        return et

    def remove(self, name: str, *, cancel: CancelToken | None = None) -> None:
        name = normalize_type_name(name)
        if is_default_type(name):
            raise CannotRemoveDefaultError(name)
        check(cancel)
        with store_op("checking entity type"):
            existing = self.store.find_entity_type(name, cancel=cancel)
        if existing is None:
            raise NotFoundError(f"entity type {name!r} not found", name=name)

        check(cancel)
        with store_op("deleting entity type"):
            self.store.delete_entity_type(name, cancel=cancel)
        self.invalidate()
        logger.info("Removed entity type %s", name)

    def load_defaults(self, *, cancel: CancelToken | None = None) -> int:
        """Seed the missing default types with a single list call. Returns the insert count."""
        check(cancel)
        with store_op("listing entity types"):
            existing = {t.name for t in self.store.list_entity_types(cancel=cancel)}

        inserted = 0
        for et in DEFAULT_ENTITY_TYPES:
            if et.name in existing:
                continue
            check(cancel)
            with store_op(f"seeding entity type {et.name}"):
                self.store.save_entity_type(
                    EntityType(name=et.name, description=et.description, created_at=utcnow()),
                    cancel=cancel,
                )
            inserted += 1
        self.invalidate()
        if inserted:
            logger.info("Seeded %d default entity types", inserted)
        return inserted
