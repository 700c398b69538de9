"""Shared fixtures and fakes for the external collaborators."""

from __future__ import annotations

from collections.abc import Callable, Sequence

import pytest

from loreweave.cancel import CancelToken, check
from loreweave.embedder import StubEmbedder
from loreweave.errors import LLMError, StoreError
from loreweave.models import ConsistencyIssue, Fact
from loreweave.stores.memory import InMemoryRelationalStore, InMemoryVectorStore
from loreweave.taxonomy import EntityTypeService

DIM = 32


class FakeExtractor:
    """Returns canned facts per call; records every segment it was given.

    ``responses`` is either a list (one entry per call, the last repeating)
    or a callable ``(segment_index, text) -> list[Fact]``.
    """

    def __init__(self, responses=None, *, fail_on: int | None = None):
        self.responses = responses if responses is not None else [[]]
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.valid_types_seen: list[tuple[str, ...]] = []

    def extract_facts(
        self, text: str, valid_types: Sequence[str], *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        check(cancel)
        i = len(self.calls)
        self.calls.append(text)
        self.valid_types_seen.append(tuple(valid_types))
        if self.fail_on is not None and i == self.fail_on:
            raise LLMError("model unavailable")
        if callable(self.responses):
            return list(self.responses(i, text))
        return list(self.responses[min(i, len(self.responses) - 1)])


class FakeChecker:
    def __init__(self, issues: Callable | list | None = None, *, error: Exception | None = None):
        self.issues = issues or []
        self.error = error
        self.calls: list[tuple[list[Fact], list[Fact]]] = []

    def check_consistency(
        self, new_facts: Sequence[Fact], existing_facts: Sequence[Fact], *, cancel: CancelToken | None = None
    ) -> list[ConsistencyIssue]:
        check(cancel)
        self.calls.append((list(new_facts), list(existing_facts)))
        if self.error is not None:
            raise self.error
        if callable(self.issues):
            return self.issues(new_facts, existing_facts)
        return list(self.issues)


class CountingEmbedder(StubEmbedder):
    def __init__(self, dim: int = DIM, *, fail: Exception | None = None, short_by: int = 0):
        super().__init__(dim=dim)
        self.fail = fail
        self.short_by = short_by
        self.embed_calls = 0
        self.batch_calls: list[list[str]] = []

    def embed(self, text: str, *, cancel: CancelToken | None = None) -> list[float]:
        self.embed_calls += 1
        if self.fail is not None:
            raise self.fail
        return super().embed(text, cancel=cancel)

    def embed_batch(self, texts: Sequence[str], *, cancel: CancelToken | None = None) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        if self.fail is not None:
            raise self.fail
        out = super().embed_batch(texts, cancel=cancel)
        return out[: len(out) - self.short_by] if self.short_by else out


class RecordingVectorStore(InMemoryVectorStore):
    """In-memory store that counts calls and can be told to fail."""

    def __init__(self, *, fail_save: bool = False, fail_search: bool = False, fail_delete: bool = False):
        super().__init__()
        self.fail_save = fail_save
        self.fail_search = fail_search
        self.fail_delete = fail_delete
        self.save_batch_calls = 0
        self.search_calls = 0
        self.ops: list[str] = []

    def save_batch(self, facts, *, cancel=None):
        self.save_batch_calls += 1
        self.ops.append("vector.save")
        if self.fail_save:
            raise RuntimeError("disk full")
        super().save_batch(facts, cancel=cancel)

    def search_by_type(self, embedding, fact_type, limit, *, cancel=None):
        self.search_calls += 1
        if self.fail_search:
            raise RuntimeError("index offline")
        return super().search_by_type(embedding, fact_type, limit, cancel=cancel)

    def delete(self, fact_id, *, cancel=None):
        self.ops.append("vector.delete")
        if self.fail_delete:
            raise StoreError("deleting fact: unavailable")
        super().delete(fact_id, cancel=cancel)


class RecordingRelationalStore(InMemoryRelationalStore):
    def __init__(self, ops: list[str] | None = None, *, fail_delete: bool = False):
        super().__init__()
        self.ops = ops if ops is not None else []
        self.fail_delete = fail_delete
        self.list_type_calls = 0

    def list_entity_types(self, *, cancel=None):
        self.list_type_calls += 1
        return super().list_entity_types(cancel=cancel)

    def delete_relationship(self, rel_id, *, cancel=None):
        self.ops.append("relational.delete")
        if self.fail_delete:
            raise RuntimeError("locked")
        super().delete_relationship(rel_id, cancel=cancel)


def make_fact(type_: str = "character", subject: str = "Frodo", predicate: str = "is a", obj: str = "hobbit", **kw) -> Fact:
    return Fact(type=type_, subject=subject, predicate=predicate, object=obj, **kw)


@pytest.fixture
def embedder() -> CountingEmbedder:
    return CountingEmbedder()


@pytest.fixture
def vector_store() -> RecordingVectorStore:
    return RecordingVectorStore()


@pytest.fixture
def relational_store() -> RecordingRelationalStore:
    return RecordingRelationalStore()


@pytest.fixture
def taxonomy(relational_store) -> EntityTypeService:
    svc = EntityTypeService(relational_store)
    svc.load_defaults()
    return svc
