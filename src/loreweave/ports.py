"""Ports to the external collaborators the core drives.

Every method takes a keyword-only ``cancel`` token. Adapters are expected to
raise :class:`~loreweave.errors.StoreError` (stores) or
:class:`~loreweave.errors.LLMError` (model clients) on failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from .cancel import CancelToken
from .models import ConsistencyIssue, Entity, EntityType, Fact, Relationship


class FactExtractor(Protocol):
    """Turns one bounded segment of text into candidate facts."""

    def extract_facts(
        self, text: str, valid_types: Sequence[str], *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...


class ConsistencyChecker(Protocol):
    def check_consistency(
        self,
        new_facts: Sequence[Fact],
        existing_facts: Sequence[Fact],
        *,
        cancel: CancelToken | None = None,
    ) -> list[ConsistencyIssue]: ...


class Embedder(Protocol):
    dim: int

    def embed(self, text: str, *, cancel: CancelToken | None = None) -> list[float]: ...

    def embed_batch(
        self, texts: Sequence[str], *, cancel: CancelToken | None = None
    ) -> list[list[float]]: ...


class VectorStore(Protocol):
    """Fact storage with similarity search."""

    def ensure_collection(self, dim: int, *, cancel: CancelToken | None = None) -> None: ...

    def delete_collection(self, *, cancel: CancelToken | None = None) -> None: ...

    def save(self, fact: Fact, *, cancel: CancelToken | None = None) -> None: ...

    def save_batch(self, facts: Sequence[Fact], *, cancel: CancelToken | None = None) -> None: ...

    def find_by_id(self, fact_id: str, *, cancel: CancelToken | None = None) -> Fact: ...

    def find_by_ids(
        self, ids: Sequence[str], *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...

    def exists_by_ids(
        self, ids: Sequence[str], *, cancel: CancelToken | None = None
    ) -> dict[str, bool]: ...

    def delete(self, fact_id: str, *, cancel: CancelToken | None = None) -> None: ...

    def search(
        self, embedding: Sequence[float], limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...

    def search_by_type(
        self,
        embedding: Sequence[float],
        fact_type: str,
        limit: int,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Fact]: ...

    def list(
        self, limit: int, offset: int = 0, *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...

    def list_by_type(
        self, fact_type: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...

    def list_by_source(
        self, source_file: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]: ...

    def delete_by_source(self, source_file: str, *, cancel: CancelToken | None = None) -> None: ...

    def delete_all(self, *, cancel: CancelToken | None = None) -> None: ...

    def count(self, *, cancel: CancelToken | None = None) -> int: ...


class RelationalStore(Protocol):
    """Entities, relationships and entity types."""

    def ensure_schema(self, *, cancel: CancelToken | None = None) -> None: ...

    def close(self) -> None: ...

    # entities

    def save_entity(self, entity: Entity, *, cancel: CancelToken | None = None) -> None: ...

    def find_entity_by_name(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None: ...

    def find_or_create_entity(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None: ...

    def find_entity_by_id(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> Entity | None: ...

    def list_entities(
        self, world_id: str, limit: int, offset: int = 0, *, cancel: CancelToken | None = None
    ) -> list[Entity]: ...

    def search_entities(
        self, world_id: str, query: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Entity]: ...

    def delete_entity(self, entity_id: str, *, cancel: CancelToken | None = None) -> None: ...

    def count_entities(self, world_id: str, *, cancel: CancelToken | None = None) -> int: ...

    # relationships

    def save_relationship(self, rel: Relationship, *, cancel: CancelToken | None = None) -> None: ...

    def find_relationships_by_entity(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]: ...

    def find_relationships_touching(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]: ...

    def find_relationships_by_type(
        self, rel_type: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]: ...

    def delete_relationship(self, rel_id: str, *, cancel: CancelToken | None = None) -> None: ...

    def delete_relationships_by_entity(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> None: ...

    def find_relationship_between(
        self, source_id: str, target_id: str, *, cancel: CancelToken | None = None
    ) -> Relationship | None: ...

    def find_related_entities(
        self, entity_id: str, depth: int, *, cancel: CancelToken | None = None
    ) -> list[str]: ...

    def count_relationships(self, *, cancel: CancelToken | None = None) -> int: ...

    # entity types

    def save_entity_type(self, et: EntityType, *, cancel: CancelToken | None = None) -> None: ...

    def find_entity_type(
        self, name: str, *, cancel: CancelToken | None = None
    ) -> EntityType | None: ...

    def list_entity_types(self, *, cancel: CancelToken | None = None) -> list[EntityType]: ...

    def delete_entity_type(self, name: str, *, cancel: CancelToken | None = None) -> None: ...
