"""Relationships between named entities.

A relationship lives in two stores: the edge itself in the relational store
(for graph queries) and a derived fact with the same id in the vector store
(for semantic search). There is no transaction spanning both, so ``create``
writes the edge first and deletes it again if the derived fact cannot be
stored. A crash between the two writes can leave an orphaned edge; the pair
is eventually, not atomically, consistent.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from .cancel import CancelToken, check
from .errors import AlreadyExistsError, EmbeddingError, LoreError, NotFoundError, store_op
from .models import (
    RELATIONSHIP_FACT_TYPE,
    Entity,
    Fact,
    RelatedEntity,
    Relationship,
    RelationType,
    utcnow,
)
from .ports import Embedder, RelationalStore, VectorStore

logger = logging.getLogger(__name__)

RELATIONSHIP_SOURCE = "relationship"


def relationship_fact(rel: Relationship, source_name: str, target_name: str) -> Fact:
    """The searchable fact mirroring a relationship. Shares the relationship id."""
    return Fact(
        id=rel.id,
        type=RELATIONSHIP_FACT_TYPE,
        subject=source_name,
        predicate=rel.type.value,
        object=target_name,
        context=f"Relationship between {source_name} and {target_name}",
        source_file=RELATIONSHIP_SOURCE,
        confidence=1.0,
        created_at=rel.created_at,
        updated_at=rel.created_at,
    )


class RelationshipService:
    def __init__(self, vector_store: VectorStore, relational_store: RelationalStore, embedder: Embedder):
        self.vector_store = vector_store
        self.relational_store = relational_store
        self.embedder = embedder

    def _resolve(self, world_id: str, name: str, role: str, cancel: CancelToken | None) -> Entity:
        check(cancel)
        with store_op(f"finding/creating {role} entity"):
            entity = self.relational_store.find_or_create_entity(world_id, name, cancel=cancel)
        if entity is None:
            raise NotFoundError(f"{role} entity {name!r} not found in world {world_id!r}", name=name)
        return entity

    def create(
        self,
        world_id: str,
        source_name: str,
        rel_type: RelationType | str,
        target_name: str,
        bidirectional: bool = False,
        *,
        cancel: CancelToken | None = None,
    ) -> Relationship:
        """Create an edge between two entities, creating the entities if needed."""
        rel_type = RelationType.parse(rel_type)
        source = self._resolve(world_id, source_name, "source", cancel)
        target = self._resolve(world_id, target_name, "target", cancel)

        check(cancel)
        # one edge per unordered pair: look in both directions
        with store_op("checking existing relationship"):
            existing = self.relational_store.find_relationship_between(
                source.id, target.id, cancel=cancel
            ) or self.relational_store.find_relationship_between(target.id, source.id, cancel=cancel)
        if existing is not None:
            raise AlreadyExistsError(
                f"relationship already exists between {source.name!r} and {target.name!r} "
                f"(id: {existing.id})",
                existing_id=existing.id,
            )

        rel = Relationship(
            source_entity_id=source.id,
            target_entity_id=target.id,
            type=rel_type,
            bidirectional=bidirectional,
            created_at=utcnow(),
        )
        check(cancel)
        with store_op("saving relationship to relational store"):
            self.relational_store.save_relationship(rel, cancel=cancel)

        try:
            self._save_fact(rel, source.name, target.name, cancel)
        except Exception:
            self._rollback(rel)
            raise

        logger.info("Created relationship %s: %s %s %s", rel.id, source.name, rel_type.value, target.name)
        return rel

    def _save_fact(self, rel: Relationship, source_name: str, target_name: str, cancel: CancelToken | None) -> None:
        fact = relationship_fact(rel, source_name, target_name)
        check(cancel)
        try:
            embedding = self.embedder.embed(f"{source_name} {rel.type.value} {target_name}", cancel=cancel)
        except LoreError:
            raise
        except Exception as e:
            raise EmbeddingError(f"generating relationship embedding: {e}") from e
        check(cancel)
        with store_op("saving relationship fact"):
            self.vector_store.save(dataclasses.replace(fact, embedding=list(embedding)), cancel=cancel)

    def _rollback(self, rel: Relationship) -> None:
        # Best effort; runs even if the cancel token has fired.
        try:
            self.relational_store.delete_relationship(rel.id)
        except Exception as e:
            logger.warning("Failed to roll back relationship %s: %s", rel.id, e)

    def delete(self, rel_id: str, *, cancel: CancelToken | None = None) -> None:
        """Delete the derived fact, then the edge. Nothing is touched if the first step fails."""
        check(cancel)
        with store_op("deleting relationship fact"):
            self.vector_store.delete(rel_id, cancel=cancel)
        check(cancel)
        with store_op("deleting relationship"):
            self.relational_store.delete_relationship(rel_id, cancel=cancel)
        logger.info("Deleted relationship %s", rel_id)

    def list(
        self,
        entity_id: str,
        rel_type: RelationType | str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Relationship]:
        """Edges where the entity is the source, or the target of a bidirectional edge."""
        wanted = RelationType.parse(rel_type) if rel_type is not None else None
        check(cancel)
        with store_op("listing relationships"):
            rels = self.relational_store.find_relationships_by_entity(entity_id, cancel=cancel)
        if wanted is not None:
            rels = [r for r in rels if r.type is wanted]
        return rels

    def list_by_name(
        self,
        world_id: str,
        name: str,
        rel_type: RelationType | str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Relationship]:
        check(cancel)
        with store_op("finding entity"):
            entity = self.relational_store.find_entity_by_name(world_id, name, cancel=cancel)
        if entity is None:
            return []
        return self.list(entity.id, rel_type, cancel=cancel)

    def list_with_depth(
        self, entity_id: str, depth: int, *, cancel: CancelToken | None = None
    ) -> list[RelatedEntity]:
        """Entities reachable within ``depth`` hops.

        Depth 1 is exact. Deeper traversal relies on the store's bounded
        expansion and does not report the hop count per entity (depth=0).
        """
        if depth < 1:
            return []
        check(cancel)
        with store_op("finding related entities"):
            ids = self.relational_store.find_related_entities(entity_id, depth, cancel=cancel)
        reported = 1 if depth == 1 else 0
        return [RelatedEntity(entity_id=i, depth=reported) for i in ids]

    def find_between(
        self, source_id: str, target_id: str, *, cancel: CancelToken | None = None
    ) -> Relationship | None:
        check(cancel)
        with store_op("finding relationship"):
            return self.relational_store.find_relationship_between(source_id, target_id, cancel=cancel)

    def find_between_names(
        self, world_id: str, source_name: str, target_name: str, *, cancel: CancelToken | None = None
    ) -> Relationship | None:
        check(cancel)
        with store_op("finding entity"):
            source = self.relational_store.find_entity_by_name(world_id, source_name, cancel=cancel)
            target = self.relational_store.find_entity_by_name(world_id, target_name, cancel=cancel)
        if source is None or target is None:
            return None
        return self.find_between(source.id, target.id, cancel=cancel)

    def count(self, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with store_op("counting relationships"):
            return self.relational_store.count_relationships(cancel=cancel)


@dataclass(slots=True)
class EntityService:
    relational_store: RelationalStore
    # holds the facts derived from the entity's relationships
    vector_store: VectorStore

    def find_or_create(self, world_id: str, name: str, *, cancel: CancelToken | None = None) -> Entity | None:
        check(cancel)
        with store_op("finding/creating entity"):
            return self.relational_store.find_or_create_entity(world_id, name, cancel=cancel)

    def find_by_name(self, world_id: str, name: str, *, cancel: CancelToken | None = None) -> Entity | None:
        check(cancel)
        with store_op("finding entity"):
            return self.relational_store.find_entity_by_name(world_id, name, cancel=cancel)

    def find_by_id(self, entity_id: str, *, cancel: CancelToken | None = None) -> Entity | None:
        check(cancel)
        with store_op("finding entity"):
            return self.relational_store.find_entity_by_id(entity_id, cancel=cancel)

    def list(
        self, world_id: str, limit: int = 100, offset: int = 0, *, cancel: CancelToken | None = None
    ) -> list[Entity]:
        check(cancel)
        with store_op("listing entities"):
            return self.relational_store.list_entities(world_id, limit, offset, cancel=cancel)

    def search(self, world_id: str, query: str, limit: int = 20, *, cancel: CancelToken | None = None) -> list[Entity]:
        check(cancel)
        with store_op("searching entities"):
            return self.relational_store.search_entities(world_id, query, limit, cancel=cancel)

    def delete(self, entity_id: str, *, cancel: CancelToken | None = None) -> None:
        """Delete an entity after its relationships.

        Each relationship goes the way :meth:`RelationshipService.delete`
        removes one: derived fact first, then the edge. A failed fact delete
        leaves every edge and the entity in place.
        """
        check(cancel)
        with store_op("finding entity relationships"):
            rels = self.relational_store.find_relationships_touching(entity_id, cancel=cancel)
        for rel in rels:
            check(cancel)
            with store_op("deleting relationship fact"):
                self.vector_store.delete(rel.id, cancel=cancel)
        check(cancel)
        with store_op("deleting entity relationships"):
            self.relational_store.delete_relationships_by_entity(entity_id, cancel=cancel)
        check(cancel)
        with store_op("deleting entity"):
            self.relational_store.delete_entity(entity_id, cancel=cancel)

    def count(self, world_id: str, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with store_op("counting entities"):
            return self.relational_store.count_entities(world_id, cancel=cancel)
