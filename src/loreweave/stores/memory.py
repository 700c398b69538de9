"""In-process stores, used by tests, dry runs and ``vector_backend=memory``."""

from __future__ import annotations

import math
import threading
from collections import deque
from collections.abc import Sequence

from ..cancel import CancelToken, check
from ..errors import NotFoundError, StoreError
from ..models import Entity, EntityType, Fact, Relationship, normalize_name


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


class InMemoryVectorStore:
    def __init__(self) -> None:
        self._facts: dict[str, Fact] = {}
        self._dim: int | None = None
        self._lock = threading.Lock()

    def ensure_collection(self, dim: int, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            if self._dim is None:
                self._dim = dim

    def delete_collection(self, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            self._facts.clear()
            self._dim = None

    def _validate(self, fact: Fact) -> None:
        if not fact.id:
            raise StoreError("saving fact: missing id")
        if fact.embedding is None:
            raise StoreError(f"saving fact {fact.id}: missing embedding")
        if self._dim is not None and len(fact.embedding) != self._dim:
            raise StoreError(
                f"saving fact {fact.id}: embedding has dim {len(fact.embedding)}, expected {self._dim}"
            )

    def save(self, fact: Fact, *, cancel: CancelToken | None = None) -> None:
        self.save_batch([fact], cancel=cancel)

    def save_batch(self, facts: Sequence[Fact], *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            for f in facts:
                self._validate(f)
            for f in facts:
                self._facts[f.id] = f

    def find_by_id(self, fact_id: str, *, cancel: CancelToken | None = None) -> Fact:
        check(cancel)
        with self._lock:
            fact = self._facts.get(fact_id)
        if fact is None:
            raise NotFoundError(f"fact not found: {fact_id}")
        return fact

    def find_by_ids(self, ids: Sequence[str], *, cancel: CancelToken | None = None) -> list[Fact]:
        check(cancel)
        with self._lock:
            return [self._facts[i] for i in ids if i in self._facts]

    def exists_by_ids(self, ids: Sequence[str], *, cancel: CancelToken | None = None) -> dict[str, bool]:
        check(cancel)
        with self._lock:
            return {i: i in self._facts for i in ids}

    def delete(self, fact_id: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            self._facts.pop(fact_id, None)

    def _ranked(self, embedding: Sequence[float], facts: list[Fact], limit: int) -> list[Fact]:
        scored = [(cosine(embedding, f.embedding), f) for f in facts if f.embedding is not None]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [f for _, f in scored[:limit]]

    def search(
        self, embedding: Sequence[float], limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        check(cancel)
        with self._lock:
            facts = list(self._facts.values())
        return self._ranked(embedding, facts, limit)

    def search_by_type(
        self,
        embedding: Sequence[float],
        fact_type: str,
        limit: int,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Fact]:
        check(cancel)
        with self._lock:
            facts = [f for f in self._facts.values() if f.type == fact_type]
        return self._ranked(embedding, facts, limit)

    def list(self, limit: int, offset: int = 0, *, cancel: CancelToken | None = None) -> list[Fact]:
        check(cancel)
        with self._lock:
            return list(self._facts.values())[offset : offset + limit]

    def list_by_type(self, fact_type: str, limit: int, *, cancel: CancelToken | None = None) -> list[Fact]:
        check(cancel)
        with self._lock:
            return [f for f in self._facts.values() if f.type == fact_type][:limit]

    def list_by_source(
        self, source_file: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        check(cancel)
        with self._lock:
            return [f for f in self._facts.values() if f.source_file == source_file][:limit]

    def delete_by_source(self, source_file: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            for fid in [f.id for f in self._facts.values() if f.source_file == source_file]:
                del self._facts[fid]

    def delete_all(self, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            self._facts.clear()

    def count(self, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with self._lock:
            return len(self._facts)


class InMemoryRelationalStore:
    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._relationships: dict[str, Relationship] = {}
        self._types: dict[str, EntityType] = {}
        self._lock = threading.RLock()

    def ensure_schema(self, *, cancel: CancelToken | None = None) -> None:
        check(cancel)

    def close(self) -> None:
        pass

    # --- entities ---

    def _by_name(self, world_id: str, name: str) -> Entity | None:
        key = normalize_name(name)
        for e in self._entities.values():
            if e.world_id == world_id and e.normalized_name == key:
                return e
        return None

    def save_entity(self, entity: Entity, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            existing = self._by_name(entity.world_id, entity.name)
            if existing is not None and existing.id != entity.id:
                # unique (world, normalized name): keep the stored id, take the new display name
                self._entities[existing.id] = Entity(
                    id=existing.id,
                    world_id=existing.world_id,
                    name=entity.name,
                    normalized_name=existing.normalized_name,
                    created_at=existing.created_at,
                )
                return
            self._entities[entity.id] = entity

    def find_entity_by_name(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None:
        check(cancel)
        with self._lock:
            return self._by_name(world_id, name)

    def find_or_create_entity(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None:
        check(cancel)
        with self._lock:
            entity = self._by_name(world_id, name)
            if entity is None:
                entity = Entity.create(world_id, name)
                self._entities[entity.id] = entity
            return entity

    def find_entity_by_id(self, entity_id: str, *, cancel: CancelToken | None = None) -> Entity | None:
        check(cancel)
        with self._lock:
            return self._entities.get(entity_id)

    def list_entities(
        self, world_id: str, limit: int, offset: int = 0, *, cancel: CancelToken | None = None
    ) -> list[Entity]:
        check(cancel)
        with self._lock:
            found = sorted(
                (e for e in self._entities.values() if e.world_id == world_id), key=lambda e: e.name
            )
        return found[offset : offset + limit]

    def search_entities(
        self, world_id: str, query: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Entity]:
        check(cancel)
        needle = normalize_name(query)
        with self._lock:
            found = sorted(
                (
                    e
                    for e in self._entities.values()
                    if e.world_id == world_id and needle in e.normalized_name
                ),
                key=lambda e: e.name,
            )
        return found[:limit]

    def delete_entity(self, entity_id: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            if self._entities.pop(entity_id, None) is None:
                raise NotFoundError(f"entity not found: {entity_id}")

    def count_entities(self, world_id: str, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with self._lock:
            return sum(1 for e in self._entities.values() if e.world_id == world_id)

    # --- relationships ---

    def save_relationship(self, rel: Relationship, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            self._relationships[rel.id] = rel

    def find_relationships_by_entity(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        check(cancel)
        with self._lock:
            rels = [
                r
                for r in self._relationships.values()
                if r.source_entity_id == entity_id
                or (r.bidirectional and r.target_entity_id == entity_id)
            ]
        return sorted(rels, key=lambda r: r.created_at, reverse=True)

    def find_relationships_touching(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        check(cancel)
        with self._lock:
            rels = [
                r
                for r in self._relationships.values()
                if entity_id in (r.source_entity_id, r.target_entity_id)
            ]
        return sorted(rels, key=lambda r: r.created_at, reverse=True)

    def find_relationships_by_type(
        self, rel_type: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        check(cancel)
        with self._lock:
            rels = [r for r in self._relationships.values() if r.type.value == rel_type]
        return sorted(rels, key=lambda r: r.created_at, reverse=True)

    def delete_relationship(self, rel_id: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            if self._relationships.pop(rel_id, None) is None:
                raise NotFoundError(f"relationship not found: {rel_id}")

    def delete_relationships_by_entity(self, entity_id: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            doomed = [
                r.id
                for r in self._relationships.values()
                if entity_id in (r.source_entity_id, r.target_entity_id)
            ]
            for rid in doomed:
                del self._relationships[rid]

    def find_relationship_between(
        self, source_id: str, target_id: str, *, cancel: CancelToken | None = None
    ) -> Relationship | None:
        check(cancel)
        with self._lock:
            for r in self._relationships.values():
                if r.source_entity_id == source_id and r.target_entity_id == target_id:
                    return r
                if r.bidirectional and r.source_entity_id == target_id and r.target_entity_id == source_id:
                    return r
        return None

    def _neighbours(self, entity_id: str) -> list[str]:
        out = []
        for r in self._relationships.values():
            if r.source_entity_id == entity_id:
                out.append(r.target_entity_id)
            elif r.bidirectional and r.target_entity_id == entity_id:
                out.append(r.source_entity_id)
        return out

    def find_related_entities(
        self, entity_id: str, depth: int, *, cancel: CancelToken | None = None
    ) -> list[str]:
        check(cancel)
        if depth < 1:
            return []
        seen = {entity_id}
        found: set[str] = set()
        queue = deque([(entity_id, 0)])
        with self._lock:
            while queue:
                current, level = queue.popleft()
                if level >= depth:
                    continue
                for nxt in self._neighbours(current):
                    if nxt in seen:
                        continue
                    seen.add(nxt)
                    found.add(nxt)
                    queue.append((nxt, level + 1))
        return sorted(found)

    def count_relationships(self, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with self._lock:
            return len(self._relationships)

    # --- entity types ---

    def save_entity_type(self, et: EntityType, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            self._types[et.name] = et

    def find_entity_type(self, name: str, *, cancel: CancelToken | None = None) -> EntityType | None:
        check(cancel)
        with self._lock:
            return self._types.get(name)

    def list_entity_types(self, *, cancel: CancelToken | None = None) -> list[EntityType]:
        check(cancel)
        with self._lock:
            return sorted(self._types.values(), key=lambda t: t.name)

    def delete_entity_type(self, name: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with self._lock:
            if self._types.pop(name, None) is None:
                raise NotFoundError(f"entity type not found: {name}", name=name)
