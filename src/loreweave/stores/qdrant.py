from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from qdrant_client import QdrantClient, models

from ..cancel import CancelToken, check
from ..errors import NotFoundError, StoreError, store_op
from ..models import Fact

logger = logging.getLogger(__name__)

# scroll page size for list/delete-by-filter operations
_PAGE = 256


@dataclass(frozen=True)
class QdrantStoreConfig:
    url: str = "http://localhost:6333"
    api_key: str | None = None
    collection: str = "lore_facts"
    timeout_s: float = 10.0


def build_client(cfg: QdrantStoreConfig) -> QdrantClient:
    if cfg.timeout_s <= 0:
        raise ValueError("timeout_s must be > 0")
    # Server may lag the client by a minor version; don't refuse to start over it.
    return QdrantClient(
        url=cfg.url,
        api_key=cfg.api_key,
        timeout=int(cfg.timeout_s),
        check_compatibility=False,
    )


def fact_payload(fact: Fact) -> dict[str, Any]:
    return {
        "type": fact.type,
        "subject": fact.subject,
        "predicate": fact.predicate,
        "object": fact.object,
        "context": fact.context,
        "source_file": fact.source_file,
        "source_line": fact.source_line,
        "confidence": fact.confidence,
        "created_at": fact.created_at.isoformat() if fact.created_at else None,
        "updated_at": fact.updated_at.isoformat() if fact.updated_at else None,
    }


def _dt(raw: Any) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def fact_from_point(point_id: Any, payload: dict[str, Any] | None, vector: Any = None) -> Fact:
    p = payload or {}
    if isinstance(vector, dict):
        # named vectors are not used; take the default one if present
        vector = vector.get("") or next(iter(vector.values()), None)
    return Fact(
        id=str(point_id),
        type=p.get("type", ""),
        subject=p.get("subject", ""),
        predicate=p.get("predicate", ""),
        object=p.get("object", ""),
        context=p.get("context", ""),
        source_file=p.get("source_file", ""),
        source_line=int(p.get("source_line") or 0),
        confidence=float(p.get("confidence", 1.0)),
        embedding=list(vector) if vector is not None else None,
        created_at=_dt(p.get("created_at")),
        updated_at=_dt(p.get("updated_at")),
    )


def _match(key: str, value: str) -> models.Filter:
    return models.Filter(must=[models.FieldCondition(key=key, match=models.MatchValue(value=value))])


class QdrantVectorStore:
    """Facts as Qdrant points: id = fact id (UUID), cosine distance, fact fields in the payload."""

    def __init__(self, client: QdrantClient, collection: str):
        self.client = client
        self.collection = collection

    @classmethod
    def from_config(cls, cfg: QdrantStoreConfig) -> QdrantVectorStore:
        return cls(build_client(cfg), cfg.collection)

    def ensure_collection(self, dim: int, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with store_op("ensuring collection"):
            if self.client.collection_exists(self.collection):
                return
            self.client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(size=dim, distance=models.Distance.COSINE),
            )
            for key in ("type", "source_file"):
                self.client.create_payload_index(
                    collection_name=self.collection,
                    field_name=key,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                )
        logger.info("Created collection %s (dim=%d)", self.collection, dim)

    def delete_collection(self, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with store_op("deleting collection"):
            self.client.delete_collection(collection_name=self.collection)

    def save(self, fact: Fact, *, cancel: CancelToken | None = None) -> None:
        self.save_batch([fact], cancel=cancel)

    def save_batch(self, facts: Sequence[Fact], *, cancel: CancelToken | None = None) -> None:
        if not facts:
            return
        points = []
        for f in facts:
            if f.embedding is None:
                raise StoreError(f"saving facts: fact {f.id} has no embedding")
            points.append(models.PointStruct(id=f.id, vector=list(f.embedding), payload=fact_payload(f)))
        check(cancel)
        with store_op("saving facts"):
            self.client.upsert(collection_name=self.collection, points=points, wait=True)

    def find_by_id(self, fact_id: str, *, cancel: CancelToken | None = None) -> Fact:
        found = self.find_by_ids([fact_id], cancel=cancel)
        if not found:
            raise NotFoundError(f"fact not found: {fact_id}")
        return found[0]

    def find_by_ids(self, ids: Sequence[str], *, cancel: CancelToken | None = None) -> list[Fact]:
        if not ids:
            return []
        check(cancel)
        with store_op("retrieving facts"):
            points = self.client.retrieve(
                collection_name=self.collection, ids=list(ids), with_payload=True, with_vectors=True
            )
        return [fact_from_point(p.id, p.payload, p.vector) for p in points]

    def exists_by_ids(self, ids: Sequence[str], *, cancel: CancelToken | None = None) -> dict[str, bool]:
        if not ids:
            return {}
        check(cancel)
        with store_op("checking fact ids"):
            points = self.client.retrieve(
                collection_name=self.collection, ids=list(ids), with_payload=False, with_vectors=False
            )
        present = {str(p.id) for p in points}
        return {i: i in present for i in ids}

    def delete(self, fact_id: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with store_op("deleting fact"):
            self.client.delete(
                collection_name=self.collection,
                points_selector=models.PointIdsList(points=[fact_id]),
                wait=True,
            )

    def _query(
        self, embedding: Sequence[float], limit: int, flt: models.Filter | None, cancel: CancelToken | None
    ) -> list[Fact]:
        check(cancel)
        with store_op("searching facts"):
            res = self.client.query_points(
                collection_name=self.collection,
                query=list(embedding),
                query_filter=flt,
                limit=limit,
                with_payload=True,
                with_vectors=True,
            )
        return [fact_from_point(p.id, p.payload, p.vector) for p in res.points]

    def search(
        self, embedding: Sequence[float], limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        return self._query(embedding, limit, None, cancel)

    def search_by_type(
        self,
        embedding: Sequence[float],
        fact_type: str,
        limit: int,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Fact]:
        return self._query(embedding, limit, _match("type", fact_type), cancel)

    def _scroll(
        self, flt: models.Filter | None, limit: int, skip: int, cancel: CancelToken | None
    ) -> list[Fact]:
        # Qdrant paginates by point id, so integer offsets are emulated by skipping.
        out: list[Fact] = []
        next_offset = None
        seen = 0
        while len(out) < limit:
            check(cancel)
            with store_op("listing facts"):
                points, next_offset = self.client.scroll(
                    collection_name=self.collection,
                    scroll_filter=flt,
                    limit=_PAGE,
                    offset=next_offset,
                    with_payload=True,
                    with_vectors=False,
                )
            for p in points:
                seen += 1
                if seen <= skip:
                    continue
                out.append(fact_from_point(p.id, p.payload))
                if len(out) >= limit:
                    break
            if next_offset is None:
                break
        return out

    def list(self, limit: int, offset: int = 0, *, cancel: CancelToken | None = None) -> list[Fact]:
        return self._scroll(None, limit, offset, cancel)

    def list_by_type(self, fact_type: str, limit: int, *, cancel: CancelToken | None = None) -> list[Fact]:
        return self._scroll(_match("type", fact_type), limit, 0, cancel)

    def list_by_source(
        self, source_file: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        return self._scroll(_match("source_file", source_file), limit, 0, cancel)

    def delete_by_source(self, source_file: str, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with store_op("deleting facts by source"):
            self.client.delete(
                collection_name=self.collection,
                points_selector=models.FilterSelector(filter=_match("source_file", source_file)),
                wait=True,
            )

    def delete_all(self, *, cancel: CancelToken | None = None) -> None:
        check(cancel)
        with store_op("deleting all facts"):
            self.client.delete(
                collection_name=self.collection,
                points_selector=models.FilterSelector(filter=models.Filter()),
                wait=True,
            )

    def count(self, *, cancel: CancelToken | None = None) -> int:
        check(cancel)
        with store_op("counting facts"):
            return int(self.client.count(collection_name=self.collection, exact=True).count)
