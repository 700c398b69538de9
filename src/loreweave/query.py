from __future__ import annotations

from .cancel import CancelToken, check
from .errors import Cancelled, EmbeddingError, store_op
from .models import Fact
from .ports import Embedder, VectorStore


class QueryService:
    """Semantic search over stored facts."""

    def __init__(self, embedder: Embedder, vector_store: VectorStore):
        self.embedder = embedder
        self.vector_store = vector_store

    def search(
        self,
        query: str,
        limit: int = 10,
        fact_type: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> list[Fact]:
        check(cancel)
        try:
            embedding = self.embedder.embed(query, cancel=cancel)
        except Cancelled:
            raise
        except Exception as e:
            raise EmbeddingError(f"generating query embedding: {e}") from e

        check(cancel)
        with store_op("searching facts"):
            if fact_type:
                return self.vector_store.search_by_type(embedding, fact_type, limit, cancel=cancel)
            return self.vector_store.search(embedding, limit, cancel=cancel)
