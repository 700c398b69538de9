"""Wiring: builds ports and services from settings.

Everything is constructed lazily so that a command touching only the
relational store (e.g. ``types list``) needs no LLM credentials or Qdrant.
"""

from __future__ import annotations

import logging
import os
from functools import cached_property

from .cancel import CancelToken, check
from .embedder import build_embedder
from .errors import store_op
from .extraction import ExtractionService
from .importer import ImportService
from .query import QueryService
from .relationships import EntityService, RelationshipService
from .settings import LoreweaveSettings
from .taxonomy import EntityTypeService

logger = logging.getLogger(__name__)


class Services:
    def __init__(self, settings: LoreweaveSettings):
        self.settings = settings

    # --- ports ---

    @cached_property
    def relational_store(self):
        from .stores.sqlite import open_store

        path = self.settings.resolved_sqlite_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        return open_store(path)

    @cached_property
    def vector_store(self):
        s = self.settings
        if s.vector_backend == "memory":
            from .stores.memory import InMemoryVectorStore

            logger.warning("Using the in-memory vector store; facts will not outlive this process")
            return InMemoryVectorStore()

        from .stores.qdrant import QdrantStoreConfig, QdrantVectorStore

        return QdrantVectorStore.from_config(
            QdrantStoreConfig(url=s.qdrant_url, api_key=s.qdrant_api_key, collection=s.resolved_collection)
        )

    @cached_property
    def embedder(self):
        s = self.settings
        return build_embedder(
            s.embedding_backend,
            dim=s.embedding_dim,
            st_model=s.st_model,
            api_key=s.llm_api_key,
            base_url=s.llm_base_url,
            model=s.embedding_model,
        )

    @cached_property
    def chat(self):
        from .llm.openai import OpenAIChatClient

        s = self.settings
        return OpenAIChatClient(s.llm_api_key or "", s.llm_base_url, s.llm_model)

    # --- services ---

    @cached_property
    def taxonomy(self) -> EntityTypeService:
        return EntityTypeService(self.relational_store)

    @cached_property
    def extraction(self) -> ExtractionService:
        s = self.settings
        return ExtractionService(
            self.chat,
            self.embedder,
            self.vector_store,
            self.taxonomy,
            self.chat,
            segment_size=s.segment_size,
            overlap=s.segment_overlap,
            consistency_neighbors=s.consistency_neighbors,
        )

    @cached_property
    def importer(self) -> ImportService:
        return ImportService(self.embedder, self.vector_store, self.taxonomy)

    @cached_property
    def query(self) -> QueryService:
        return QueryService(self.embedder, self.vector_store)

    @cached_property
    def relationships(self) -> RelationshipService:
        return RelationshipService(self.vector_store, self.relational_store, self.embedder)

    @cached_property
    def entities(self) -> EntityService:
        return EntityService(self.relational_store, self.vector_store)

    def initialize(self, *, cancel: CancelToken | None = None) -> int:
        """Create the schema and collection, seed default types. Returns the seeded count."""
        check(cancel)
        with store_op("ensuring collection"):
            self.vector_store.ensure_collection(self.embedder.dim, cancel=cancel)
        return self.taxonomy.load_defaults(cancel=cancel)

    def close(self) -> None:
        for name in ("chat", "embedder"):
            obj = self.__dict__.get(name)
            if obj is not None and hasattr(obj, "close"):
                obj.close()
        store = self.__dict__.get("relational_store")
        if store is not None:
            store.close()
