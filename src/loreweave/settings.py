from __future__ import annotations

import os
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoreweaveSettings(BaseSettings):
    """Runtime configuration.

    Environment variables are prefixed with LOREWEAVE_ and may also come from
    a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(env_prefix="LOREWEAVE_", env_file=".env", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")
    world: str = Field(default="default", description="World id entities are scoped to")
    data_dir: str = Field(default="~/.loreweave")
    sqlite_path: str | None = Field(default=None, description="Defaults to <data_dir>/<world>.db")

    # --- Vector store ---
    vector_backend: Literal["memory", "qdrant"] = "qdrant"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_collection: str | None = Field(default=None, description="Defaults to lore_<world>")

    # --- LLM (OpenAI-compatible) ---
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"

    # --- Embeddings ---
    embedding_backend: Literal["openai", "stub", "sentence_transformers"] = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = Field(default=1536, gt=0)
    st_model: str | None = Field(default=None, description="sentence-transformers model name")

    # --- Pipeline ---
    segment_size: int = Field(default=2000, gt=0)
    segment_overlap: int = Field(default=200, ge=0)
    consistency_neighbors: int = Field(default=5, gt=0)

    @field_validator("log_level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return (v or "INFO").upper()

    @model_validator(mode="after")
    def _overlap_below_size(self) -> LoreweaveSettings:
        if self.segment_overlap >= self.segment_size:
            raise ValueError("segment_overlap must be smaller than segment_size")
        return self

    @property
    def resolved_data_dir(self) -> str:
        return os.path.expanduser(self.data_dir)

    @property
    def resolved_sqlite_path(self) -> str:
        if self.sqlite_path:
            return os.path.expanduser(self.sqlite_path)
        return os.path.join(self.resolved_data_dir, f"{self.world}.db")

    @property
    def resolved_collection(self) -> str:
        return self.qdrant_collection or f"lore_{self.world}"
