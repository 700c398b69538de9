from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .cancel import CancelToken, check
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


@dataclass
class StubEmbedder:
    """Deterministic bag-of-bytes hashing embedder. No model, no network.

    Good enough for tests and offline dry runs: identical texts map to
    identical vectors and similar texts land close together.
    """

    dim: int = 384

    def _vector(self, text: str) -> list[float]:
        v = [0.0] * self.dim
        b = text.encode("utf-8", errors="ignore")
        for i, ch in enumerate(b):
            v[(i + ch) % self.dim] += 1.0
        norm = sum(x * x for x in v) ** 0.5
        if norm:
            v = [x / norm for x in v]
        return v

    def embed(self, text: str, *, cancel: CancelToken | None = None) -> list[float]:
        check(cancel)
        return self._vector(text)

    def embed_batch(self, texts: Sequence[str], *, cancel: CancelToken | None = None) -> list[list[float]]:
        check(cancel)
        return [self._vector(t) for t in texts]


class SentenceTransformersEmbedder:
    def __init__(self, model_name: str):
        from sentence_transformers import SentenceTransformer

        self._m = SentenceTransformer(model_name)
        self.dim = int(self._m.get_sentence_embedding_dimension() or 384)

    def embed(self, text: str, *, cancel: CancelToken | None = None) -> list[float]:
        return self.embed_batch([text], cancel=cancel)[0]

    def embed_batch(self, texts: Sequence[str], *, cancel: CancelToken | None = None) -> list[list[float]]:
        check(cancel)
        vecs = self._m.encode(list(texts), normalize_embeddings=True)
        return [v.tolist() for v in vecs]


def build_embedder(
    backend: str,
    *,
    dim: int,
    st_model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    model: str | None = None,
):
    """Pick the embedder named by ``backend`` (openai | stub | sentence_transformers)."""
    if backend == "stub":
        return StubEmbedder(dim=dim)
    if backend == "sentence_transformers":
        if not st_model:
            raise EmbeddingError("sentence_transformers backend needs st_model")
        try:
            return SentenceTransformersEmbedder(st_model)
        except ImportError as e:
            raise EmbeddingError(
                "sentence-transformers is not installed. Install with: pip install 'loreweave[st]'"
            ) from e
    if backend == "openai":
        from .llm.openai import OpenAIEmbedder

        kwargs = {"model": model, "dim": dim}
        if base_url:
            kwargs["base_url"] = base_url
        return OpenAIEmbedder(api_key or "", **kwargs)
    raise EmbeddingError(f"unknown embedding backend {backend!r}")
