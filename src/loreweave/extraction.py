"""Fact ingestion pipeline.

text -> segments -> per-segment extraction -> one embedding batch ->
optional consistency check -> one batched save.

Only extraction runs once per segment (the model's input window is bounded).
Embedding, the consistency check and the save are each issued once for the
whole fact set.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TextIO

from .cancel import CancelToken, check
from .errors import Cancelled, ConsistencyCheckError, EmbeddingError, ExtractionError, LoreError, store_op
from .models import ConsistencyIssue, Fact, new_id, utcnow
from .ports import ConsistencyChecker, Embedder, FactExtractor, VectorStore
from .segmenter import DEFAULT_OVERLAP, DEFAULT_SEGMENT_SIZE, iter_segments, split_text
from .taxonomy import EntityTypeService

logger = logging.getLogger(__name__)

# Nearest same-type neighbours fetched per new fact for the consistency check.
CONSISTENCY_NEIGHBORS = 5


@dataclass(frozen=True)
class ExtractionOptions:
    check_consistency: bool = False  # look for contradictions with stored facts
    check_only: bool = False  # preview: return everything, save nothing


@dataclass
class ExtractionStats:
    segments: int = 0
    extract_ms: float = 0.0
    embed_ms: float = 0.0
    check_ms: float = 0.0
    save_ms: float = 0.0


@dataclass
class ExtractionResult:
    facts: list[Fact] = field(default_factory=list)
    issues: list[ConsistencyIssue] = field(default_factory=list)
    # set when the advisory consistency phase failed and was skipped
    consistency_error: str | None = None
    saved: bool = False
    stats: ExtractionStats = field(default_factory=ExtractionStats)


def embed_facts(
    embedder: Embedder, facts: Sequence[Fact], *, cancel: CancelToken | None = None
) -> list[Fact]:
    """Attach embeddings to every fact using a single batched call."""
    if not facts:
        return []
    texts = [f.to_text() for f in facts]
    check(cancel)
    try:
        vectors = embedder.embed_batch(texts, cancel=cancel)
    except Cancelled:
        raise
    except Exception as e:
        raise EmbeddingError(f"generating embeddings: {e}") from e
    if len(vectors) != len(facts):
        raise EmbeddingError(
            f"generating embeddings: expected {len(facts)} vectors, got {len(vectors)}"
        )
    return [dataclasses.replace(f, embedding=list(v)) for f, v in zip(facts, vectors)]


def find_consistency_issues(
    vector_store: VectorStore,
    checker: ConsistencyChecker,
    new_facts: Sequence[Fact],
    *,
    neighbors: int = CONSISTENCY_NEIGHBORS,
    cancel: CancelToken | None = None,
) -> list[ConsistencyIssue]:
    """Compare new facts against their nearest stored same-type facts.

    Candidates are collected with cheap store searches, deduplicated by id
    (first occurrence wins), then judged in one checker call.
    """
    new_ids = {f.id for f in new_facts}
    candidates: dict[str, Fact] = {}
    for fact in new_facts:
        if fact.embedding is None:
            continue
        check(cancel)
        with store_op("searching similar facts"):
            similar = vector_store.search_by_type(fact.embedding, fact.type, neighbors, cancel=cancel)
        for s in similar:
            if s.id in new_ids:
                continue
            candidates.setdefault(s.id, s)

    if not candidates:
        return []

    check(cancel)
    try:
        return checker.check_consistency(list(new_facts), list(candidates.values()), cancel=cancel)
    except LoreError:
        raise
    except Exception as e:
        raise ConsistencyCheckError(f"checking consistency: {e}") from e


class ExtractionService:
    def __init__(
        self,
        extractor: FactExtractor,
        embedder: Embedder,
        vector_store: VectorStore,
        taxonomy: EntityTypeService,
        checker: ConsistencyChecker | None = None,
        *,
        segment_size: int = DEFAULT_SEGMENT_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        consistency_neighbors: int = CONSISTENCY_NEIGHBORS,
    ):
        self.extractor = extractor
        self.embedder = embedder
        self.vector_store = vector_store
        self.taxonomy = taxonomy
        self.checker = checker
        self.segment_size = segment_size
        self.overlap = overlap
        self.consistency_neighbors = consistency_neighbors

    def extract_and_store(
        self,
        text: str,
        source_file: str,
        options: ExtractionOptions | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> ExtractionResult:
        segments = split_text(text, self.segment_size, self.overlap)
        return self._run(segments, source_file, options or ExtractionOptions(), cancel)

    def extract_from_stream(
        self,
        stream: TextIO,
        source_file: str,
        options: ExtractionOptions | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> ExtractionResult:
        """Like :meth:`extract_and_store` but reads the input incrementally."""
        segments = iter_segments(stream, self.segment_size, self.overlap)
        return self._run(segments, source_file, options or ExtractionOptions(), cancel)

    def _run(
        self,
        segments: Iterable[str],
        source_file: str,
        opts: ExtractionOptions,
        cancel: CancelToken | None,
    ) -> ExtractionResult:
        result = ExtractionResult()
        stats = result.stats

        # fetched once per document, not per segment
        check(cancel)
        valid_types = self.taxonomy.valid_types(cancel=cancel)

        t0 = time.perf_counter()
        facts = self._extract(segments, source_file, valid_types, stats, cancel)
        stats.extract_ms = (time.perf_counter() - t0) * 1000.0

        if not facts:
            logger.info("No facts extracted from %s (%d segments)", source_file, stats.segments)
            return result

        t1 = time.perf_counter()
        facts = embed_facts(self.embedder, facts, cancel=cancel)
        stats.embed_ms = (time.perf_counter() - t1) * 1000.0
        result.facts = facts

        if opts.check_consistency:
            t2 = time.perf_counter()
            self._check(result, cancel)
            stats.check_ms = (time.perf_counter() - t2) * 1000.0

        if not opts.check_only:
            t3 = time.perf_counter()
            check(cancel)
            with store_op("saving facts"):
                self.vector_store.save_batch(facts, cancel=cancel)
            stats.save_ms = (time.perf_counter() - t3) * 1000.0
            result.saved = True

        logger.info(
            "Extracted %d facts from %s (%d segments, %d issues, saved=%s)",
            len(facts),
            source_file,
            stats.segments,
            len(result.issues),
            result.saved,
        )
        return result

    def _extract(
        self,
        segments: Iterable[str],
        source_file: str,
        valid_types: Sequence[str],
        stats: ExtractionStats,
        cancel: CancelToken | None,
    ) -> list[Fact]:
        facts: list[Fact] = []
        for i, segment in enumerate(segments):
            stats.segments += 1
            check(cancel)
            try:
                candidates = self.extractor.extract_facts(segment, valid_types, cancel=cancel)
            except Cancelled:
                raise
            except Exception as e:
                raise ExtractionError(
                    f"extracting facts from segment {i}: {e}", segment_index=i
                ) from e
            now = utcnow()
            for c in candidates:
                facts.append(
                    dataclasses.replace(
                        c, id=new_id(), source_file=source_file, created_at=now, updated_at=now
                    )
                )
            logger.debug("Segment %d of %s yielded %d facts", i, source_file, len(candidates))
        return facts

    def _check(self, result: ExtractionResult, cancel: CancelToken | None) -> None:
        # Advisory: a failure here is recorded and logged, never fatal.
        if self.checker is None:
            logger.warning("Consistency check requested but no checker is configured")
            result.consistency_error = "no consistency checker configured"
            return
        try:
            result.issues = find_consistency_issues(
                self.vector_store,
                self.checker,
                result.facts,
                neighbors=self.consistency_neighbors,
                cancel=cancel,
            )
        except Cancelled:
            raise
        except Exception as e:
            logger.warning("Consistency check failed, continuing without it: %s", e)
            result.consistency_error = str(e)
