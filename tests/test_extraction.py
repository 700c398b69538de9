import dataclasses
import io
import uuid

import pytest

from loreweave.cancel import CancelToken
from loreweave.errors import Cancelled, ConsistencyCheckError, EmbeddingError, ExtractionError, LLMError, StoreError
from loreweave.extraction import ExtractionOptions, ExtractionService, embed_facts, find_consistency_issues
from loreweave.models import ConsistencyIssue

from conftest import CountingEmbedder, FakeChecker, FakeExtractor, RecordingVectorStore, make_fact

MULTI_SEGMENT_TEXT = "\n\n".join(f"Paragraph {i}. " + "lore " * 20 for i in range(12))


def build(taxonomy, *, extractor=None, embedder=None, store=None, checker=None, size=2000, overlap=200):
    return ExtractionService(
        extractor or FakeExtractor(),
        embedder or CountingEmbedder(),
        store if store is not None else RecordingVectorStore(),
        taxonomy,
        checker,
        segment_size=size,
        overlap=overlap,
    )


class TestIngestion:
    def test_frodo(self, taxonomy, vector_store):
        extractor = FakeExtractor([[make_fact()]])
        svc = build(taxonomy, extractor=extractor, store=vector_store)

        result = svc.extract_and_store("Frodo is a hobbit from the Shire.", "shire.txt")

        assert len(result.facts) == 1
        fact = result.facts[0]
        assert fact.subject == "Frodo"
        assert fact.source_file == "shire.txt"
        assert result.saved
        uuid.UUID(fact.id)
        assert fact.created_at is not None and fact.updated_at == fact.created_at
        stored = vector_store.find_by_id(fact.id)
        assert (stored.subject, stored.predicate, stored.object) == ("Frodo", "is a", "hobbit")

    def test_valid_types_passed_and_fetched_once(self, taxonomy, relational_store):
        extractor = FakeExtractor([[make_fact()]])
        svc = build(taxonomy, extractor=extractor, size=200, overlap=20)
        before = relational_store.list_type_calls

        svc.extract_and_store(MULTI_SEGMENT_TEXT, "doc.txt")

        assert len(extractor.calls) > 1
        assert relational_store.list_type_calls == before + 1
        assert all(v == taxonomy.valid_types() for v in extractor.valid_types_seen)

    def test_batching_one_embed_one_save(self, taxonomy):
        extractor = FakeExtractor(lambda i, _t: [make_fact(subject=f"s{i}a"), make_fact(subject=f"s{i}b")])
        embedder = CountingEmbedder()
        store = RecordingVectorStore()
        svc = build(taxonomy, extractor=extractor, embedder=embedder, store=store, size=200, overlap=20)

        result = svc.extract_and_store(MULTI_SEGMENT_TEXT, "doc.txt")

        n = len(extractor.calls)
        assert n > 1
        assert len(result.facts) == 2 * n
        assert len(embedder.batch_calls) == 1
        assert len(embedder.batch_calls[0]) == 2 * n
        assert embedder.embed_calls == 0
        assert store.save_batch_calls == 1
        assert result.stats.segments == n

    def test_order_follows_segments_then_extractor(self, taxonomy):
        extractor = FakeExtractor(lambda i, _t: [make_fact(subject=f"{i}-0"), make_fact(subject=f"{i}-1")])
        svc = build(taxonomy, extractor=extractor, size=200, overlap=20)
        result = svc.extract_and_store(MULTI_SEGMENT_TEXT, "doc.txt")
        expected = [f"{i}-{j}" for i in range(len(extractor.calls)) for j in (0, 1)]
        assert [f.subject for f in result.facts] == expected

    def test_embeddings_assigned_by_position(self, taxonomy):
        embedder = CountingEmbedder()
        extractor = FakeExtractor([[make_fact(subject="A"), make_fact(subject="B", context="in the west")]])
        result = build(taxonomy, extractor=extractor, embedder=embedder).extract_and_store("x", "f")
        for f in result.facts:
            assert f.embedding == embedder.embed(f.to_text())
        assert embedder.batch_calls[0][1] == "B is a hobbit in the west"

    def test_empty_extraction_short_circuits(self, taxonomy):
        embedder = CountingEmbedder()
        store = RecordingVectorStore()
        result = build(taxonomy, embedder=embedder, store=store).extract_and_store("nothing here", "f")
        assert result.facts == []
        assert not result.saved
        assert embedder.batch_calls == []
        assert store.save_batch_calls == 0

    def test_segment_failure_names_index_and_saves_nothing(self, taxonomy):
        extractor = FakeExtractor([[make_fact()]], fail_on=2)
        embedder = CountingEmbedder()
        store = RecordingVectorStore()
        svc = build(taxonomy, extractor=extractor, embedder=embedder, store=store, size=200, overlap=20)

        with pytest.raises(ExtractionError) as exc:
            svc.extract_and_store(MULTI_SEGMENT_TEXT, "doc.txt")

        assert exc.value.segment_index == 2
        assert "segment 2" in str(exc.value)
        assert isinstance(exc.value.__cause__, LLMError)
        assert embedder.batch_calls == []
        assert store.save_batch_calls == 0

    def test_check_only_saves_nothing(self, taxonomy):
        store = RecordingVectorStore()
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), store=store)
        result = svc.extract_and_store("x", "f", ExtractionOptions(check_only=True))
        assert len(result.facts) == 1
        assert not result.saved
        assert store.save_batch_calls == 0

    def test_save_failure_is_store_error(self, taxonomy):
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), store=RecordingVectorStore(fail_save=True))
        with pytest.raises(StoreError, match="^saving facts: disk full"):
            svc.extract_and_store("x", "f")

    def test_stream_input(self, taxonomy, vector_store):
        extractor = FakeExtractor([[make_fact()]])
        svc = build(taxonomy, extractor=extractor, store=vector_store, size=200, overlap=20)
        result = svc.extract_from_stream(io.StringIO(MULTI_SEGMENT_TEXT), "doc.txt")
        assert len(result.facts) == len(extractor.calls) > 1
        assert vector_store.count() == len(result.facts)

    def test_cancelled_before_any_call(self, taxonomy):
        extractor = FakeExtractor([[make_fact()]])
        token = CancelToken()
        token.cancel()
        with pytest.raises(Cancelled):
            build(taxonomy, extractor=extractor).extract_and_store("x", "f", cancel=token)
        assert extractor.calls == []

    def test_cancelled_mid_document_is_not_wrapped(self, taxonomy):
        token = CancelToken()

        def respond(i, _text):
            if i == 1:
                token.cancel("user abort")
            return [make_fact()]

        extractor = FakeExtractor(respond)
        svc = build(taxonomy, extractor=extractor, size=200, overlap=20)
        with pytest.raises(Cancelled, match="user abort"):
            svc.extract_and_store(MULTI_SEGMENT_TEXT, "doc.txt", cancel=token)
        assert len(extractor.calls) == 2


class TestConsistency:
    @pytest.fixture
    def seeded_store(self, embedder):
        store = RecordingVectorStore()
        existing = [make_fact(subject="Frodo", obj="elf", id=str(uuid.uuid4()))]
        store.save_batch(embed_facts(embedder, existing))
        return store

    def test_issues_reported_and_saved(self, taxonomy, seeded_store):
        def judge(new, existing):
            return [ConsistencyIssue(new[0], existing[0], "hobbit vs elf", "major")]

        checker = FakeChecker(judge)
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), store=seeded_store, checker=checker)

        result = svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))

        assert len(checker.calls) == 1
        assert len(result.issues) == 1
        assert result.issues[0].severity == "major"
        assert result.saved
        assert seeded_store.count() == 2

    def test_no_candidates_skips_checker(self, taxonomy):
        checker = FakeChecker()
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), checker=checker)
        result = svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))
        assert checker.calls == []
        assert result.issues == []

    def test_candidates_deduplicated_and_new_excluded(self, embedder):
        store = RecordingVectorStore()
        old = embed_facts(embedder, [make_fact(obj=f"thing{i}", id=str(uuid.uuid4())) for i in range(3)])
        store.save_batch(old)
        new = embed_facts(
            embedder, [make_fact(subject=f"N{i}", id=str(uuid.uuid4())) for i in range(4)]
        )
        store.save_batch(new[:1])  # a new fact already visible in the store
        checker = FakeChecker()

        find_consistency_issues(store, checker, new, neighbors=5)

        assert store.search_calls == 4
        assert len(checker.calls) == 1
        _, candidates = checker.calls[0]
        ids = [c.id for c in candidates]
        assert sorted(ids) == sorted(f.id for f in old)
        assert new[0].id not in ids

    def test_checker_failure_is_advisory(self, taxonomy, seeded_store, caplog):
        checker = FakeChecker(error=LLMError("rate limited"))
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), store=seeded_store, checker=checker)

        with caplog.at_level("WARNING", logger="loreweave.extraction"):
            result = svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))

        assert result.saved
        assert result.issues == []
        assert "rate limited" in result.consistency_error
        assert any("Consistency check failed" in r.message for r in caplog.records)

    def test_unexpected_checker_error_wrapped(self, seeded_store, embedder):
        new = embed_facts(embedder, [make_fact(id=str(uuid.uuid4()))])
        with pytest.raises(ConsistencyCheckError, match="^checking consistency: bad payload"):
            find_consistency_issues(seeded_store, FakeChecker(error=RuntimeError("bad payload")), new)

    def test_search_failure_is_advisory(self, taxonomy, embedder):
        store = RecordingVectorStore(fail_search=True)
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]), store=store, checker=FakeChecker())
        result = svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))
        assert result.saved
        assert "searching similar facts" in result.consistency_error

    def test_cancellation_is_not_swallowed(self, taxonomy, seeded_store):
        svc = build(
            taxonomy,
            extractor=FakeExtractor([[make_fact()]]),
            store=seeded_store,
            checker=FakeChecker(error=Cancelled("stop")),
        )
        with pytest.raises(Cancelled):
            svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))
        assert seeded_store.count() == 1

    def test_missing_checker_recorded(self, taxonomy):
        svc = build(taxonomy, extractor=FakeExtractor([[make_fact()]]))
        result = svc.extract_and_store("x", "f", ExtractionOptions(check_consistency=True))
        assert result.saved
        assert result.consistency_error


class TestEmbedFacts:
    def test_empty(self, embedder):
        assert embed_facts(embedder, []) == []
        assert embedder.batch_calls == []

    def test_failure_wrapped(self):
        with pytest.raises(EmbeddingError, match="generating embeddings"):
            embed_facts(CountingEmbedder(fail=RuntimeError("boom")), [make_fact()])

    def test_count_mismatch(self):
        with pytest.raises(EmbeddingError, match="expected 2 vectors, got 1"):
            embed_facts(CountingEmbedder(short_by=1), [make_fact(), make_fact(subject="Sam")])

    def test_originals_untouched(self, embedder):
        f = make_fact()
        (out,) = embed_facts(embedder, [f])
        assert f.embedding is None
        assert dataclasses.replace(out, embedding=None) == f
