import dataclasses
from datetime import UTC, datetime

import pytest

from loreweave.embedder import StubEmbedder
from loreweave.errors import StoreError
from loreweave.importer import ImportOptions, ImportService, RawFact

from conftest import CountingEmbedder, RecordingVectorStore


def raw(**kw) -> RawFact:
    base = {"type": "character", "subject": "Gandalf", "predicate": "is", "object": "wizard"}
    base.update(kw)
    return RawFact(**base)


@pytest.fixture
def importer(embedder, vector_store, taxonomy):
    return ImportService(embedder, vector_store, taxonomy)


class TestValidation:
    def test_empty_type_reported_on_type_field(self, importer, vector_store, embedder):
        existing = raw(id="f-2", subject="Frodo")
        importer.import_facts([existing])

        result = importer.import_facts([raw(type=""), existing])

        assert result.imported == 0
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert result.errors[0].field == "type"
        assert result.errors[0].line == 1

    @pytest.mark.parametrize("field", ["subject", "predicate", "object"])
    def test_missing_required(self, importer, field):
        result = importer.import_facts([raw(**{field: "  "})])
        assert result.imported == 0
        assert [e.field for e in result.errors] == [field]

    def test_first_failure_wins(self, importer):
        result = importer.import_facts([raw(type="", subject="", confidence=5.0)])
        assert [e.field for e in result.errors] == ["type"]

    def test_unknown_type(self, importer):
        result = importer.import_facts([raw(type="spaceship")])
        (issue,) = result.errors
        assert issue.field == "type"
        assert issue.value == "spaceship"
        assert "character" in issue.message

    def test_custom_type_accepted(self, importer, taxonomy):
        taxonomy.add("artifact")
        result = importer.import_facts([raw(type="artifact")])
        assert result.imported == 1

    @pytest.mark.parametrize("conf", [-0.1, 1.01])
    def test_confidence_range(self, importer, conf):
        result = importer.import_facts([raw(confidence=conf)])
        assert [e.field for e in result.errors] == ["confidence"]

    def test_line_numbers_from_records(self, importer):
        result = importer.import_facts([raw(), raw(object="", line=7)])
        assert result.errors[0].line == 7
        assert str(result.errors[0]) == "line 7: missing required field: object"

    def test_valid_records_still_imported(self, importer, vector_store):
        result = importer.import_facts([raw(type=""), raw(subject="Sam"), raw(subject="Pippin")])
        assert result.imported == 2
        assert len(result.errors) == 1
        assert vector_store.count() == 2


class TestConfidence:
    def test_zero_preserved(self, importer, vector_store):
        importer.import_facts([raw(id="z", confidence=0.0)])
        assert vector_store.find_by_id("z").confidence == 0.0

    def test_absent_defaults_to_one(self, importer, vector_store):
        importer.import_facts([raw(id="a")])
        assert vector_store.find_by_id("a").confidence == 1.0


class TestPersistence:
    def test_single_embedding_batch(self, importer, embedder, vector_store):
        importer.import_facts([raw(subject=f"s{i}") for i in range(5)])
        assert len(embedder.batch_calls) == 1
        assert vector_store.save_batch_calls == 1

    def test_generated_ids_when_absent(self, importer, vector_store):
        importer.import_facts([raw(), raw(subject="Sam")])
        ids = [f.id for f in vector_store.list(10)]
        assert len(set(ids)) == 2 and all(ids)

    def test_dry_run_saves_nothing(self, importer, vector_store, embedder):
        result = importer.import_facts([raw(), raw(subject="Sam")], ImportOptions(dry_run=True))
        assert result.imported == 2
        assert vector_store.count() == 0
        assert len(embedder.batch_calls) == 1

    def test_skip_existing(self, importer, vector_store):
        importer.import_facts([raw(id="one")])
        result = importer.import_facts([raw(id="one", object="balrog"), raw(id="two")])
        assert (result.imported, result.skipped) == (1, 1)
        assert vector_store.find_by_id("one").object == "wizard"

    def test_overwrite_preserves_created_at(self, embedder, taxonomy):
        store = RecordingVectorStore()
        old_created = datetime(2020, 1, 1, tzinfo=UTC)
        svc = ImportService(embedder, store, taxonomy)
        svc.import_facts([raw(id="one")])
        stored = store.find_by_id("one")
        store.save(dataclasses.replace(stored, created_at=old_created))

        result = svc.import_facts([raw(id="one", object="the white")], ImportOptions(on_conflict="overwrite"))

        assert (result.imported, result.skipped) == (1, 0)
        updated = store.find_by_id("one")
        assert updated.object == "the white"
        assert updated.created_at == old_created
        assert updated.updated_at > old_created

    def test_all_invalid_touches_nothing(self, importer, embedder, vector_store):
        result = importer.import_facts([raw(type="")])
        assert embedder.batch_calls == []
        assert vector_store.save_batch_calls == 0
        assert result.imported == 0

    def test_save_failure(self, taxonomy):
        svc = ImportService(StubEmbedder(dim=8), RecordingVectorStore(fail_save=True), taxonomy)
        with pytest.raises(StoreError, match="saving facts"):
            svc.import_facts([raw()])

    def test_embedding_source_text(self, taxonomy):
        embedder = CountingEmbedder()
        ImportService(embedder, RecordingVectorStore(), taxonomy).import_facts(
            [raw(context="Third Age")]
        )
        assert embedder.batch_calls == [["Gandalf is wizard Third Age"]]
