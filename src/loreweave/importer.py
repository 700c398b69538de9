"""Import of pre-structured fact records (JSON/CSV exports, hand-written files)."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from .cancel import CancelToken, check
from .errors import store_op
from .extraction import embed_facts
from .models import Fact, new_id, utcnow
from .ports import Embedder, VectorStore
from .taxonomy import EntityTypeService

logger = logging.getLogger(__name__)

ConflictStrategy = Literal["skip", "overwrite"]


@dataclass
class RawFact:
    """A record as parsed from an import file, before validation."""

    type: str = ""
    subject: str = ""
    predicate: str = ""
    object: str = ""
    context: str = ""
    id: str = ""
    source_file: str = ""
    confidence: float | None = None  # None: absent in the source record
    line: int = 0  # 1-based line in the source file, 0 if unknown


@dataclass(frozen=True)
class ImportIssue:
    line: int
    field: str
    message: str
    value: str = ""

    def __str__(self) -> str:
        if self.line > 0:
            return f"line {self.line}: {self.message}"
        return self.message


@dataclass(frozen=True)
class ImportOptions:
    dry_run: bool = False
    on_conflict: ConflictStrategy = "skip"


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: list[ImportIssue] = field(default_factory=list)


_REQUIRED = ("type", "subject", "predicate", "object")


class ImportService:
    def __init__(self, embedder: Embedder, vector_store: VectorStore, taxonomy: EntityTypeService):
        self.embedder = embedder
        self.vector_store = vector_store
        self.taxonomy = taxonomy

    def validate(
        self, raw_facts: Sequence[RawFact], *, cancel: CancelToken | None = None
    ) -> tuple[list[RawFact], list[ImportIssue]]:
        valid: list[RawFact] = []
        errors: list[ImportIssue] = []
        for i, raw in enumerate(raw_facts):
            issue = self._validate_one(raw, raw.line or i + 1, cancel)
            if issue is None:
                valid.append(raw)
            else:
                errors.append(issue)
        return valid, errors

    def _validate_one(self, raw: RawFact, line: int, cancel: CancelToken | None) -> ImportIssue | None:
        for name in _REQUIRED:
            if not getattr(raw, name).strip():
                return ImportIssue(line=line, field=name, message=f"missing required field: {name}")
        if not self.taxonomy.is_valid(raw.type, cancel=cancel):
            valid = ", ".join(self.taxonomy.valid_types(cancel=cancel))
            return ImportIssue(
                line=line,
                field="type",
                value=raw.type,
                message=f"invalid type {raw.type!r} (valid: {valid})",
            )
        if raw.confidence is not None and not 0.0 <= raw.confidence <= 1.0:
            return ImportIssue(
                line=line,
                field="confidence",
                value=str(raw.confidence),
                message="confidence must be between 0 and 1",
            )
        return None

    def import_facts(
        self,
        raw_facts: Sequence[RawFact],
        options: ImportOptions | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> ImportResult:
        opts = options or ImportOptions()
        valid, errors = self.validate(raw_facts, cancel=cancel)
        result = ImportResult(errors=errors)
        if not valid:
            return result

        now = utcnow()
        facts = [
            Fact(
                id=raw.id or new_id(),
                type=raw.type,
                subject=raw.subject,
                predicate=raw.predicate,
                object=raw.object,
                context=raw.context,
                source_file=raw.source_file,
                source_line=raw.line,
                confidence=1.0 if raw.confidence is None else raw.confidence,
                created_at=now,
                updated_at=now,
            )
            for raw in valid
        ]
        facts = embed_facts(self.embedder, facts, cancel=cancel)

        if opts.dry_run:
            result.imported = len(facts)
            return result

        if opts.on_conflict == "overwrite":
            facts = self._preserve_created_at(facts, cancel)
            to_save = facts
        else:
            to_save = self._drop_existing(facts, cancel)
            result.skipped = len(facts) - len(to_save)

        if to_save:
            check(cancel)
            with store_op("saving facts"):
                self.vector_store.save_batch(to_save, cancel=cancel)
        result.imported = len(to_save)
        logger.info(
            "Imported %d facts (%d skipped, %d invalid)", result.imported, result.skipped, len(errors)
        )
        return result

    def _preserve_created_at(self, facts: list[Fact], cancel: CancelToken | None) -> list[Fact]:
        check(cancel)
        with store_op("looking up existing facts"):
            existing = self.vector_store.find_by_ids([f.id for f in facts], cancel=cancel)
        created = {f.id: f.created_at for f in existing if f.created_at is not None}
        out: list[Fact] = []
        for f in facts:
            if f.id in created:
                f = dataclasses.replace(f, created_at=created[f.id])
            out.append(f)
        return out

    def _drop_existing(self, facts: list[Fact], cancel: CancelToken | None) -> list[Fact]:
        check(cancel)
        with store_op("checking existing facts"):
            exists = self.vector_store.exists_by_ids([f.id for f in facts], cancel=cancel)
        return [f for f in facts if not exists.get(f.id, False)]
