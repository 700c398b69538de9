from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


# Category of the fact derived from every relationship.
RELATIONSHIP_FACT_TYPE = "relationship"


@dataclass(frozen=True, slots=True)
class Fact:
    """A single subject/predicate/object statement about a fictional world.

    Facts are immutable; pipeline stages derive new instances with
    ``dataclasses.replace`` (e.g. when the embedding is attached).
    """

    type: str
    subject: str
    predicate: str
    object: str
    context: str = ""
    id: str = ""
    source_file: str = ""
    source_line: int = 0
    confidence: float = 1.0
    embedding: list[float] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be between 0 and 1, got {self.confidence!r}")

    def to_text(self) -> str:
        """Canonical text used for embedding."""
        parts = [self.subject, self.predicate, self.object]
        if self.context:
            parts.append(self.context)
        return " ".join(parts)


def normalize_name(name: str) -> str:
    return name.strip().lower()


@dataclass(frozen=True, slots=True)
class Entity:
    """A named subject (character, place, ...) that relationships connect.

    ``normalized_name`` is unique within a world.
    """

    id: str
    world_id: str
    name: str
    normalized_name: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, world_id: str, name: str) -> Entity:
        return cls(id=new_id(), world_id=world_id, name=name, normalized_name=normalize_name(name))


class RelationType(str, Enum):
    PARENT = "parent"
    CHILD = "child"
    SIBLING = "sibling"
    SPOUSE = "spouse"
    ALLY = "ally"
    ENEMY = "enemy"
    LOCATED_IN = "located_in"
    OWNS = "owns"
    MEMBER_OF = "member_of"
    CREATED = "created"

    @classmethod
    def parse(cls, value: RelationType | str) -> RelationType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"invalid relationship type {value!r} (valid: {valid})") from None


@dataclass(frozen=True, slots=True)
class Relationship:
    """A directed edge between two entities.

    When ``bidirectional`` is set the edge also counts in the reverse
    direction for lookups and traversal.
    """

    source_entity_id: str
    target_entity_id: str
    type: RelationType
    bidirectional: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class RelatedEntity:
    entity_id: str
    depth: int = 0


@dataclass(frozen=True, slots=True)
class EntityType:
    name: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)


# Built-in types, seeded by EntityTypeService.load_defaults. Never removable.
DEFAULT_ENTITY_TYPES: tuple[EntityType, ...] = (
    EntityType("character", "People, beings, named entities in the world"),
    EntityType("location", "Places, regions, buildings, geographical features"),
    EntityType("event", "Historical events, battles, ceremonies, occurrences"),
    EntityType(RELATIONSHIP_FACT_TYPE, "Connections between entities (ally, enemy, family)"),
    EntityType("rule", "Laws, customs, magic rules, world mechanics"),
    EntityType("timeline", "Temporal facts, dates, sequences, eras"),
)

DEFAULT_TYPE_NAMES: frozenset[str] = frozenset(t.name for t in DEFAULT_ENTITY_TYPES)


def is_default_type(name: str) -> bool:
    return name in DEFAULT_TYPE_NAMES


@dataclass(frozen=True, slots=True)
class ConsistencyIssue:
    """A contradiction reported between a new fact and a stored one. Never persisted."""

    new_fact: Fact
    existing_fact: Fact
    description: str
    severity: str = "minor"
