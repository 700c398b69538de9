from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from ..cancel import CancelToken, check
from ..errors import NotFoundError, StoreError, store_op
from ..models import Entity, EntityType, Relationship, RelationType, new_id, normalize_name, utcnow

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS entities (
  id TEXT PRIMARY KEY,
  world_id TEXT NOT NULL,
  name TEXT NOT NULL,
  normalized_name TEXT NOT NULL,
  created_at TEXT NOT NULL,
  UNIQUE(world_id, normalized_name)
);

CREATE TABLE IF NOT EXISTS relationships (
  id TEXT PRIMARY KEY,
  source_entity_id TEXT NOT NULL,
  target_entity_id TEXT NOT NULL,
  type TEXT NOT NULL,
  bidirectional INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entity_types (
  name TEXT PRIMARY KEY,
  description TEXT,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_world ON entities(world_id);
CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_entity_id);
CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_entity_id);
CREATE INDEX IF NOT EXISTS idx_relationships_type ON relationships(type);
"""

# Edges are followed forwards, and backwards when bidirectional. UNION (not
# UNION ALL) drops repeated (entity, level) rows so cycles terminate at `depth`.
RELATED_SQL = """
WITH RECURSIVE related(entity_id, level) AS (
  SELECT target_entity_id, 1 FROM relationships WHERE source_entity_id = ?
  UNION
  SELECT source_entity_id, 1 FROM relationships WHERE target_entity_id = ? AND bidirectional = 1
  UNION
  SELECT r.target_entity_id, related.level + 1
    FROM relationships r JOIN related ON r.source_entity_id = related.entity_id
   WHERE related.level < ?
  UNION
  SELECT r.source_entity_id, related.level + 1
    FROM relationships r JOIN related ON r.target_entity_id = related.entity_id AND r.bidirectional = 1
   WHERE related.level < ?
)
SELECT DISTINCT entity_id FROM related WHERE entity_id != ? ORDER BY entity_id
"""

_ENTITY_COLS = "id, world_id, name, normalized_name, created_at"
_REL_COLS = "id, source_entity_id, target_entity_id, type, bidirectional, created_at"


def _ts(dt: datetime) -> str:
    return dt.isoformat()


def _parse_ts(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


def _entity(row: tuple) -> Entity:
    return Entity(id=row[0], world_id=row[1], name=row[2], normalized_name=row[3], created_at=_parse_ts(row[4]))


def _relationship(row: tuple) -> Relationship:
    return Relationship(
        id=row[0],
        source_entity_id=row[1],
        target_entity_id=row[2],
        type=RelationType(row[3]),
        bidirectional=bool(row[4]),
        created_at=_parse_ts(row[5]),
    )


def _entity_type(row: tuple) -> EntityType:
    return EntityType(name=row[0], description=row[1] or "", created_at=_parse_ts(row[2]))


@dataclass
class SQLiteRelationalStore:
    """Entities, relationships and entity types in a single SQLite file.

    A connection is opened per operation, so instances are safe to share
    between threads. ``:memory:`` is not supported for the same reason.
    """

    path: str
    busy_timeout_ms: int = 5000

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path)
        con.execute("PRAGMA foreign_keys=ON")
        con.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        return con

    @contextmanager
    def _session(self, op: str, cancel: CancelToken | None) -> Iterator[sqlite3.Connection]:
        check(cancel)
        with store_op(op):
            con = self.connect()
            try:
                yield con
                con.commit()
            finally:
                con.close()

    def ensure_schema(self, *, cancel: CancelToken | None = None) -> None:
        with self._session("creating schema", cancel) as con:
            con.executescript(SCHEMA)

    def close(self) -> None:
        # connections are per-operation; nothing is held open
        pass

    # --- entities ---

    def save_entity(self, entity: Entity, *, cancel: CancelToken | None = None) -> None:
        with self._session("saving entity", cancel) as con:
            con.execute(
                f"""
                INSERT INTO entities({_ENTITY_COLS}) VALUES (?,?,?,?,?)
                ON CONFLICT(world_id, normalized_name) DO UPDATE SET name=excluded.name
                """,
                (entity.id, entity.world_id, entity.name, entity.normalized_name, _ts(entity.created_at)),
            )

    def find_entity_by_name(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None:
        with self._session("finding entity", cancel) as con:
            row = con.execute(
                f"SELECT {_ENTITY_COLS} FROM entities WHERE world_id=? AND normalized_name=?",
                (world_id, normalize_name(name)),
            ).fetchone()
        return _entity(row) if row else None

    def find_or_create_entity(
        self, world_id: str, name: str, *, cancel: CancelToken | None = None
    ) -> Entity | None:
        key = normalize_name(name)
        with self._session("finding/creating entity", cancel) as con:
            # INSERT OR IGNORE + SELECT on one connection: concurrent callers converge on one row
            con.execute(
                f"INSERT OR IGNORE INTO entities({_ENTITY_COLS}) VALUES (?,?,?,?,?)",
                (new_id(), world_id, name.strip(), key, _ts(utcnow())),
            )
            row = con.execute(
                f"SELECT {_ENTITY_COLS} FROM entities WHERE world_id=? AND normalized_name=?",
                (world_id, key),
            ).fetchone()
        return _entity(row) if row else None

    def find_entity_by_id(self, entity_id: str, *, cancel: CancelToken | None = None) -> Entity | None:
        with self._session("finding entity", cancel) as con:
            row = con.execute(f"SELECT {_ENTITY_COLS} FROM entities WHERE id=?", (entity_id,)).fetchone()
        return _entity(row) if row else None

    def list_entities(
        self, world_id: str, limit: int, offset: int = 0, *, cancel: CancelToken | None = None
    ) -> list[Entity]:
        with self._session("listing entities", cancel) as con:
            rows = con.execute(
                f"SELECT {_ENTITY_COLS} FROM entities WHERE world_id=? ORDER BY name ASC LIMIT ? OFFSET ?",
                (world_id, limit, offset),
            ).fetchall()
        return [_entity(r) for r in rows]

    def search_entities(
        self, world_id: str, query: str, limit: int, *, cancel: CancelToken | None = None
    ) -> list[Entity]:
        with self._session("searching entities", cancel) as con:
            rows = con.execute(
                f"""
                SELECT {_ENTITY_COLS} FROM entities
                WHERE world_id=? AND normalized_name LIKE ?
                ORDER BY name ASC LIMIT ?
                """,
                (world_id, f"%{normalize_name(query)}%", limit),
            ).fetchall()
        return [_entity(r) for r in rows]

    def delete_entity(self, entity_id: str, *, cancel: CancelToken | None = None) -> None:
        with self._session("deleting entity", cancel) as con:
            cur = con.execute("DELETE FROM entities WHERE id=?", (entity_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"entity not found: {entity_id}")

    def count_entities(self, world_id: str, *, cancel: CancelToken | None = None) -> int:
        with self._session("counting entities", cancel) as con:
            row = con.execute("SELECT COUNT(*) FROM entities WHERE world_id=?", (world_id,)).fetchone()
        return int(row[0])

    # --- relationships ---

    def save_relationship(self, rel: Relationship, *, cancel: CancelToken | None = None) -> None:
        with self._session("saving relationship", cancel) as con:
            con.execute(
                f"""
                INSERT INTO relationships({_REL_COLS}) VALUES (?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                  source_entity_id=excluded.source_entity_id,
                  target_entity_id=excluded.target_entity_id,
                  type=excluded.type,
                  bidirectional=excluded.bidirectional
                """,
                (
                    rel.id,
                    rel.source_entity_id,
                    rel.target_entity_id,
                    rel.type.value,
                    int(rel.bidirectional),
                    _ts(rel.created_at),
                ),
            )

    def _query_relationships(self, op: str, sql: str, args: tuple, cancel: CancelToken | None) -> list[Relationship]:
        with self._session(op, cancel) as con:
            rows = con.execute(sql, args).fetchall()
        return [_relationship(r) for r in rows]

    def find_relationships_by_entity(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        return self._query_relationships(
            "finding relationships by entity",
            f"""
            SELECT {_REL_COLS} FROM relationships
            WHERE source_entity_id=? OR (target_entity_id=? AND bidirectional=1)
            ORDER BY created_at DESC
            """,
            (entity_id, entity_id),
            cancel,
        )

    def find_relationships_touching(
        self, entity_id: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        """Edges with the entity at either end, regardless of direction."""
        return self._query_relationships(
            "finding relationships touching entity",
            f"""
            SELECT {_REL_COLS} FROM relationships
            WHERE source_entity_id=? OR target_entity_id=?
            ORDER BY created_at DESC
            """,
            (entity_id, entity_id),
            cancel,
        )

    def find_relationships_by_type(
        self, rel_type: str, *, cancel: CancelToken | None = None
    ) -> list[Relationship]:
        return self._query_relationships(
            "finding relationships by type",
            f"SELECT {_REL_COLS} FROM relationships WHERE type=? ORDER BY created_at DESC",
            (rel_type,),
            cancel,
        )

    def delete_relationship(self, rel_id: str, *, cancel: CancelToken | None = None) -> None:
        with self._session("deleting relationship", cancel) as con:
            cur = con.execute("DELETE FROM relationships WHERE id=?", (rel_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"relationship not found: {rel_id}")

    def delete_relationships_by_entity(self, entity_id: str, *, cancel: CancelToken | None = None) -> None:
        with self._session("deleting relationships by entity", cancel) as con:
            con.execute(
                "DELETE FROM relationships WHERE source_entity_id=? OR target_entity_id=?",
                (entity_id, entity_id),
            )

    def find_relationship_between(
        self, source_id: str, target_id: str, *, cancel: CancelToken | None = None
    ) -> Relationship | None:
        rels = self._query_relationships(
            "finding relationship",
            f"""
            SELECT {_REL_COLS} FROM relationships
            WHERE (source_entity_id=? AND target_entity_id=?)
               OR (bidirectional=1 AND source_entity_id=? AND target_entity_id=?)
            LIMIT 1
            """,
            (source_id, target_id, target_id, source_id),
            cancel,
        )
        return rels[0] if rels else None

    def find_related_entities(
        self, entity_id: str, depth: int, *, cancel: CancelToken | None = None
    ) -> list[str]:
        if depth < 1:
            return []
        with self._session("finding related entities", cancel) as con:
            rows = con.execute(RELATED_SQL, (entity_id, entity_id, depth, depth, entity_id)).fetchall()
        return [r[0] for r in rows]

    def count_relationships(self, *, cancel: CancelToken | None = None) -> int:
        with self._session("counting relationships", cancel) as con:
            row = con.execute("SELECT COUNT(*) FROM relationships").fetchone()
        return int(row[0])

    # --- entity types ---

    def save_entity_type(self, et: EntityType, *, cancel: CancelToken | None = None) -> None:
        with self._session("saving entity type", cancel) as con:
            con.execute(
                """
                INSERT INTO entity_types(name, description, created_at) VALUES (?,?,?)
                ON CONFLICT(name) DO UPDATE SET description=excluded.description
                """,
                (et.name, et.description, _ts(et.created_at)),
            )

    def find_entity_type(self, name: str, *, cancel: CancelToken | None = None) -> EntityType | None:
        with self._session("finding entity type", cancel) as con:
            row = con.execute(
                "SELECT name, description, created_at FROM entity_types WHERE name=?", (name,)
            ).fetchone()
        return _entity_type(row) if row else None

    def list_entity_types(self, *, cancel: CancelToken | None = None) -> list[EntityType]:
        with self._session("listing entity types", cancel) as con:
            rows = con.execute(
                "SELECT name, description, created_at FROM entity_types ORDER BY name ASC"
            ).fetchall()
        return [_entity_type(r) for r in rows]

    def delete_entity_type(self, name: str, *, cancel: CancelToken | None = None) -> None:
        with self._session("deleting entity type", cancel) as con:
            cur = con.execute("DELETE FROM entity_types WHERE name=?", (name,))
            if cur.rowcount == 0:
                raise NotFoundError(f"entity type not found: {name}", name=name)


def open_store(path: str) -> SQLiteRelationalStore:
    if not path:
        raise StoreError("opening sqlite database: path is required")
    store = SQLiteRelationalStore(path)
    store.ensure_schema()
    return store
