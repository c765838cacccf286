"""
SQLite repository - persistence layer for blocks, types, edges and references.

Repositories are stateless and operate on a connection handed in by the
caller, so a service can run several of them inside one transaction.
``DatabaseManager.transaction()`` takes sqlite's write lock up front
(``BEGIN IMMEDIATE``); ownership writes use it to hold the affected slots
exclusively for the whole operation.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from blocktree.specs.block import Block
from blocktree.specs.block_type import BlockType
from blocktree.specs.tree import Edge, StoredReference

# =============================================================================
# Type Conversion
# =============================================================================


def _python_to_sqlite(value: Any) -> Any:
    """Convert a Python value to a SQLite-compatible value."""
    if value is None:
        return None
    elif isinstance(value, UUID):
        return str(value)
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, datetime | date):
        return value.isoformat()
    elif isinstance(value, bool):
        return 1 if value else 0
    elif isinstance(value, BaseModel):
        return value.model_dump_json()
    elif isinstance(value, dict | list):
        return json.dumps(value, default=str)
    else:
        return value


def _sqlite_to_python(value: Any, json_column: bool = False) -> Any:
    """Convert a SQLite value back; JSON columns are decoded."""
    if value is None:
        return None
    if json_column:
        return json.loads(value)
    return value


def _ids(values: Iterable[UUID]) -> list[str]:
    return [str(v) for v in values]


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


# =============================================================================
# Database Manager
# =============================================================================


SCHEMA = """
CREATE TABLE IF NOT EXISTS block_types (
    id TEXT PRIMARY KEY,
    key TEXT NOT NULL,
    version INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    organisation_id TEXT,
    block_schema TEXT NOT NULL,
    display TEXT NOT NULL,
    nesting TEXT,
    strictness TEXT NOT NULL,
    system INTEGER NOT NULL DEFAULT 0,
    archived INTEGER NOT NULL DEFAULT 0,
    source_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_block_types_key ON block_types(key, organisation_id, version);

CREATE TABLE IF NOT EXISTS blocks (
    id TEXT PRIMARY KEY,
    organisation_id TEXT NOT NULL,
    name TEXT,
    type_id TEXT NOT NULL REFERENCES block_types(id),
    payload TEXT NOT NULL,
    archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_blocks_organisation ON blocks(organisation_id);

CREATE TABLE IF NOT EXISTS block_children (
    parent_id TEXT NOT NULL REFERENCES blocks(id),
    child_id TEXT NOT NULL UNIQUE REFERENCES blocks(id),
    slot TEXT NOT NULL,
    order_index INTEGER NOT NULL,
    UNIQUE (parent_id, slot, order_index)
);
CREATE INDEX IF NOT EXISTS idx_block_children_parent ON block_children(parent_id, slot);

CREATE TABLE IF NOT EXISTS block_references (
    id TEXT PRIMARY KEY,
    block_id TEXT NOT NULL REFERENCES blocks(id),
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    path TEXT NOT NULL,
    order_index INTEGER,
    ownership TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_block_references_block ON block_references(block_id);
CREATE INDEX IF NOT EXISTS idx_block_references_entity ON block_references(entity_id);
"""


class DatabaseManager:
    """
    Manages the SQLite database file and schema.
    """

    def __init__(self, db_path: str | Path = ".blocktree/data.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Connection for reads and single-statement writes.

        Yields:
            SQLite connection in autocommit mode
        """
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Connection holding the database write lock until the block exits.

        Commits on success and rolls back everything on any exception.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def create_tables(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def table_exists(self, table_name: str) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (table_name,),
            )
            return cursor.fetchone() is not None


# =============================================================================
# Block Types
# =============================================================================


class BlockTypeRepository:
    """Rows of ``block_types``. Every version is its own row."""

    _JSON_COLUMNS = ("block_schema", "display", "nesting")

    def _row_to_model(self, row: sqlite3.Row) -> BlockType:
        data = {
            k: _sqlite_to_python(row[k], json_column=k in self._JSON_COLUMNS) for k in row.keys()
        }
        data["system"] = bool(data["system"])
        data["archived"] = bool(data["archived"])
        return BlockType.model_validate(data)

    def insert(self, conn: sqlite3.Connection, block_type: BlockType) -> BlockType:
        row = {
            "id": block_type.id,
            "key": block_type.key,
            "version": block_type.version,
            "name": block_type.name,
            "description": block_type.description,
            "organisation_id": block_type.organisation_id,
            "block_schema": block_type.block_schema,
            "display": block_type.display,
            "nesting": block_type.nesting,
            "strictness": block_type.strictness,
            "system": block_type.system,
            "archived": block_type.archived,
            "source_id": block_type.source_id,
            "created_at": block_type.created_at,
            "updated_at": block_type.updated_at,
        }
        columns = ", ".join(row.keys())
        conn.execute(
            f"INSERT INTO block_types ({columns}) VALUES ({_placeholders(len(row))})",
            [_python_to_sqlite(v) for v in row.values()],
        )
        return block_type

    def get(self, conn: sqlite3.Connection, type_id: UUID) -> BlockType | None:
        row = conn.execute("SELECT * FROM block_types WHERE id = ?", (str(type_id),)).fetchone()
        return self._row_to_model(row) if row else None

    def get_many(self, conn: sqlite3.Connection, type_ids: Iterable[UUID]) -> dict[UUID, BlockType]:
        ids = _ids(set(type_ids))
        if not ids:
            return {}
        rows = conn.execute(
            f"SELECT * FROM block_types WHERE id IN ({_placeholders(len(ids))})", ids
        ).fetchall()
        types = [self._row_to_model(r) for r in rows]
        return {t.id: t for t in types}

    def find_by_key(
        self,
        conn: sqlite3.Connection,
        key: str,
        organisation_id: UUID | None,
        version: int | None = None,
    ) -> BlockType | None:
        """Latest (or the given) version of a key owned by exactly this organisation."""
        sql = "SELECT * FROM block_types WHERE key = ?"
        params: list[Any] = [key]
        if organisation_id is None:
            sql += " AND organisation_id IS NULL"
        else:
            sql += " AND organisation_id = ?"
            params.append(str(organisation_id))
        if version is not None:
            sql += " AND version = ?"
            params.append(version)
        sql += " ORDER BY version DESC LIMIT 1"
        row = conn.execute(sql, params).fetchone()
        return self._row_to_model(row) if row else None

    def list_for_organisation(
        self,
        conn: sqlite3.Connection,
        organisation_id: UUID,
        include_system: bool = True,
    ) -> list[BlockType]:
        """All versions visible to an organisation, ordered by key then version."""
        sql = "SELECT * FROM block_types WHERE organisation_id = ?"
        if include_system:
            sql += " OR organisation_id IS NULL"
        sql += " ORDER BY key, version"
        rows = conn.execute(sql, (str(organisation_id),)).fetchall()
        return [self._row_to_model(r) for r in rows]

    def set_archived(
        self, conn: sqlite3.Connection, type_id: UUID, archived: bool, updated_at: datetime
    ) -> None:
        conn.execute(
            "UPDATE block_types SET archived = ?, updated_at = ? WHERE id = ?",
            (_python_to_sqlite(archived), _python_to_sqlite(updated_at), str(type_id)),
        )


# =============================================================================
# Blocks
# =============================================================================


class BlockRepository:
    """Rows of ``blocks``, hydrated with their block type."""

    def __init__(self, types: BlockTypeRepository):
        self.types = types

    def _row_to_data(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "organisation_id": row["organisation_id"],
            "name": row["name"],
            "payload": _sqlite_to_python(row["payload"], json_column=True),
            "archived": bool(row["archived"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _hydrate(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Block]:
        types = self.types.get_many(conn, (UUID(r["type_id"]) for r in rows))
        blocks = []
        for row in rows:
            data = self._row_to_data(row)
            data["type"] = types[UUID(row["type_id"])]
            blocks.append(Block.model_validate(data))
        return blocks

    def insert(self, conn: sqlite3.Connection, block: Block) -> Block:
        conn.execute(
            "INSERT INTO blocks (id, organisation_id, name, type_id, payload, archived, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                _python_to_sqlite(v)
                for v in (
                    block.id,
                    block.organisation_id,
                    block.name,
                    block.type.id,
                    block.payload,
                    block.archived,
                    block.created_at,
                    block.updated_at,
                )
            ],
        )
        return block

    def update(self, conn: sqlite3.Connection, block: Block) -> Block:
        conn.execute(
            "UPDATE blocks SET name = ?, type_id = ?, payload = ?, archived = ?, updated_at = ? "
            "WHERE id = ?",
            [
                _python_to_sqlite(v)
                for v in (
                    block.name,
                    block.type.id,
                    block.payload,
                    block.archived,
                    block.updated_at,
                    block.id,
                )
            ],
        )
        return block

    def get(self, conn: sqlite3.Connection, block_id: UUID) -> Block | None:
        row = conn.execute("SELECT * FROM blocks WHERE id = ?", (str(block_id),)).fetchone()
        if not row:
            return None
        return self._hydrate(conn, [row])[0]

    def get_many(self, conn: sqlite3.Connection, block_ids: Iterable[UUID]) -> dict[UUID, Block]:
        ids = _ids(set(block_ids))
        if not ids:
            return {}
        rows = conn.execute(
            f"SELECT * FROM blocks WHERE id IN ({_placeholders(len(ids))})", ids
        ).fetchall()
        return {b.id: b for b in self._hydrate(conn, rows)}

    def list_for_organisation(
        self,
        conn: sqlite3.Connection,
        organisation_id: UUID,
        type_key: str | None = None,
        include_archived: bool = False,
    ) -> list[Block]:
        sql = "SELECT b.* FROM blocks b JOIN block_types t ON t.id = b.type_id WHERE b.organisation_id = ?"
        params: list[Any] = [str(organisation_id)]
        if type_key is not None:
            sql += " AND t.key = ?"
            params.append(type_key)
        if not include_archived:
            sql += " AND b.archived = 0"
        sql += " ORDER BY b.created_at, b.id"
        rows = conn.execute(sql, params).fetchall()
        return self._hydrate(conn, rows)

    def delete(self, conn: sqlite3.Connection, block_id: UUID) -> bool:
        cursor = conn.execute("DELETE FROM blocks WHERE id = ?", (str(block_id),))
        return cursor.rowcount > 0


# =============================================================================
# Ownership Edges
# =============================================================================


class EdgeRepository:
    """Rows of ``block_children``. ``child_id`` is unique system-wide."""

    def _row_to_model(self, row: sqlite3.Row) -> Edge:
        return Edge(
            parent_id=row["parent_id"],
            child_id=row["child_id"],
            slot=row["slot"],
            order_index=row["order_index"],
        )

    def parent_edge(self, conn: sqlite3.Connection, child_id: UUID) -> Edge | None:
        row = conn.execute(
            "SELECT * FROM block_children WHERE child_id = ?", (str(child_id),)
        ).fetchone()
        return self._row_to_model(row) if row else None

    def list_for_parent(self, conn: sqlite3.Connection, parent_id: UUID) -> list[Edge]:
        rows = conn.execute(
            "SELECT * FROM block_children WHERE parent_id = ? ORDER BY slot, order_index",
            (str(parent_id),),
        ).fetchall()
        return [self._row_to_model(r) for r in rows]

    def list_slot(self, conn: sqlite3.Connection, parent_id: UUID, slot: str) -> list[Edge]:
        rows = conn.execute(
            "SELECT * FROM block_children WHERE parent_id = ? AND slot = ? ORDER BY order_index",
            (str(parent_id), slot),
        ).fetchall()
        return [self._row_to_model(r) for r in rows]

    def write_slot(
        self, conn: sqlite3.Connection, parent_id: UUID, slot: str, child_ids: list[UUID]
    ) -> list[Edge]:
        """
        Replace the slot's edges with ``child_ids`` numbered 0..n-1.

        Children listed here must not hold an edge in any other slot.
        """
        conn.execute(
            "DELETE FROM block_children WHERE parent_id = ? AND slot = ?",
            (str(parent_id), slot),
        )
        conn.executemany(
            "INSERT INTO block_children (parent_id, child_id, slot, order_index) VALUES (?, ?, ?, ?)",
            [(str(parent_id), str(cid), slot, i) for i, cid in enumerate(child_ids)],
        )
        return [
            Edge(parent_id=parent_id, child_id=cid, slot=slot, order_index=i)
            for i, cid in enumerate(child_ids)
        ]

    def delete_for_child(self, conn: sqlite3.Connection, child_id: UUID) -> bool:
        cursor = conn.execute("DELETE FROM block_children WHERE child_id = ?", (str(child_id),))
        return cursor.rowcount > 0

    def delete_for_parent(self, conn: sqlite3.Connection, parent_id: UUID) -> list[UUID]:
        rows = conn.execute(
            "SELECT child_id FROM block_children WHERE parent_id = ? ORDER BY slot, order_index",
            (str(parent_id),),
        ).fetchall()
        conn.execute("DELETE FROM block_children WHERE parent_id = ?", (str(parent_id),))
        return [UUID(r["child_id"]) for r in rows]

    def ancestors(self, conn: sqlite3.Connection, block_id: UUID) -> list[UUID]:
        """Ancestor ids from the direct parent upwards."""
        chain: list[UUID] = []
        seen = {block_id}
        current = block_id
        while True:
            edge = self.parent_edge(conn, current)
            if edge is None or edge.parent_id in seen:
                return chain
            chain.append(edge.parent_id)
            seen.add(edge.parent_id)
            current = edge.parent_id


# =============================================================================
# References
# =============================================================================


class ReferenceRepository:
    """Rows of ``block_references``."""

    def _row_to_model(self, row: sqlite3.Row) -> StoredReference:
        return StoredReference.model_validate(dict(row))

    def list_for_block(self, conn: sqlite3.Connection, block_id: UUID) -> list[StoredReference]:
        rows = conn.execute(
            "SELECT * FROM block_references WHERE block_id = ? ORDER BY path, order_index",
            (str(block_id),),
        ).fetchall()
        return [self._row_to_model(r) for r in rows]

    def find(
        self,
        conn: sqlite3.Connection,
        block_id: UUID,
        entity_type: str,
        entity_id: UUID,
        path: str | None = None,
    ) -> list[StoredReference]:
        sql = "SELECT * FROM block_references WHERE block_id = ? AND entity_type = ? AND entity_id = ?"
        params: list[Any] = [str(block_id), entity_type, str(entity_id)]
        if path is not None:
            sql += " AND path = ?"
            params.append(path)
        rows = conn.execute(sql + " ORDER BY path, order_index", params).fetchall()
        return [self._row_to_model(r) for r in rows]

    def list_by_entity(self, conn: sqlite3.Connection, entity_id: UUID) -> list[StoredReference]:
        rows = conn.execute(
            "SELECT * FROM block_references WHERE entity_id = ? ORDER BY block_id, path",
            (str(entity_id),),
        ).fetchall()
        return [self._row_to_model(r) for r in rows]

    def insert(self, conn: sqlite3.Connection, ref: StoredReference) -> StoredReference:
        conn.execute(
            "INSERT INTO block_references (id, block_id, entity_type, entity_id, path, "
            "order_index, ownership) VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                _python_to_sqlite(v)
                for v in (
                    ref.id,
                    ref.block_id,
                    ref.entity_type,
                    ref.entity_id,
                    ref.path,
                    ref.order_index,
                    ref.ownership,
                )
            ],
        )
        return ref

    def update_position(
        self, conn: sqlite3.Connection, ref_id: UUID, path: str, order_index: int | None
    ) -> None:
        conn.execute(
            "UPDATE block_references SET path = ?, order_index = ? WHERE id = ?",
            (path, order_index, str(ref_id)),
        )

    def delete(self, conn: sqlite3.Connection, ref_ids: Iterable[UUID]) -> int:
        ids = _ids(ref_ids)
        if not ids:
            return 0
        cursor = conn.execute(
            f"DELETE FROM block_references WHERE id IN ({_placeholders(len(ids))})", ids
        )
        return cursor.rowcount

    def delete_for_block(self, conn: sqlite3.Connection, block_id: UUID) -> int:
        cursor = conn.execute("DELETE FROM block_references WHERE block_id = ?", (str(block_id),))
        return cursor.rowcount


# =============================================================================
# Repository Factory
# =============================================================================


class RepositoryFactory:
    """Creates the repositories sharing one database manager."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.types = BlockTypeRepository()
        self.blocks = BlockRepository(self.types)
        self.edges = EdgeRepository()
        self.references = ReferenceRepository()
