"""
Tests for the SQLite repository layer.

Tests schema creation, persistence of blocks with their types, and the
constraints the ownership table enforces.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from uuid import UUID, uuid4

import pytest

from blocktree.runtime.repository import (
    DatabaseManager,
    RepositoryFactory,
    _python_to_sqlite,
    _sqlite_to_python,
)
from blocktree.specs.block import Block, ContentPayload
from blocktree.specs.block_type import BlockType, BlockTypeNesting
from blocktree.specs.tree import Edge
from blocktree.tests.conftest import ORG_ID


@pytest.fixture
def db(tmp_path: Path) -> DatabaseManager:
    manager = DatabaseManager(tmp_path / "nested" / "repo.db")
    manager.create_tables()
    return manager


@pytest.fixture
def repos(db: DatabaseManager) -> RepositoryFactory:
    return RepositoryFactory(db)


@pytest.fixture
def stored_blocks(db: DatabaseManager, repos: RepositoryFactory) -> list[Block]:
    block_type = BlockType(key="section", name="Section", organisation_id=ORG_ID, nesting=BlockTypeNesting())
    blocks = [
        Block(organisation_id=ORG_ID, type=block_type, payload=ContentPayload(data={"n": i}))
        for i in range(4)
    ]
    with db.transaction() as conn:
        repos.types.insert(conn, block_type)
        for block in blocks:
            repos.blocks.insert(conn, block)
    return blocks


class TestConversion:
    """Tests for value conversion helpers."""

    def test_python_to_sqlite(self) -> None:
        class Color(str, Enum):
            RED = "red"

        uid = uuid4()
        assert _python_to_sqlite(uid) == str(uid)
        assert _python_to_sqlite(Color.RED) == "red"
        assert _python_to_sqlite(True) == 1
        assert _python_to_sqlite({"a": [1]}) == '{"a": [1]}'
        assert _python_to_sqlite(datetime(2024, 1, 2, tzinfo=UTC)) == "2024-01-02T00:00:00+00:00"
        assert _python_to_sqlite(None) is None

    def test_sqlite_to_python_json(self) -> None:
        assert _sqlite_to_python('{"a": 1}', json_column=True) == {"a": 1}
        assert _sqlite_to_python("plain") == "plain"


class TestDatabaseManager:
    def test_creates_parent_directory_and_tables(self, db: DatabaseManager) -> None:
        assert db.db_path.parent.is_dir()
        for table in ("block_types", "blocks", "block_children", "block_references"):
            assert db.table_exists(table)

    def test_transaction_rolls_back(self, db: DatabaseManager, repos: RepositoryFactory) -> None:
        block_type = BlockType(key="note", name="Note")

        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                repos.types.insert(conn, block_type)
                raise RuntimeError("abort")

        with db.connection() as conn:
            assert repos.types.get(conn, block_type.id) is None


class TestBlockRepository:
    def test_block_round_trip(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        with db.connection() as conn:
            loaded = repos.blocks.get(conn, stored_blocks[0].id)

        assert loaded is not None
        assert loaded.type.key == "section"
        assert loaded.type.nesting == BlockTypeNesting()
        assert loaded.payload == stored_blocks[0].payload

    def test_get_many_skips_unknown(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        wanted = {stored_blocks[1].id, stored_blocks[2].id, uuid4()}

        with db.connection() as conn:
            found = repos.blocks.get_many(conn, wanted)

        assert set(found) == {stored_blocks[1].id, stored_blocks[2].id}


class TestEdgeRepository:
    """Tests for ownership edge storage."""

    def test_write_slot_numbers_from_zero(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        parent, *kids = stored_blocks

        with db.transaction() as conn:
            edges = repos.edges.write_slot(conn, parent.id, "items", [k.id for k in kids])
            again = repos.edges.write_slot(conn, parent.id, "items", [kids[2].id, kids[0].id])

        assert [e.order_index for e in edges] == [0, 1, 2]
        assert again == [
            Edge(parent_id=parent.id, child_id=kids[2].id, slot="items", order_index=0),
            Edge(parent_id=parent.id, child_id=kids[0].id, slot="items", order_index=1),
        ]
        with db.connection() as conn:
            assert repos.edges.list_slot(conn, parent.id, "items") == again
            assert repos.edges.parent_edge(conn, kids[1].id) is None

    def test_child_unique_system_wide(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        a, b, child, _ = stored_blocks
        with db.transaction() as conn:
            repos.edges.write_slot(conn, a.id, "items", [child.id])

        with pytest.raises(sqlite3.IntegrityError):
            with db.transaction() as conn:
                repos.edges.write_slot(conn, b.id, "items", [child.id])

    def test_ancestors(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        a, b, c, _ = stored_blocks
        with db.transaction() as conn:
            repos.edges.write_slot(conn, a.id, "items", [b.id])
            repos.edges.write_slot(conn, b.id, "items", [c.id])

        with db.connection() as conn:
            assert repos.edges.ancestors(conn, c.id) == [b.id, a.id]
            assert repos.edges.ancestors(conn, a.id) == []

    def test_delete_for_parent(
        self, db: DatabaseManager, repos: RepositoryFactory, stored_blocks: list[Block]
    ) -> None:
        parent, *kids = stored_blocks
        with db.transaction() as conn:
            repos.edges.write_slot(conn, parent.id, "items", [kids[0].id])
            repos.edges.write_slot(conn, parent.id, "aside", [kids[1].id])
            removed = repos.edges.delete_for_parent(conn, parent.id)

        assert sorted(removed, key=str) == sorted([kids[0].id, kids[1].id], key=str)
        assert all(isinstance(r, UUID) for r in removed)
        with db.connection() as conn:
            assert repos.edges.list_for_parent(conn, parent.id) == []
