"""
Tests for the reference service.

Covers delta-upsert of stored rows, LAZY/EAGER reads, batched resolution
and the deletion paths (single reference, whole block, stale entity).
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

import pytest

from blocktree.runtime.app_factory import BlocktreeServices
from blocktree.runtime.errors import (
    AmbiguousDeletionError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from blocktree.runtime.resolvers import CallableResolver
from blocktree.specs.block import (
    BlockReferenceMetadata,
    BlockReferencePayload,
    ContentPayload,
    EntityReferenceMetadata,
    EntityReferencePayload,
    EntityType,
    ReferenceItem,
)
from blocktree.specs.block_type import BlockTypeNesting
from blocktree.specs.display import FetchPolicy
from blocktree.specs.tree import BlockTree, Reference, ReferenceWarning
from blocktree.tests.conftest import ORG_ID, OTHER_ORG_ID, RecordingResolver


def client_list(*ids: UUID, allow_duplicates: bool = False, **meta: Any) -> EntityReferencePayload:
    return EntityReferencePayload(
        meta=EntityReferenceMetadata(
            entity_type=EntityType.CLIENT, allow_duplicates=allow_duplicates, **meta
        ),
        items=[ReferenceItem(id=i, type=EntityType.CLIENT) for i in ids],
    )


def stored_rows(services: BlocktreeServices, block_id: UUID):
    with services.db.connection() as conn:
        rows = services.repos.references.list_for_block(conn, block_id)
    return sorted(rows, key=lambda r: r.order_index if r.order_index is not None else -1)


@pytest.fixture
def refs(services: BlocktreeServices):
    return services.references


@pytest.fixture
def list_block(publish_type, create_block):
    """Create an entity-reference block holding the given payload."""

    async def _create(payload: EntityReferencePayload):
        await publish_type("client-list")
        return await create_block("client-list", payload=payload)

    return _create


# =============================================================================
# Delta upsert
# =============================================================================


class TestUpsertLinks:
    """Tests for storing reference lists."""

    @pytest.mark.asyncio
    async def test_create_stores_one_row_per_item(self, services, list_block) -> None:
        e1, e2 = uuid4(), uuid4()
        block = await list_block(client_list(e1, e2))

        rows = stored_rows(services, block.id)

        assert [(r.entity_id, r.path, r.order_index) for r in rows] == [
            (e1, "$.items[0]", 0),
            (e2, "$.items[1]", 1),
        ]

    @pytest.mark.asyncio
    async def test_upsert_twice_is_idempotent(self, services, refs, list_block) -> None:
        """Test that repeating the same items keeps the same rows."""
        e1, e2, e3 = uuid4(), uuid4(), uuid4()
        block = await list_block(client_list())

        first = await refs.upsert_links_for(block.id, client_list(e1, e2, e3))
        second = await refs.upsert_links_for(block.id, client_list(e1, e2, e3))

        assert [r.id for r in first] == [r.id for r in second]
        assert len(stored_rows(services, block.id)) == 3

    @pytest.mark.asyncio
    async def test_reorder_keeps_row_identity(self, services, refs, list_block) -> None:
        e1, e2 = uuid4(), uuid4()
        block = await list_block(client_list(e1, e2))
        before = {r.entity_id: r.id for r in stored_rows(services, block.id)}

        await refs.upsert_links_for(block.id, client_list(e2, e1))
        after = stored_rows(services, block.id)

        assert [(r.entity_id, r.path) for r in after] == [(e2, "$.items[0]"), (e1, "$.items[1]")]
        assert {r.entity_id: r.id for r in after} == before

    @pytest.mark.asyncio
    async def test_removed_items_are_deleted(self, services, refs, list_block) -> None:
        e1, e2, e3 = uuid4(), uuid4(), uuid4()
        block = await list_block(client_list(e1, e2))

        await refs.upsert_links_for(block.id, client_list(e2, e3))

        rows = stored_rows(services, block.id)
        assert [r.entity_id for r in rows] == [e2, e3]
        stored = await services.blocks.get_block(block.id)
        assert [i.id for i in stored.payload.items] == [e2, e3]

    @pytest.mark.asyncio
    async def test_duplicates_rejected_when_disallowed(self, refs, list_block) -> None:
        e1 = uuid4()
        block = await list_block(client_list())

        with pytest.raises(ConflictError):
            await refs.upsert_links_for(block.id, client_list(e1, e1))

    @pytest.mark.asyncio
    async def test_duplicates_stored_when_allowed(self, services, refs, list_block) -> None:
        e1 = uuid4()
        block = await list_block(client_list(allow_duplicates=True))

        await refs.upsert_links_for(block.id, client_list(e1, e1, allow_duplicates=True))

        rows = stored_rows(services, block.id)
        assert [(r.entity_id, r.path) for r in rows] == [(e1, "$.items[0]"), (e1, "$.items[1]")]

    @pytest.mark.asyncio
    async def test_wrong_item_type_rejected(self, refs, list_block) -> None:
        block = await list_block(client_list())
        payload = EntityReferencePayload(
            meta=EntityReferenceMetadata(entity_type=EntityType.CLIENT),
            items=[ReferenceItem(id=uuid4(), type=EntityType.PROJECT)],
        )

        with pytest.raises(ValidationError, match="expected 'client'"):
            await refs.upsert_links_for(block.id, payload)

    @pytest.mark.asyncio
    async def test_block_items_rejected(self, refs, list_block) -> None:
        block = await list_block(EntityReferencePayload())
        payload = EntityReferencePayload(items=[ReferenceItem(id=uuid4(), type=EntityType.BLOCK)])

        with pytest.raises(ValidationError, match="block reference payload"):
            await refs.upsert_links_for(block.id, payload)

    @pytest.mark.asyncio
    async def test_content_block_rejected(self, refs, publish_type, create_block) -> None:
        await publish_type("note")
        block = await create_block("note")

        with pytest.raises(ValidationError):
            await refs.upsert_links_for(block.id, client_list(uuid4()))


class TestUpsertBlockLink:
    """Tests for single block links."""

    @pytest.mark.asyncio
    async def test_relinking_keeps_one_row(self, services, refs, publish_type, create_block) -> None:
        await publish_type("note")
        target_a = await create_block("note")
        target_b = await create_block("note")
        link = await create_block(
            "note", payload=BlockReferencePayload(item=ReferenceItem(id=target_a.id, type=EntityType.BLOCK))
        )

        await refs.upsert_block_link_for(
            link.id, BlockReferencePayload(item=ReferenceItem(id=target_b.id, type=EntityType.BLOCK))
        )
        await refs.upsert_block_link_for(
            link.id, BlockReferencePayload(item=ReferenceItem(id=target_b.id, type=EntityType.BLOCK))
        )

        rows = stored_rows(services, link.id)
        assert [r.entity_id for r in rows] == [target_b.id]

    @pytest.mark.asyncio
    async def test_self_link_rejected(self, refs, publish_type, create_block) -> None:
        await publish_type("note")
        other = await create_block("note")
        link = await create_block(
            "note", payload=BlockReferencePayload(item=ReferenceItem(id=other.id, type=EntityType.BLOCK))
        )

        with pytest.raises(ValidationError, match="itself"):
            await refs.upsert_block_link_for(
                link.id, BlockReferencePayload(item=ReferenceItem(id=link.id, type=EntityType.BLOCK))
            )

    @pytest.mark.asyncio
    async def test_non_block_target_rejected(self, refs, publish_type, create_block) -> None:
        await publish_type("note")
        other = await create_block("note")
        link = await create_block(
            "note", payload=BlockReferencePayload(item=ReferenceItem(id=other.id, type=EntityType.BLOCK))
        )

        with pytest.raises(ValidationError, match="must target a block"):
            await refs.upsert_block_link_for(
                link.id, BlockReferencePayload(item=ReferenceItem(id=uuid4(), type=EntityType.CLIENT))
            )


# =============================================================================
# Reads and resolution
# =============================================================================


class TestResolveReferences:
    """Tests for batched entity resolution."""

    @pytest.mark.asyncio
    async def test_one_call_per_entity_type(self, services, refs) -> None:
        """Test that 10 references over 2 types give exactly 2 resolver calls."""
        client_ids = [uuid4() for _ in range(6)]
        project_ids = [uuid4() for _ in range(4)]
        clients = RecordingResolver(EntityType.CLIENT, {i: {"name": f"c{i}"} for i in client_ids})
        projects = RecordingResolver(EntityType.PROJECT, {i: {"name": f"p{i}"} for i in project_ids})
        services.registry.register(clients)
        services.registry.register(projects)

        pairs = [(EntityType.CLIENT, i) for i in client_ids] + [
            (EntityType.PROJECT, i) for i in project_ids
        ]
        pairs = pairs[::2] + pairs[1::2]
        references = [
            Reference(id=uuid4(), entity_type=t, entity_id=i, path=f"$.items[{n}]")
            for n, (t, i) in enumerate(pairs)
        ]

        resolved = await refs.resolve_references(references)

        assert clients.calls == [set(client_ids)]
        assert projects.calls == [set(project_ids)]
        assert [(r.entity_type, r.entity_id) for r in resolved] == pairs
        assert all(r.warning is None and r.entity is not None for r in resolved)

    @pytest.mark.asyncio
    async def test_missing_and_unsupported(self, services, refs) -> None:
        known, unknown = uuid4(), uuid4()
        services.registry.register(RecordingResolver(EntityType.CLIENT, {known: {"name": "Acme"}}))
        references = [
            Reference(id=uuid4(), entity_type=EntityType.CLIENT, entity_id=known, path="$.items[0]"),
            Reference(id=uuid4(), entity_type=EntityType.CLIENT, entity_id=unknown, path="$.items[1]"),
            Reference(id=uuid4(), entity_type=EntityType.INVOICE, entity_id=uuid4(), path="$.items[2]"),
        ]

        resolved = await refs.resolve_references(references)

        assert resolved[0].entity == {"name": "Acme"}
        assert resolved[1].warning == ReferenceWarning.MISSING
        assert resolved[2].warning == ReferenceWarning.UNSUPPORTED
        assert resolved[2].entity is None

    @pytest.mark.asyncio
    async def test_placeholders_pass_through(self, services, refs) -> None:
        clients = RecordingResolver(EntityType.CLIENT)
        services.registry.register(clients)
        placeholder = Reference(
            entity_type=EntityType.CLIENT,
            entity_id=uuid4(),
            path="$.items[0]",
            warning=ReferenceWarning.MISSING,
        )

        resolved = await refs.resolve_references([placeholder])

        assert resolved == [placeholder]
        assert clients.calls == []

    @pytest.mark.asyncio
    async def test_failing_resolver_keeps_requires_loading(self, services, refs) -> None:
        async def broken(ids: set[UUID]) -> Mapping[UUID, Any]:
            raise RuntimeError("upstream unavailable")

        services.registry.register(CallableResolver(EntityType.CLIENT, broken))
        ref = Reference(
            id=uuid4(),
            entity_type=EntityType.CLIENT,
            entity_id=uuid4(),
            path="$.items[0]",
            warning=ReferenceWarning.REQUIRES_LOADING,
        )

        resolved = await refs.resolve_references([ref])

        assert resolved[0].warning == ReferenceWarning.REQUIRES_LOADING
        assert resolved[0].entity is None

    @pytest.mark.asyncio
    async def test_slow_resolver_times_out(self, services, refs, config) -> None:
        async def slow(ids: set[UUID]) -> Mapping[UUID, Any]:
            await asyncio.sleep(5)
            return {}

        refs.config = dataclasses.replace(config, resolver_timeout=0.05)
        services.registry.register(CallableResolver(EntityType.PROJECT, slow))
        ref = Reference(
            id=uuid4(),
            entity_type=EntityType.PROJECT,
            entity_id=uuid4(),
            path="$.items[0]",
            warning=ReferenceWarning.REQUIRES_LOADING,
        )

        resolved = await refs.resolve_references([ref])

        assert resolved[0].warning == ReferenceWarning.REQUIRES_LOADING


class TestFindBlockReferences:
    """Tests for reading a block's reference list."""

    @pytest.mark.asyncio
    async def test_lazy_returns_requires_loading(self, refs, list_block) -> None:
        e1, e2 = uuid4(), uuid4()
        block = await list_block(client_list(e1, e2))

        found = await refs.find_block_references(block.id, block.payload)

        assert [r.entity_id for r in found] == [e1, e2]
        assert [r.order_index for r in found] == [0, 1]
        assert all(r.warning == ReferenceWarning.REQUIRES_LOADING for r in found)

    @pytest.mark.asyncio
    async def test_eager_resolves(self, services, refs, list_block) -> None:
        e1, e2 = uuid4(), uuid4()
        services.registry.register(RecordingResolver(EntityType.CLIENT, {e1: {"name": "Acme"}}))
        block = await list_block(client_list(e1, e2))

        found = await refs.find_block_references(block.id, block.payload, policy=FetchPolicy.EAGER)

        assert found[0].entity == {"name": "Acme"}
        assert found[0].warning is None
        assert found[1].warning == ReferenceWarning.MISSING

    @pytest.mark.asyncio
    async def test_item_without_row_is_missing_placeholder(self, services, list_block) -> None:
        e1, e2 = uuid4(), uuid4()
        block = await list_block(client_list(e1, e2))
        with services.db.transaction() as conn:
            conn.execute(
                "DELETE FROM block_references WHERE block_id = ? AND entity_id = ?",
                (str(block.id), str(e2)),
            )

        found = await services.references.find_block_references(block.id, block.payload)

        assert found[1].id is None
        assert found[1].entity_id == e2
        assert found[1].warning == ReferenceWarning.MISSING


# =============================================================================
# Deletion
# =============================================================================


class TestRemoveReference:
    """Tests for removing one stored reference."""

    @pytest.mark.asyncio
    async def test_ambiguous_without_path(self, refs, list_block) -> None:
        e = uuid4()
        block = await list_block(client_list(e, e, allow_duplicates=True))

        with pytest.raises(AmbiguousDeletionError):
            await refs.remove_reference(block.id, EntityType.CLIENT, e)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["$.items[0]", "$.items[2]"])
    async def test_path_disambiguates(self, services, refs, list_block, path: str) -> None:
        """Test that either concrete path deletes exactly one row and renumbers."""
        e, other = uuid4(), uuid4()
        block = await list_block(client_list(e, other, e, allow_duplicates=True))
        before = {r.path: r.id for r in stored_rows(services, block.id)}

        with pytest.raises(AmbiguousDeletionError):
            await refs.remove_reference(block.id, EntityType.CLIENT, e)
        removed = await refs.remove_reference(block.id, EntityType.CLIENT, e, path)

        assert removed.id == before[path]
        rows = stored_rows(services, block.id)
        assert len(rows) == 2
        assert [r.order_index for r in rows] == [0, 1]
        assert [r.path for r in rows] == ["$.items[0]", "$.items[1]"]
        assert removed.id not in {r.id for r in rows}
        stored = await services.blocks.get_block(block.id)
        assert len(stored.payload.items) == 2

    @pytest.mark.asyncio
    async def test_not_found(self, refs, list_block) -> None:
        block = await list_block(client_list(uuid4()))

        with pytest.raises(NotFoundError):
            await refs.remove_reference(block.id, EntityType.CLIENT, uuid4())

    @pytest.mark.asyncio
    async def test_clear_references(self, services, refs, list_block) -> None:
        block = await list_block(client_list(uuid4(), uuid4()))

        assert await refs.clear_references(block.id) == 2
        assert stored_rows(services, block.id) == []
        stored = await services.blocks.get_block(block.id)
        assert stored.payload.items == []


class TestRemoveStaleReferences:
    """Tests for cleanup after an external entity is deleted."""

    @pytest.mark.asyncio
    async def test_no_reference_left(self, services, refs, publish_type, create_block) -> None:
        gone, kept = uuid4(), uuid4()
        await publish_type("client-list")
        first = await create_block("client-list", payload=client_list(gone, kept))
        second = await create_block("client-list", payload=client_list(gone))

        removed = await refs.remove_stale_references(gone)

        assert removed == 2
        with services.db.connection() as conn:
            assert services.repos.references.list_by_entity(conn, gone) == []
        rows = stored_rows(services, first.id)
        assert [(r.entity_id, r.path) for r in rows] == [(kept, "$.items[0]")]
        assert (await services.blocks.get_block(second.id)).payload.items == []

    @pytest.mark.asyncio
    async def test_unknown_entity(self, refs) -> None:
        assert await refs.remove_stale_references(uuid4()) == 0

    @pytest.mark.asyncio
    async def test_scoped_to_organisation(
        self, services, refs, publish_type, create_block
    ) -> None:
        """Test that an organisation only prunes its own blocks."""
        gone = uuid4()
        await publish_type("client-list", system=True)
        ours = await create_block("client-list", payload=client_list(gone))
        theirs = await create_block(
            "client-list", payload=client_list(gone), organisation_id=OTHER_ORG_ID
        )

        assert await refs.remove_stale_references(gone, ORG_ID) == 1

        assert stored_rows(services, ours.id) == []
        assert [r.entity_id for r in stored_rows(services, theirs.id)] == [gone]
        assert len((await services.blocks.get_block(theirs.id)).payload.items) == 1

    @pytest.mark.asyncio
    async def test_live_block_refused(self, refs, publish_type, create_block) -> None:
        await publish_type("client-list")
        block = await create_block("client-list", payload=client_list(uuid4()))

        with pytest.raises(ConflictError, match="still exists"):
            await refs.remove_stale_references(block.id)


# =============================================================================
# Tree expansion
# =============================================================================


class TestBlockLinkExpansion:
    """Tests for expanding BLOCK references into nested trees."""

    @pytest.mark.asyncio
    async def test_eager_link_expands_tree(self, services, publish_type, create_block) -> None:
        await publish_type("section", nesting=BlockTypeNesting())
        await publish_type("note")
        target = await create_block("section", payload=ContentPayload(data={"title": "Terms"}))
        child = await create_block("note")
        await services.children.add_child(target.id, child.id, "items")
        link = await create_block(
            "note", payload=BlockReferencePayload(item=ReferenceItem(id=target.id, type=EntityType.BLOCK))
        )

        tree = await services.blocks.get_block_tree(link.id, expand_refs=True, max_depth=2)

        ref = tree.root.references["block"][0]
        assert isinstance(ref.entity, BlockTree)
        assert ref.entity.root.block.id == target.id
        assert ref.entity.max_depth == 0

    @pytest.mark.asyncio
    async def test_lazy_link_is_not_loaded(self, services, publish_type, create_block) -> None:
        await publish_type("note")
        target = await create_block("note")
        link = await create_block(
            "note", payload=BlockReferencePayload(item=ReferenceItem(id=target.id, type=EntityType.BLOCK))
        )

        tree = await services.blocks.get_block_tree(link.id)

        ref = tree.root.references["block"][0]
        assert ref.entity is None
        assert ref.warning == ReferenceWarning.REQUIRES_LOADING

    @pytest.mark.asyncio
    async def test_mutual_links_terminate(self, services, publish_type, create_block) -> None:
        """Test that two blocks linking each other expand to a bounded depth."""
        await publish_type("note")
        meta = BlockReferenceMetadata(expand_depth=5)
        anchor = await create_block("note")
        first = await create_block(
            "note",
            payload=BlockReferencePayload(meta=meta, item=ReferenceItem(id=anchor.id, type=EntityType.BLOCK)),
        )
        second = await create_block(
            "note",
            payload=BlockReferencePayload(meta=meta, item=ReferenceItem(id=first.id, type=EntityType.BLOCK)),
        )
        await services.references.upsert_block_link_for(
            first.id,
            BlockReferencePayload(meta=meta, item=ReferenceItem(id=second.id, type=EntityType.BLOCK)),
        )

        tree = await services.blocks.get_block_tree(first.id, expand_refs=True, max_depth=3)

        depths = []
        entity = tree.root.references["block"][0].entity
        while isinstance(entity, BlockTree):
            depths.append(entity.max_depth)
            entity = entity.root.references["block"][0].entity
        assert depths == [2, 1, 0]
        assert entity is not None
        assert entity.id in (first.id, second.id)
