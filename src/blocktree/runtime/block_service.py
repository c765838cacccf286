"""
Block service - CRUD and tree assembly.

Content payloads are validated against the type schema on every write.
Reference payloads are mirrored into the reference table in the same
transaction. ``get_block_tree`` walks owned edges and reference slots
with an explicit depth counter, so trees always terminate even when
blocks reference each other.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from uuid import UUID

from blocktree.runtime.block_type_service import BlockTypeService
from blocktree.runtime.children_service import ChildrenService
from blocktree.runtime.config import ServerConfig
from blocktree.runtime.errors import NotFoundError, ValidationError
from blocktree.runtime.logging import get_logger, log_with_context
from blocktree.runtime.paths import deep_merge, slot_key_from_path
from blocktree.runtime.reference_service import ReferenceService
from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.runtime.schema_validator import apply_strictness, default_data
from blocktree.specs.block import (
    Block,
    BlockPayload,
    BlockReferencePayload,
    ContentPayload,
    CreateBlockRequest,
    EntityReferencePayload,
    UpdateBlockRequest,
)
from blocktree.specs.display import FetchPolicy
from blocktree.specs.tree import BlockNode, BlockTree, Reference, ReferenceWarning

logger = get_logger("Blocks")


class BlockService:
    """Create, update, read, archive and delete blocks."""

    def __init__(
        self,
        db: DatabaseManager,
        repos: RepositoryFactory,
        types: BlockTypeService,
        children: ChildrenService,
        references: ReferenceService,
        config: ServerConfig | None = None,
    ):
        self.db = db
        self.repos = repos
        self.types = types
        self.children = children
        self.references = references
        self.config = config or ServerConfig()
        self.references.bind_tree_builder(self._build_reference_tree)

    # -------------------------------------------------------------------------
    # Payload handling
    # -------------------------------------------------------------------------

    def _validated(self, block: Block) -> Block:
        """Apply schema validation to content; other payloads pass through."""
        payload = block.payload
        if isinstance(payload, ContentPayload):
            meta = apply_strictness(block.type, payload.data, payload.meta)
            return block.model_copy(update={"payload": payload.model_copy(update={"meta": meta})})
        return block

    def _sync_references(self, conn: sqlite3.Connection, block: Block) -> None:
        payload = block.payload
        if isinstance(payload, EntityReferencePayload):
            self.references.sync_links(conn, block.id, payload)
        elif isinstance(payload, BlockReferencePayload):
            self.references.sync_block_link(conn, block.id, payload)

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    async def create_block(self, organisation_id: UUID, request: CreateBlockRequest) -> Block:
        """
        Create a block from a type key.

        Without a payload the block starts from the schema defaults.

        Raises:
            NotFoundError: type key not visible to the organisation
            ValidationError: type archived, or STRICT content invalid
        """
        block_type = await self.types.get_by_key(
            request.type_key, organisation_id, request.type_version
        )
        if block_type.archived:
            raise ValidationError(f"Block type '{block_type.key}' is archived")

        payload: BlockPayload = request.payload or ContentPayload(
            data=default_data(block_type.block_schema) or {}
        )
        block = self._validated(
            Block(
                organisation_id=organisation_id,
                name=request.name,
                type=block_type,
                payload=payload,
            )
        )
        with self.db.transaction() as conn:
            self.repos.blocks.insert(conn, block)
            self._sync_references(conn, block)

        log_with_context(
            logger,
            logging.INFO,
            "Created block",
            id=str(block.id),
            type=block_type.key,
            kind=block.payload.kind,
        )
        return block

    async def get_block(self, block_id: UUID) -> Block:
        with self.db.connection() as conn:
            block = self.repos.blocks.get(conn, block_id)
        if block is None:
            raise NotFoundError(f"Block {block_id} not found")
        return block

    async def list_blocks(
        self,
        organisation_id: UUID,
        type_key: str | None = None,
        include_archived: bool = False,
    ) -> list[Block]:
        with self.db.connection() as conn:
            return self.repos.blocks.list_for_organisation(
                conn, organisation_id, type_key, include_archived
            )

    async def update_block(self, block_id: UUID, request: UpdateBlockRequest) -> Block:
        """
        Apply a partial update.

        Content data is deep-merged into the stored data and re-validated.
        A reference payload replaces the stored one and its rows are
        re-synced. The payload kind cannot change.
        """
        with self.db.transaction() as conn:
            current = self.repos.blocks.get(conn, block_id)
            if current is None:
                raise NotFoundError(f"Block {block_id} not found")

            payload = current.payload
            if request.payload is not None:
                if request.payload.kind != current.payload.kind:
                    raise ValidationError(
                        f"Cannot change payload kind from '{current.payload.kind}' "
                        f"to '{request.payload.kind}'"
                    )
                if isinstance(request.payload, ContentPayload) and isinstance(
                    current.payload, ContentPayload
                ):
                    payload = current.payload.model_copy(
                        update={"data": deep_merge(current.payload.data, request.payload.data)}
                    )
                else:
                    payload = request.payload

            updates: dict[str, object] = {"payload": payload, "updated_at": datetime.now(UTC)}
            if request.name is not None:
                updates["name"] = request.name
            block = self._validated(current.model_copy(update=updates))
            self.repos.blocks.update(conn, block)
            self._sync_references(conn, block)

        logger.info("Updated block %s", block_id)
        return block

    async def archive_block(self, block_id: UUID, archived: bool) -> Block:
        with self.db.transaction() as conn:
            current = self.repos.blocks.get(conn, block_id)
            if current is None:
                raise NotFoundError(f"Block {block_id} not found")
            if current.archived == archived:
                return current
            block = current.model_copy(update={"archived": archived, "updated_at": datetime.now(UTC)})
            self.repos.blocks.update(conn, block)

        logger.info("Block %s archived=%s", block_id, archived)
        return block

    async def delete_block(self, block_id: UUID) -> list[UUID]:
        """
        Hard-delete a block.

        Owned children are detached (they become top-level blocks), the
        block's own edge and reference rows are removed, and references
        from other blocks to this one are pruned.

        Returns:
            Ids of the detached children
        """
        with self.db.transaction() as conn:
            if self.repos.blocks.get(conn, block_id) is None:
                raise NotFoundError(f"Block {block_id} not found")
            detached = self.repos.edges.delete_for_parent(conn, block_id)
            parent_edge = self.repos.edges.parent_edge(conn, block_id)
            if parent_edge is not None:
                self.children.detach_edge(conn, parent_edge)
            own_refs = self.references.remove_references_for_block(conn, block_id)
            inbound = self.references.prune_entity(conn, block_id)
            self.repos.blocks.delete(conn, block_id)

        log_with_context(
            logger,
            logging.INFO,
            "Deleted block",
            id=str(block_id),
            detached_children=len(detached),
            references=own_refs,
            inbound_references=inbound,
        )
        return detached

    # -------------------------------------------------------------------------
    # Tree assembly
    # -------------------------------------------------------------------------

    async def get_block_tree(
        self,
        block_id: UUID,
        expand_refs: bool = False,
        max_depth: int | None = None,
    ) -> BlockTree:
        """
        Assemble the tree rooted at a block.

        Args:
            block_id: Root block
            expand_refs: Resolve references EAGERly and expand block links
            max_depth: Levels of owned children to include (0 = root only)
        """
        depth = self.config.default_max_depth if max_depth is None else max_depth
        if depth < 0:
            raise ValidationError("maxDepth cannot be negative")
        depth = min(depth, self.config.max_tree_depth)
        root = await self.get_block(block_id)
        return BlockTree(
            max_depth=depth,
            expand_refs=expand_refs,
            root=await self._build_node(root, depth, expand_refs),
        )

    async def _build_reference_tree(self, block: Block, depth: int) -> BlockTree:
        return BlockTree(
            max_depth=depth,
            expand_refs=True,
            root=await self._build_node(block, depth, True),
        )

    async def _build_node(self, block: Block, remaining: int, expand_refs: bool) -> BlockNode:
        node = BlockNode(block=block)

        if remaining > 0:
            edges = await self.children.find_owned_blocks(block.id)
            with self.db.connection() as conn:
                blocks = self.repos.blocks.get_many(
                    conn, (e.child_id for slot_edges in edges.values() for e in slot_edges)
                )
            for slot, slot_edges in edges.items():
                nodes = []
                for edge in slot_edges:
                    child = blocks.get(edge.child_id)
                    if child is None:
                        node.warnings.append(f"Child {edge.child_id} in slot '{slot}' not found")
                        continue
                    nodes.append(await self._build_node(child, remaining - 1, expand_refs))
                node.children[slot] = nodes

        policy = FetchPolicy.EAGER if expand_refs else None
        ref_depth = remaining if expand_refs else 0
        payload = block.payload
        if isinstance(payload, EntityReferencePayload):
            refs = await self.references.find_block_references(
                block.id,
                payload,
                policy=policy,
                expand_depth=min(ref_depth, payload.meta.expand_depth),
            )
            node.references[slot_key_from_path(payload.meta.path)] = refs
        elif isinstance(payload, BlockReferencePayload):
            link = await self.references.find_block_link(
                block.id, payload, policy=policy, expand_depth=ref_depth
            )
            node.references[slot_key_from_path(payload.meta.path)] = [link]

        node.warnings.extend(_reference_warnings(node.references))
        return node


def _reference_warnings(references: dict[str, list[Reference]]) -> list[str]:
    messages = []
    for slot, refs in references.items():
        for ref in refs:
            if ref.warning in (ReferenceWarning.MISSING, ReferenceWarning.UNSUPPORTED):
                messages.append(f"{slot}: {ref.entity_type.value} {ref.entity_id} {ref.warning.value}")
    return messages
