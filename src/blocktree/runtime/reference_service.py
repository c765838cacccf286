"""
Reference resolution service.

Stored reference rows mirror the items declared in a block's reference
payload; the payload is the source of truth for order and membership.
Reads return LAZY placeholders or EAGER-resolved entities; resolvers are
called once per entity type, concurrently, and results are merged back
in input order.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from blocktree.runtime.config import ServerConfig
from blocktree.runtime.errors import (
    AmbiguousDeletionError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from blocktree.runtime.logging import get_logger, log_with_context
from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.runtime.resolvers import ReferenceResolver, ResolverRegistry
from blocktree.specs.block import (
    Block,
    BlockReferencePayload,
    EntityReferencePayload,
    EntityType,
)
from blocktree.specs.display import FetchPolicy
from blocktree.specs.tree import BlockTree, Reference, ReferenceWarning, StoredReference

logger = get_logger("Refs")

# Builds the nested tree for a referenced block; the int is the remaining depth.
TreeBuilder = Callable[[Block, int], Awaitable[BlockTree]]


class ReferenceService:
    """Store, resolve and clean up linked references."""

    def __init__(
        self,
        db: DatabaseManager,
        repos: RepositoryFactory,
        registry: ResolverRegistry,
        config: ServerConfig | None = None,
    ):
        self.db = db
        self.repos = repos
        self.registry = registry
        self.config = config or ServerConfig()
        self._tree_builder: TreeBuilder | None = None

    def bind_tree_builder(self, builder: TreeBuilder) -> None:
        """Install the callback used to expand BLOCK references into trees."""
        self._tree_builder = builder

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_block_references(
        self,
        block_id: UUID,
        payload: EntityReferencePayload,
        policy: FetchPolicy | None = None,
        expand_depth: int = 0,
    ) -> list[Reference]:
        """
        References for every declared item, in payload order.

        Items with a stored row come back as REQUIRES_LOADING; items without
        one become MISSING placeholders. EAGER (the payload's policy unless
        ``policy`` overrides it) resolves them.
        """
        with self.db.connection() as conn:
            rows = self.repos.references.list_for_block(conn, block_id)

        by_path = {row.path: row for row in rows}
        claimed: set[UUID] = set()

        references: list[Reference] = []
        for index, item in enumerate(payload.items):
            path = payload.item_path(index)
            row = by_path.get(path)
            if (
                row is None
                or row.id in claimed
                or (row.entity_type, row.entity_id) != (item.type, item.id)
            ):
                row = next(
                    (
                        r
                        for r in rows
                        if r.id not in claimed and (r.entity_type, r.entity_id) == (item.type, item.id)
                    ),
                    None,
                )
            if row is not None:
                claimed.add(row.id)
                references.append(
                    row.to_reference().model_copy(update={"order_index": index, "path": path})
                )
            else:
                references.append(
                    Reference(
                        entity_type=item.type,
                        entity_id=item.id,
                        path=path,
                        order_index=index,
                        warning=ReferenceWarning.MISSING,
                    )
                )

        if (policy or payload.meta.fetch_policy) == FetchPolicy.EAGER:
            return await self.resolve_references(references, expand_depth=expand_depth)
        return references

    async def find_block_link(
        self,
        block_id: UUID,
        payload: BlockReferencePayload,
        policy: FetchPolicy | None = None,
        expand_depth: int = 0,
    ) -> Reference:
        """The single stored link of a block-reference block."""
        with self.db.connection() as conn:
            rows = self.repos.references.list_for_block(conn, block_id)

        if rows:
            reference = rows[0].to_reference()
        else:
            reference = Reference(
                entity_type=payload.item.type,
                entity_id=payload.item.id,
                path=payload.item.path or payload.meta.path,
                warning=ReferenceWarning.MISSING,
            )
        if policy == FetchPolicy.EAGER:
            depth = min(expand_depth, payload.meta.expand_depth)
            return (await self.resolve_references([reference], expand_depth=depth))[0]
        return reference

    async def resolve_references(
        self,
        references: list[Reference],
        expand_depth: int = 0,
    ) -> list[Reference]:
        """
        Attach entities to stored references.

        Each entity type's resolver is called exactly once with every id of
        that type. Placeholders are passed through unchanged.

        Args:
            references: References to resolve
            expand_depth: Levels of nested trees to build for BLOCK references

        Returns:
            New references in the same order as the input
        """
        groups: dict[EntityType, set[UUID]] = {}
        for ref in references:
            if ref.id is not None and ref.entity_id is not None:
                groups.setdefault(ref.entity_type, set()).add(ref.entity_id)

        resolvers: dict[EntityType, ReferenceResolver] = {}
        for entity_type in groups:
            resolver = self.registry.get(entity_type)
            if resolver is not None:
                resolvers[entity_type] = resolver
        outcomes = await asyncio.gather(
            *(self._fetch_group(t, r, groups[t]) for t, r in resolvers.items())
        )
        found: dict[EntityType, Mapping[UUID, Any] | None] = dict(zip(resolvers, outcomes))

        resolved: list[Reference] = []
        for ref in references:
            if ref.id is None or ref.entity_id is None:
                resolved.append(ref)
                continue
            if ref.entity_type not in found:
                resolved.append(
                    ref.model_copy(update={"entity": None, "warning": ReferenceWarning.UNSUPPORTED})
                )
                continue
            entities = found[ref.entity_type]
            if entities is None:
                # Resolver failed or timed out; the data may still exist.
                resolved.append(ref)
                continue
            entity = entities.get(ref.entity_id)
            if entity is None:
                resolved.append(
                    ref.model_copy(update={"entity": None, "warning": ReferenceWarning.MISSING})
                )
                continue
            if (
                ref.entity_type == EntityType.BLOCK
                and isinstance(entity, Block)
                and expand_depth > 0
                and self._tree_builder is not None
            ):
                entity = await self._tree_builder(entity, expand_depth - 1)
            resolved.append(ref.model_copy(update={"entity": entity, "warning": None}))
        return resolved

    async def _fetch_group(
        self, entity_type: EntityType, resolver: ReferenceResolver, ids: set[UUID]
    ) -> Mapping[UUID, Any] | None:
        try:
            return await asyncio.wait_for(resolver.fetch(set(ids)), self.config.resolver_timeout)
        except TimeoutError:
            log_with_context(
                logger,
                logging.WARNING,
                "Resolver timed out",
                entity_type=entity_type.value,
                ids=len(ids),
                timeout=self.config.resolver_timeout,
            )
        except Exception:
            logger.exception("Resolver for %s failed", entity_type.value)
        return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _load(self, conn: sqlite3.Connection, block_id: UUID) -> Block:
        block = self.repos.blocks.get(conn, block_id)
        if block is None:
            raise NotFoundError(f"Block {block_id} not found")
        return block

    def _save_payload(self, conn: sqlite3.Connection, block: Block, payload: Any) -> Block:
        updated = block.model_copy(update={"payload": payload, "updated_at": datetime.now(UTC)})
        return self.repos.blocks.update(conn, updated)

    def validate_links(self, payload: EntityReferencePayload) -> None:
        """
        Check a reference list before storing it.

        Raises:
            ValidationError: BLOCK items, or items not of the declared type
            ConflictError: repeated (type, id) while duplicates are disallowed
        """
        for index, item in enumerate(payload.items):
            if item.type == EntityType.BLOCK:
                raise ValidationError(
                    f"Item {index} is a block; block links use a block reference payload"
                )
            if payload.meta.entity_type is not None and item.type != payload.meta.entity_type:
                raise ValidationError(
                    f"Item {index} has type '{item.type.value}', "
                    f"expected '{payload.meta.entity_type.value}'"
                )
        if not payload.meta.allow_duplicates:
            seen: set[tuple[EntityType, UUID]] = set()
            for item in payload.items:
                key = (item.type, item.id)
                if key in seen:
                    raise ConflictError(
                        f"Duplicate reference to {item.type.value} {item.id}",
                        {"entity_type": item.type.value, "entity_id": str(item.id)},
                    )
                seen.add(key)

    def sync_links(
        self, conn: sqlite3.Connection, block_id: UUID, payload: EntityReferencePayload
    ) -> list[StoredReference]:
        """
        Delta-upsert the stored rows of a block to match ``payload.items``.

        Rows matching (type, id, path) are kept; remaining rows with the same
        (type, id) are moved to the new path and position; the rest are
        inserted or deleted.
        """
        self.validate_links(payload)
        existing = self.repos.references.list_for_block(conn, block_id)
        exact = {(r.entity_type, r.entity_id, r.path): r for r in existing}

        desired = [
            (item.type, item.id, payload.item_path(i), i) for i, item in enumerate(payload.items)
        ]
        matched: dict[int, StoredReference] = {}
        claimed: set[UUID] = set()
        for entity_type, entity_id, path, index in desired:
            row = exact.get((entity_type, entity_id, path))
            if row is not None and row.id not in claimed:
                matched[index] = row
                claimed.add(row.id)
        for entity_type, entity_id, path, index in desired:
            if index in matched:
                continue
            for row in existing:
                if row.id not in claimed and (row.entity_type, row.entity_id) == (entity_type, entity_id):
                    matched[index] = row
                    claimed.add(row.id)
                    break

        stale = [r.id for r in existing if r.id not in claimed]
        self.repos.references.delete(conn, stale)

        stored: list[StoredReference] = []
        for entity_type, entity_id, path, index in desired:
            row = matched.get(index)
            if row is None:
                row = self.repos.references.insert(
                    conn,
                    StoredReference(
                        block_id=block_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        path=path,
                        order_index=index,
                    ),
                )
            elif row.path != path or row.order_index != index:
                self.repos.references.update_position(conn, row.id, path, index)
                row = row.model_copy(update={"path": path, "order_index": index})
            stored.append(row)
        return stored

    def sync_block_link(
        self, conn: sqlite3.Connection, block_id: UUID, payload: BlockReferencePayload
    ) -> StoredReference:
        """Keep exactly one stored row for a block-reference block."""
        item = payload.item
        if item.type != EntityType.BLOCK:
            raise ValidationError(f"Block links must target a block, got '{item.type.value}'")
        if item.id == block_id:
            raise ValidationError("A block cannot link to itself")

        path = item.path or payload.meta.path
        existing = self.repos.references.list_for_block(conn, block_id)
        if (
            len(existing) == 1
            and existing[0].entity_id == item.id
            and existing[0].entity_type == EntityType.BLOCK
        ):
            row = existing[0]
            if row.path != path:
                self.repos.references.update_position(conn, row.id, path, None)
                row = row.model_copy(update={"path": path, "order_index": None})
            return row

        self.repos.references.delete(conn, [r.id for r in existing])
        return self.repos.references.insert(
            conn,
            StoredReference(block_id=block_id, entity_type=EntityType.BLOCK, entity_id=item.id, path=path),
        )

    async def upsert_links_for(
        self, block_id: UUID, payload: EntityReferencePayload
    ) -> list[StoredReference]:
        """Replace an entity-reference block's list and delta-sync its rows."""
        with self.db.transaction() as conn:
            block = self._load(conn, block_id)
            if not isinstance(block.payload, EntityReferencePayload):
                raise ValidationError(f"Block {block_id} is not an entity reference block")
            stored = self.sync_links(conn, block_id, payload)
            self._save_payload(conn, block, payload)

        log_with_context(
            logger, logging.INFO, "Upserted reference links", block_id=str(block_id), count=len(stored)
        )
        return stored

    async def upsert_block_link_for(
        self, block_id: UUID, payload: BlockReferencePayload
    ) -> StoredReference:
        """Point a block-reference block at another block."""
        with self.db.transaction() as conn:
            block = self._load(conn, block_id)
            if not isinstance(block.payload, BlockReferencePayload):
                raise ValidationError(f"Block {block_id} is not a block reference block")
            stored = self.sync_block_link(conn, block_id, payload)
            self._save_payload(conn, block, payload)

        logger.info("Linked block %s to %s", block_id, stored.entity_id)
        return stored

    async def remove_reference(
        self,
        block_id: UUID,
        entity_type: EntityType,
        entity_id: UUID,
        path: str | None = None,
    ) -> StoredReference:
        """
        Delete one stored reference and renumber the rest of its list.

        Raises:
            NotFoundError: nothing matches
            AmbiguousDeletionError: several rows match and ``path`` is None
        """
        with self.db.transaction() as conn:
            block = self._load(conn, block_id)
            rows = self.repos.references.find(conn, block_id, entity_type.value, entity_id, path)
            if not rows:
                raise NotFoundError(
                    f"No reference to {entity_type.value} {entity_id} on block {block_id}"
                )
            if len(rows) > 1:
                raise AmbiguousDeletionError(
                    f"{len(rows)} references to {entity_type.value} {entity_id}; pass a path",
                    {"paths": [r.path for r in rows]},
                )
            target = rows[0]

            if isinstance(block.payload, EntityReferencePayload):
                payload = block.payload
                index = next(
                    (
                        i
                        for i, item in enumerate(payload.items)
                        if payload.item_path(i) == target.path
                        and (item.type, item.id) == (entity_type, entity_id)
                    ),
                    None,
                )
                self.repos.references.delete(conn, [target.id])
                if index is not None:
                    pruned = payload.model_copy(
                        update={"items": payload.items[:index] + payload.items[index + 1 :]}
                    )
                    self.sync_links(conn, block_id, pruned)
                    self._save_payload(conn, block, pruned)
            else:
                self.repos.references.delete(conn, [target.id])

        log_with_context(
            logger,
            logging.INFO,
            "Removed reference",
            block_id=str(block_id),
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            path=target.path,
        )
        return target

    async def clear_references(self, block_id: UUID) -> int:
        """Delete every stored reference of a block and empty its list payload."""
        with self.db.transaction() as conn:
            block = self._load(conn, block_id)
            count = self.repos.references.delete_for_block(conn, block_id)
            if isinstance(block.payload, EntityReferencePayload):
                self._save_payload(conn, block, block.payload.model_copy(update={"items": []}))
        logger.info("Cleared %d references from block %s", count, block_id)
        return count

    def remove_references_for_block(self, conn: sqlite3.Connection, block_id: UUID) -> int:
        """Cascade-delete a block's own reference rows; used when the block is deleted."""
        return self.repos.references.delete_for_block(conn, block_id)

    def prune_entity(
        self, conn: sqlite3.Connection, entity_id: UUID, organisation_id: UUID | None = None
    ) -> int:
        """
        Remove stored references to ``entity_id`` and drop it from list payloads.

        With ``organisation_id`` only blocks of that organisation are touched.
        """
        rows = self.repos.references.list_by_entity(conn, entity_id)
        removed = 0
        for block_id in dict.fromkeys(r.block_id for r in rows):
            block_rows = [r for r in rows if r.block_id == block_id]
            block = self.repos.blocks.get(conn, block_id)
            if organisation_id is not None and (
                block is None or block.organisation_id != organisation_id
            ):
                continue
            if block is not None and isinstance(block.payload, EntityReferencePayload):
                payload = block.payload
                kept = [item for item in payload.items if item.id != entity_id]
                pruned = payload.model_copy(update={"items": kept})
                self.sync_links(conn, block_id, pruned)
                self._save_payload(conn, block, pruned)
            else:
                self.repos.references.delete(conn, [r.id for r in block_rows])
            removed += len(block_rows)
        return removed

    async def remove_stale_references(
        self, entity_id: UUID, organisation_id: UUID | None = None
    ) -> int:
        """
        Cleanup after an external entity is deleted.

        Afterwards no stored reference in scope points at ``entity_id``.

        Args:
            entity_id: The deleted entity
            organisation_id: Only prune blocks of this organisation; None prunes all

        Returns:
            Number of reference rows removed

        Raises:
            ConflictError: ``entity_id`` is a block that still exists
        """
        with self.db.transaction() as conn:
            if self.repos.blocks.get(conn, entity_id) is not None:
                raise ConflictError(
                    f"Block {entity_id} still exists; delete the block to drop its references"
                )
            removed = self.prune_entity(conn, entity_id, organisation_id)
        if removed:
            log_with_context(
                logger,
                logging.INFO,
                "Removed stale references",
                entity_id=str(entity_id),
                count=removed,
            )
        return removed
