"""
Children (ownership) service.

Manages parent -> child edges inside named slots. Every write runs in a
single ``BEGIN IMMEDIATE`` transaction and rewrites the affected slots in
full, so sibling order is always ``0..n-1`` and a failed call leaves no
partial state behind.

Caller-supplied indices are positions to insert at, clamped to the slot;
stored ``order_index`` values are always assigned here.
"""

from __future__ import annotations

import logging
import sqlite3
from uuid import UUID

from blocktree.runtime.errors import ConflictError, CycleError, NotFoundError, ValidationError
from blocktree.runtime.logging import get_logger, log_with_context
from blocktree.runtime.paths import slot_key_from_path
from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.specs.block import Block, ContentPayload
from blocktree.specs.block_type import BlockTypeNesting, normalise_type_key
from blocktree.specs.tree import Edge

logger = get_logger("Children")


def _insert_position(index: int | None, size: int) -> int:
    if index is None or index > size:
        return size
    return max(index, 0)


def _format_ids(ids: list[UUID]) -> str:
    return ", ".join(str(i) for i in ids)


def _effective_nesting(parent: Block, nesting: BlockTypeNesting | None) -> BlockTypeNesting | None:
    """The parent type's rules, narrowed by ``nesting``. None for leaf types."""
    if parent.type.nesting is None:
        return None
    return parent.type.nesting.narrowed(nesting)


class ChildrenService:
    """Add, move, reorder and remove owned children."""

    def __init__(self, db: DatabaseManager, repos: RepositoryFactory):
        self.db = db
        self.repos = repos

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _load(self, conn: sqlite3.Connection, block_id: UUID, role: str = "Block") -> Block:
        block = self.repos.blocks.get(conn, block_id)
        if block is None:
            raise NotFoundError(f"{role} {block_id} not found")
        return block

    def _validate_attach(
        self,
        conn: sqlite3.Connection,
        parent: Block,
        child: Block,
        slot: str,
        nesting: BlockTypeNesting | None,
        siblings: list[UUID],
    ) -> None:
        """Type, slot and capacity checks for placing ``child`` next to ``siblings``."""
        if parent.organisation_id != child.organisation_id:
            raise ValidationError(
                f"Block {child.id} belongs to a different organisation than parent {parent.id}"
            )
        if not isinstance(parent.payload, ContentPayload):
            raise ValidationError(f"Parent {parent.id} is not a content block and cannot own children")
        if nesting is None:
            raise ValidationError(f"Block type '{parent.type.key}' does not allow children")

        allowed = nesting.allowed_types or []
        if not nesting.accepts_any_type:
            if normalise_type_key(child.type.key) not in {normalise_type_key(t) for t in allowed}:
                raise ValidationError(
                    f"Type '{child.type.key}' is not allowed in slot '{slot}' of '{parent.type.key}'",
                    {"allowed_types": list(allowed)},
                )

        if nesting.max is not None and len(siblings) >= nesting.max:
            raise ValidationError(f"Slot '{slot}' reached maximum children ({nesting.max})")

        if not nesting.allow_duplicates and siblings:
            sibling_blocks = self.repos.blocks.get_many(conn, siblings)
            child_key = normalise_type_key(child.type.key)
            if any(normalise_type_key(b.type.key) == child_key for b in sibling_blocks.values()):
                raise ValidationError(
                    f"Slot '{slot}' already holds a '{child.type.key}' block"
                )

    def _check_cycle(self, conn: sqlite3.Connection, parent_id: UUID, child_id: UUID) -> None:
        if parent_id == child_id:
            raise CycleError(f"Block {child_id} cannot be its own child")
        if child_id in self.repos.edges.ancestors(conn, parent_id):
            raise CycleError(f"Block {child_id} is an ancestor of {parent_id}")

    def _check_unparented(self, conn: sqlite3.Connection, child_id: UUID) -> None:
        edge = self.repos.edges.parent_edge(conn, child_id)
        if edge is not None:
            raise ConflictError(
                f"Block {child_id} already has parent {edge.parent_id}",
                {"parent_id": str(edge.parent_id), "slot": edge.slot},
            )

    def _slot_ids(self, conn: sqlite3.Connection, parent_id: UUID, slot: str) -> list[UUID]:
        return [e.child_id for e in self.repos.edges.list_slot(conn, parent_id, slot)]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_owned_blocks(self, block_id: UUID) -> dict[str, list[Edge]]:
        """
        Direct owned children grouped by slot key, each slot ordered by index.

        A slot whose stored indices are not ``0..n-1`` is renumbered in place
        before being returned.

        Raises:
            NotFoundError: the block does not exist
        """
        with self.db.connection() as conn:
            self._load(conn, block_id)
            edges = self.repos.edges.list_for_parent(conn, block_id)

        grouped: dict[str, list[Edge]] = {}
        for edge in edges:
            grouped.setdefault(slot_key_from_path(edge.slot), []).append(edge)

        for slot, slot_edges in grouped.items():
            if [e.order_index for e in slot_edges] != list(range(len(slot_edges))):
                grouped[slot] = await self._repair_slot(block_id, slot)
        return grouped

    async def _repair_slot(self, parent_id: UUID, slot: str) -> list[Edge]:
        with self.db.transaction() as conn:
            ids = self._slot_ids(conn, parent_id, slot)
            edges = self.repos.edges.write_slot(conn, parent_id, slot, ids)
        log_with_context(
            logger,
            logging.WARNING,
            "Renumbered slot with non-contiguous order",
            parent_id=str(parent_id),
            slot=slot,
            size=len(edges),
        )
        return edges

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add_child(
        self,
        parent_id: UUID,
        child_id: UUID,
        slot: str,
        index: int | None = None,
        nesting: BlockTypeNesting | None = None,
    ) -> list[Edge]:
        """
        Attach an un-parented block at ``index`` in a parent's slot.

        Args:
            parent_id: Parent block
            child_id: Child block; must have no parent edge
            slot: Slot key or path (``"$.items"`` and ``"items"`` are the same slot)
            index: Insert position; None appends
            nesting: Extra rules; they can only tighten the parent type's nesting

        Returns:
            The slot's edges after the insert

        Raises:
            ValidationError: organisation, type, leaf or capacity violation
            ConflictError: child already has a parent
            CycleError: child is the parent or one of its ancestors
            NotFoundError: parent or child missing
        """
        slot = slot_key_from_path(slot)
        with self.db.transaction() as conn:
            parent = self._load(conn, parent_id, "Parent")
            child = self._load(conn, child_id, "Child")
            current = self._slot_ids(conn, parent_id, slot)
            effective = _effective_nesting(parent, nesting)
            self._validate_attach(conn, parent, child, slot, effective, current)
            self._check_unparented(conn, child_id)
            self._check_cycle(conn, parent_id, child_id)

            current.insert(_insert_position(index, len(current)), child_id)
            edges = self.repos.edges.write_slot(conn, parent_id, slot, current)

        log_with_context(
            logger,
            logging.INFO,
            "Added child",
            parent_id=str(parent_id),
            child_id=str(child_id),
            slot=slot,
            index=current.index(child_id),
        )
        return edges

    async def add_children_bulk(
        self,
        parent_id: UUID,
        slot: str,
        child_ids: list[UUID],
        nesting: BlockTypeNesting | None = None,
    ) -> list[Edge]:
        """
        Append several children in submission order, all or nothing.

        Each child is validated as if the previous ones were already added,
        so ``nesting.max`` counts the whole batch.
        """
        slot = slot_key_from_path(slot)
        seen: set[UUID] = set()
        dupes: list[UUID] = []
        for child_id in child_ids:
            if child_id in seen:
                dupes.append(child_id)
            seen.add(child_id)
        if dupes:
            raise ValidationError(
                f"Duplicate child ids in batch: {_format_ids(dupes)}",
                {"duplicates": [str(d) for d in dupes]},
            )

        with self.db.transaction() as conn:
            parent = self._load(conn, parent_id, "Parent")
            effective = _effective_nesting(parent, nesting)
            current = self._slot_ids(conn, parent_id, slot)
            for child_id in child_ids:
                child = self._load(conn, child_id, "Child")
                self._validate_attach(conn, parent, child, slot, effective, current)
                self._check_unparented(conn, child_id)
                self._check_cycle(conn, parent_id, child_id)
                current.append(child_id)
            edges = self.repos.edges.write_slot(conn, parent_id, slot, current)

        log_with_context(
            logger,
            logging.INFO,
            f"Added {len(child_ids)} children",
            parent_id=str(parent_id),
            slot=slot,
        )
        return edges

    async def move_child_to_slot(
        self,
        parent_id: UUID,
        child_id: UUID,
        from_slot: str,
        to_slot: str,
        to_index: int | None = None,
        nesting: BlockTypeNesting | None = None,
    ) -> dict[str, list[Edge]]:
        """
        Move a child between two slots of the same parent, or within one slot.

        Returns:
            Edges of every affected slot keyed by slot
        """
        from_slot = slot_key_from_path(from_slot)
        to_slot = slot_key_from_path(to_slot)
        with self.db.transaction() as conn:
            edge = self.repos.edges.parent_edge(conn, child_id)
            if edge is None or edge.parent_id != parent_id or edge.slot != from_slot:
                raise NotFoundError(f"Block {child_id} is not in slot '{from_slot}' of {parent_id}")

            source = [c for c in self._slot_ids(conn, parent_id, from_slot) if c != child_id]
            if from_slot == to_slot:
                source.insert(_insert_position(to_index, len(source)), child_id)
                result = {from_slot: self.repos.edges.write_slot(conn, parent_id, from_slot, source)}
            else:
                parent = self._load(conn, parent_id, "Parent")
                child = self._load(conn, child_id, "Child")
                target = self._slot_ids(conn, parent_id, to_slot)
                self._validate_attach(
                    conn, parent, child, to_slot, _effective_nesting(parent, nesting), target
                )
                target.insert(_insert_position(to_index, len(target)), child_id)
                result = {
                    from_slot: self.repos.edges.write_slot(conn, parent_id, from_slot, source),
                    to_slot: self.repos.edges.write_slot(conn, parent_id, to_slot, target),
                }

        log_with_context(
            logger,
            logging.INFO,
            "Moved child",
            parent_id=str(parent_id),
            child_id=str(child_id),
            from_slot=from_slot,
            to_slot=to_slot,
        )
        return result

    async def replace_slot(
        self,
        parent_id: UUID,
        slot: str,
        ordered_child_ids: list[UUID],
        nesting: BlockTypeNesting | None = None,
    ) -> list[Edge]:
        """
        Reorder a slot to exactly ``ordered_child_ids``.

        Raises:
            ValidationError: the id set differs from the slot's children; the
                message names the missing and extra ids
        """
        slot = slot_key_from_path(slot)
        with self.db.transaction() as conn:
            parent = self._load(conn, parent_id, "Parent")
            current = self._slot_ids(conn, parent_id, slot)

            current_set = set(current)
            requested_set = set(ordered_child_ids)
            missing = [c for c in current if c not in requested_set]
            extra = [c for c in ordered_child_ids if c not in current_set]
            if missing or extra or len(ordered_child_ids) != len(current):
                parts = []
                if missing:
                    parts.append(f"missing: {_format_ids(missing)}")
                if extra:
                    parts.append(f"extra: {_format_ids(extra)}")
                if not parts:
                    parts.append("duplicate ids")
                raise ValidationError(
                    f"Order for slot '{slot}' does not match its children ({'; '.join(parts)})",
                    {"missing": [str(m) for m in missing], "extra": [str(e) for e in extra]},
                )

            effective = _effective_nesting(parent, nesting)
            if effective is not None and effective.max is not None and len(current) > effective.max:
                raise ValidationError(f"Slot '{slot}' exceeds maximum children ({effective.max})")
            edges = self.repos.edges.write_slot(conn, parent_id, slot, list(ordered_child_ids))

        logger.info("Reordered slot '%s' of %s", slot, parent_id)
        return edges

    async def remove_child(self, parent_id: UUID, slot: str, child_id: UUID) -> list[Edge]:
        """
        Delete the edge; the child becomes a top-level block.

        Returns:
            Remaining edges of the slot
        """
        slot = slot_key_from_path(slot)
        with self.db.transaction() as conn:
            edge = self.repos.edges.parent_edge(conn, child_id)
            if edge is None or edge.parent_id != parent_id or edge.slot != slot:
                raise NotFoundError(f"Block {child_id} is not in slot '{slot}' of {parent_id}")
            remaining = [c for c in self._slot_ids(conn, parent_id, slot) if c != child_id]
            edges = self.repos.edges.write_slot(conn, parent_id, slot, remaining)

        logger.info("Removed child %s from slot '%s' of %s", child_id, slot, parent_id)
        return edges

    async def detach_children_by_slot(self, parent_id: UUID, slot: str) -> list[UUID]:
        """Detach every child of a slot. Returns the detached ids in their old order."""
        slot = slot_key_from_path(slot)
        with self.db.transaction() as conn:
            self._load(conn, parent_id, "Parent")
            detached = self._slot_ids(conn, parent_id, slot)
            self.repos.edges.write_slot(conn, parent_id, slot, [])

        logger.info("Detached %d children from slot '%s' of %s", len(detached), slot, parent_id)
        return detached

    async def reparent_child(
        self,
        child_id: UUID,
        new_parent_id: UUID,
        slot: str,
        index: int | None = None,
        nesting: BlockTypeNesting | None = None,
    ) -> list[Edge]:
        """
        Move a child under a different parent in one step.

        The old slot is renumbered and the new placement fully validated;
        either both happen or neither does.
        """
        slot = slot_key_from_path(slot)
        with self.db.transaction() as conn:
            parent = self._load(conn, new_parent_id, "Parent")
            child = self._load(conn, child_id, "Child")
            old = self.repos.edges.parent_edge(conn, child_id)
            if old is not None:
                self.detach_edge(conn, old)

            target = self._slot_ids(conn, new_parent_id, slot)
            effective = _effective_nesting(parent, nesting)
            self._validate_attach(conn, parent, child, slot, effective, target)
            self._check_cycle(conn, new_parent_id, child_id)
            target.insert(_insert_position(index, len(target)), child_id)
            edges = self.repos.edges.write_slot(conn, new_parent_id, slot, target)

        log_with_context(
            logger,
            logging.INFO,
            "Reparented child",
            child_id=str(child_id),
            old_parent_id=str(old.parent_id) if old else None,
            new_parent_id=str(new_parent_id),
            slot=slot,
        )
        return edges

    async def detach_child(self, child_id: UUID) -> Edge | None:
        """Remove a child's parent edge wherever it is. Returns the removed edge."""
        with self.db.transaction() as conn:
            edge = self.repos.edges.parent_edge(conn, child_id)
            if edge is None:
                return None
            self.detach_edge(conn, edge)

        logger.info("Detached %s from %s", child_id, edge.parent_id)
        return edge

    def detach_edge(self, conn: sqlite3.Connection, edge: Edge) -> None:
        remaining = [
            c for c in self._slot_ids(conn, edge.parent_id, edge.slot) if c != edge.child_id
        ]
        self.repos.edges.write_slot(conn, edge.parent_id, edge.slot, remaining)
