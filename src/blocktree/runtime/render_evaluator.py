"""
Binding/render evaluator.

Walks a block type's render structure over an assembled ``BlockTree``
and produces ``RenderNode`` trees with props filled from bindings.
Missing components and missing data degrade to placeholders and None
values; only a caller opting into ``strict`` sees exceptions.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from blocktree.runtime.condition_evaluator import evaluate_condition
from blocktree.runtime.errors import UnsupportedBindingError
from blocktree.runtime.logging import get_render_logger, log_with_context
from blocktree.runtime.paths import get_by_path, set_deep, slot_key_from_path
from blocktree.specs.block import Block, ContentPayload, EntityType
from blocktree.specs.display import (
    BlockComponentNode,
    BlockRenderStructure,
    ComputedSource,
    DataPathSource,
    GridItem,
    RefPresentation,
    RefSlotSource,
    RenderNode,
)
from blocktree.specs.tree import BlockTree, Reference

logger = get_render_logger()

PLACEHOLDER_TYPE = "placeholder"


@dataclass
class RenderContext:
    """Data visible to bindings and conditions for one block."""

    data: dict[str, Any]
    references: dict[str, list[Reference]] = field(default_factory=dict)
    focus: str | None = None  # id of the active surface component
    expand_depth: int = 1

    def as_dict(self) -> dict[str, Any]:
        refs = {slot: [r.model_dump() for r in rows] for slot, rows in self.references.items()}
        return {"data": self.data, "payload": self.data, "references": refs}

    @classmethod
    def from_tree(cls, tree: BlockTree, focus: str | None = None) -> RenderContext:
        payload = tree.root.block.payload
        data = payload.data if isinstance(payload, ContentPayload) else {}
        return cls(
            data=data,
            references=tree.root.references,
            focus=focus,
            expand_depth=tree.max_depth,
        )


def _entity_dict(entity: Any) -> dict[str, Any]:
    """Flatten a resolved entity into a dict that field names can be read from."""
    if isinstance(entity, BlockTree):
        entity = entity.root.block
    if isinstance(entity, Block):
        values = entity.model_dump(mode="json", exclude={"payload", "type"})
        if isinstance(entity.payload, ContentPayload):
            values.update(entity.payload.data)
        values["typeKey"] = entity.type.key
        return values
    if isinstance(entity, BaseModel):
        return entity.model_dump(mode="json")
    if isinstance(entity, dict):
        return entity
    return {}


class RenderEvaluator:
    """Turns a render structure plus bound data into render nodes."""

    def __init__(self, strict: bool = False):
        """
        Args:
            strict: Raise on unsupported bindings instead of recording the
                error on the node
        """
        self.strict = strict

    def render(
        self,
        tree: BlockTree,
        display: BlockRenderStructure | None = None,
        focus: str | None = None,
    ) -> list[RenderNode]:
        """
        Render every layout item of a block's display.

        Args:
            tree: Assembled tree; its root block supplies data and references
            display: Structure to render; defaults to the root type's display
            focus: Component id of the active surface, if any

        Returns:
            One node per visible layout item, in layout order
        """
        structure = display or tree.root.block.type.display.render
        context = RenderContext.from_tree(tree, focus)
        return self.render_structure(structure, context)

    def render_structure(
        self, structure: BlockRenderStructure, context: RenderContext
    ) -> list[RenderNode]:
        scope = context.as_dict()
        nodes = []
        for item in structure.layout.items:
            node = self._render_component(item.id, structure, context, scope, (), item)
            if node is not None:
                nodes.append(node)
        return nodes

    def _render_component(
        self,
        component_id: str,
        structure: BlockRenderStructure,
        context: RenderContext,
        scope: dict[str, Any],
        ancestry: tuple[str, ...],
        layout: GridItem | None = None,
    ) -> RenderNode | None:
        component = structure.components.get(component_id)
        if component is None:
            log_with_context(
                logger, logging.WARNING, "Rendering placeholder for unknown component", id=component_id
            )
            return RenderNode(
                id=component_id,
                type=PLACEHOLDER_TYPE,
                layout=layout,
                placeholder=True,
                errors=[f"Unknown component '{component_id}'"],
            )
        if component_id in ancestry:
            return RenderNode(
                id=component_id,
                type=PLACEHOLDER_TYPE,
                placeholder=True,
                errors=[f"Slot cycle through '{component_id}'"],
            )
        if not evaluate_condition(component.visible, scope):
            return None

        node = RenderNode(
            id=component.id,
            type=component.type,
            props=copy.deepcopy(component.props),
            layout=layout,
            focused=context.focus == component_id,
        )
        self._apply_bindings(component, context, scope, node)

        for slot_name, child_ids in component.slots.items():
            rendered = []
            for child_id in child_ids:
                child = self._render_component(
                    child_id, structure, context, scope, (*ancestry, component_id)
                )
                if child is not None:
                    rendered.append(child)
            node.slots[slot_name] = rendered
        return node

    def _apply_bindings(
        self,
        component: BlockComponentNode,
        context: RenderContext,
        scope: dict[str, Any],
        node: RenderNode,
    ) -> None:
        for binding in component.bindings:
            source = binding.source
            if isinstance(source, DataPathSource):
                set_deep(node.props, binding.prop, get_by_path(scope, source.path))
            elif isinstance(source, RefSlotSource):
                set_deep(node.props, binding.prop, self._evaluate_ref_slot(source, context))
            elif isinstance(source, ComputedSource):
                message = (
                    f"Computed binding for '{binding.prop}' is not supported "
                    f"(engine '{source.engine}')"
                )
                if self.strict:
                    raise UnsupportedBindingError(message, {"component": component.id})
                node.errors.append(message)

    def _evaluate_ref_slot(self, source: RefSlotSource, context: RenderContext) -> list[Any]:
        references = context.references.get(slot_key_from_path(source.slot), [])
        if source.presentation == RefPresentation.SUMMARY:
            return [self._summary(ref, source.fields) for ref in references]

        depth = context.expand_depth if source.expand_depth is None else source.expand_depth
        return [
            self._inline_row(ref, depth, context.focus)
            for ref in references
            if ref.entity_type == EntityType.BLOCK
        ]

    def _summary(self, ref: Reference, fields: list[str] | None) -> dict[str, Any]:
        row: dict[str, Any] = {"entityId": str(ref.entity_id) if ref.entity_id else None}
        if ref.warning is not None:
            row["warning"] = ref.warning.value
        if fields and ref.entity is not None:
            values = _entity_dict(ref.entity)
            for name in fields:
                row[name] = get_by_path(values, f"$.{name}")
        return row

    def _inline_row(self, ref: Reference, depth: int, focus: str | None) -> dict[str, Any]:
        row: dict[str, Any] = {
            "entityId": str(ref.entity_id) if ref.entity_id else None,
            "entityType": ref.entity_type.value,
            "warning": ref.warning.value if ref.warning else None,
            "entity": _entity_dict(ref.entity) if ref.entity is not None else None,
        }
        if isinstance(ref.entity, BlockTree) and depth > 0:
            nested = ref.entity
            context = RenderContext.from_tree(nested, focus)
            context.expand_depth = depth - 1
            row["nodes"] = [
                n.model_dump(mode="json")
                for n in self.render_structure(nested.root.block.type.display.render, context)
            ]
        return row
