"""
HTTP routes for blocks, children, references and block types.

Every request names the acting organisation in the ``X-Organisation-Id``
header; blocks of other organisations are reported as not found.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from fastapi import APIRouter, Header, Query
from pydantic import BaseModel, Field

from blocktree.runtime.errors import NotFoundError, ValidationError
from blocktree.runtime.linter import lint
from blocktree.specs.block import (
    Block,
    BlockReferencePayload,
    CreateBlockRequest,
    EntityReferencePayload,
    EntityType,
    UpdateBlockRequest,
)
from blocktree.specs.block_type import (
    BlockType,
    BlockTypeForkRequest,
    BlockTypeRequest,
    BlockTypeResult,
)
from blocktree.specs.display import BlockRenderStructure, FetchPolicy, LintIssue, RenderNode
from blocktree.specs.tree import BlockTree, Edge, Reference, StoredReference

if TYPE_CHECKING:
    from blocktree.runtime.app_factory import BlocktreeServices

ORG_HEADER = "X-Organisation-Id"


# =============================================================================
# Request Models
# =============================================================================


class AddChildRequest(BaseModel):
    child_id: UUID
    slot: str = "items"
    index: int | None = None


class BulkAddChildrenRequest(BaseModel):
    slot: str = "items"
    child_ids: list[UUID] = Field(min_length=1)


class MoveChildRequest(BaseModel):
    from_slot: str
    to_slot: str
    to_index: int | None = None


class ReorderChildrenRequest(BaseModel):
    slot: str = "items"
    order: list[UUID]


# =============================================================================
# Routers
# =============================================================================


def create_routers(services: BlocktreeServices) -> list[APIRouter]:
    """
    Create the block, children, reference and schema routers.

    Args:
        services: Wired services shared by all handlers

    Returns:
        Routers to include on the app, schema routes first
    """
    blocks = APIRouter(prefix="/block", tags=["Blocks"])
    children = APIRouter(prefix="/block/child", tags=["Children"])
    references = APIRouter(prefix="/block/reference", tags=["References"])
    schema = APIRouter(prefix="/block/schema", tags=["Block Types"])

    async def _owned_block(block_id: UUID, organisation_id: UUID) -> Block:
        block = await services.blocks.get_block(block_id)
        if block.organisation_id != organisation_id:
            raise NotFoundError(f"Block {block_id} not found")
        return block

    async def _owned_type(type_id: UUID, organisation_id: UUID) -> BlockType:
        block_type = await services.types.get(type_id)
        if block_type.organisation_id not in (None, organisation_id):
            raise NotFoundError(f"Block type {type_id} not found")
        return block_type

    # -------------------------------------------------------------------------
    # Block types
    # -------------------------------------------------------------------------

    @schema.post("", status_code=201, summary="Publish block type")
    async def publish_type(
        request: BlockTypeRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockTypeResult:
        return await services.types.publish(organisation_id, request)

    @schema.post("/fork", status_code=201, summary="Fork block type into organisation")
    async def fork_type(
        request: BlockTypeForkRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockTypeResult:
        return await services.types.fork(organisation_id, request)

    @schema.post("/lint", summary="Lint a render structure")
    async def lint_display(display: BlockRenderStructure) -> list[LintIssue]:
        return lint(display)

    @schema.get("/key/{key}", summary="Get block type by key")
    async def get_type_by_key(
        key: str,
        version: int | None = Query(None, ge=1),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockType:
        return await services.types.get_by_key(key, organisation_id, version)

    @schema.get("/organisation/{org_id}", summary="List block types for organisation")
    async def list_types(
        org_id: UUID,
        include_system: bool = Query(True, alias="includeSystem"),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[BlockType]:
        if org_id != organisation_id:
            raise NotFoundError(f"Organisation {org_id} not found")
        return await services.types.list_for_organisation(org_id, include_system)

    @schema.put("/{type_id}", summary="Publish new version of block type")
    async def update_type(
        type_id: UUID,
        request: BlockTypeRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockTypeResult:
        block_type = await _owned_type(type_id, organisation_id)
        if block_type.system:
            raise ValidationError("System block types cannot be updated; fork them instead")
        return await services.types.update(type_id, request)

    @schema.put("/{type_id}/archive/{archived}", summary="Archive or restore block type")
    async def archive_type(
        type_id: UUID,
        archived: bool,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockType:
        await _owned_type(type_id, organisation_id)
        return await services.types.archive(type_id, archived)

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    @blocks.post("", status_code=201, summary="Create block")
    async def create_block(
        request: CreateBlockRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> Block:
        return await services.blocks.create_block(organisation_id, request)

    @blocks.get("", summary="List blocks")
    async def list_blocks(
        type_key: str | None = Query(None, alias="typeKey"),
        include_archived: bool = Query(False, alias="includeArchived"),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Block]:
        return await services.blocks.list_blocks(organisation_id, type_key, include_archived)

    @blocks.get("/{block_id}", summary="Get block tree")
    async def get_block_tree(
        block_id: UUID,
        expand_refs: bool = Query(False, alias="expandRefs"),
        max_depth: int | None = Query(None, alias="maxDepth", ge=0),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> BlockTree:
        await _owned_block(block_id, organisation_id)
        return await services.blocks.get_block_tree(block_id, expand_refs, max_depth)

    @blocks.get("/{block_id}/render", summary="Render block display")
    async def render_block(
        block_id: UUID,
        expand_refs: bool = Query(True, alias="expandRefs"),
        max_depth: int | None = Query(None, alias="maxDepth", ge=0),
        focus: str | None = Query(None),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[RenderNode]:
        await _owned_block(block_id, organisation_id)
        tree = await services.blocks.get_block_tree(block_id, expand_refs, max_depth)
        return services.renderer.render(tree, focus=focus)

    @blocks.put("/{block_id}", summary="Update block")
    async def update_block(
        block_id: UUID,
        request: UpdateBlockRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> Block:
        await _owned_block(block_id, organisation_id)
        return await services.blocks.update_block(block_id, request)

    @blocks.put("/{block_id}/archive/{archived}", summary="Archive or restore block")
    async def archive_block(
        block_id: UUID,
        archived: bool,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> Block:
        await _owned_block(block_id, organisation_id)
        return await services.blocks.archive_block(block_id, archived)

    @blocks.delete("/{block_id}", summary="Delete block")
    async def delete_block(
        block_id: UUID,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, Any]:
        await _owned_block(block_id, organisation_id)
        detached = await services.blocks.delete_block(block_id)
        return {"deleted": str(block_id), "detached_children": [str(c) for c in detached]}

    # -------------------------------------------------------------------------
    # Children
    # -------------------------------------------------------------------------

    @children.get("/{parent_id}/children", summary="List owned children by slot")
    async def list_children(
        parent_id: UUID,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, list[Edge]]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.find_owned_blocks(parent_id)

    @children.post("/{parent_id}/children", status_code=201, summary="Add child")
    async def add_child(
        parent_id: UUID,
        request: AddChildRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Edge]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.add_child(
            parent_id, request.child_id, request.slot, request.index
        )

    @children.post("/{parent_id}/children:bulk", status_code=201, summary="Add children")
    async def add_children_bulk(
        parent_id: UUID,
        request: BulkAddChildrenRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Edge]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.add_children_bulk(
            parent_id, request.slot, request.child_ids
        )

    @children.patch("/{parent_id}/children/reorder", summary="Reorder slot")
    async def reorder_children(
        parent_id: UUID,
        request: ReorderChildrenRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Edge]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.replace_slot(
            parent_id, request.slot, request.order
        )

    @children.patch("/{parent_id}/children/{child_id}/move", summary="Move child")
    async def move_child(
        parent_id: UUID,
        child_id: UUID,
        request: MoveChildRequest,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, list[Edge]]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.move_child_to_slot(
            parent_id,
            child_id,
            request.from_slot,
            request.to_slot,
            request.to_index,
        )

    @children.delete("/{parent_id}/children/{child_id}", summary="Remove child")
    async def remove_child(
        parent_id: UUID,
        child_id: UUID,
        slot: str = Query("items"),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Edge]:
        await _owned_block(parent_id, organisation_id)
        return await services.children.remove_child(parent_id, slot, child_id)

    @children.delete("/{parent_id}/children", summary="Detach all children of a slot")
    async def detach_slot(
        parent_id: UUID,
        slot: str = Query(...),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, Any]:
        await _owned_block(parent_id, organisation_id)
        detached = await services.children.detach_children_by_slot(parent_id, slot)
        return {"slot": slot, "detached": [str(c) for c in detached]}

    # -------------------------------------------------------------------------
    # References
    # -------------------------------------------------------------------------

    @references.put("/{block_id}/refs:links", summary="Upsert entity reference list")
    async def upsert_links(
        block_id: UUID,
        payload: EntityReferencePayload,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[StoredReference]:
        await _owned_block(block_id, organisation_id)
        return await services.references.upsert_links_for(block_id, payload)

    @references.put("/{block_id}/refs:block", summary="Upsert block link")
    async def upsert_block_link(
        block_id: UUID,
        payload: BlockReferencePayload,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> StoredReference:
        await _owned_block(block_id, organisation_id)
        return await services.references.upsert_block_link_for(block_id, payload)

    @references.get("/{block_id}/refs", summary="Get references")
    async def get_references(
        block_id: UUID,
        policy: FetchPolicy | None = Query(None),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> list[Reference]:
        block = await _owned_block(block_id, organisation_id)
        payload = block.payload
        if isinstance(payload, EntityReferencePayload):
            return await services.references.find_block_references(
                block_id, payload, policy=policy, expand_depth=payload.meta.expand_depth
            )
        if isinstance(payload, BlockReferencePayload):
            link = await services.references.find_block_link(
                block_id,
                payload,
                policy=policy or FetchPolicy.LAZY,
                expand_depth=payload.meta.expand_depth,
            )
            return [link]
        raise ValidationError(f"Block {block_id} holds content, not references")

    @references.delete("/{block_id}/refs", summary="Remove all references")
    async def clear_references(
        block_id: UUID,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, int]:
        await _owned_block(block_id, organisation_id)
        return {"removed": await services.references.clear_references(block_id)}

    @references.delete("/{block_id}/refs/{entity_type}/{entity_id}", summary="Remove reference")
    async def remove_reference(
        block_id: UUID,
        entity_type: EntityType,
        entity_id: UUID,
        path: str | None = Query(None),
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> StoredReference:
        await _owned_block(block_id, organisation_id)
        return await services.references.remove_reference(block_id, entity_type, entity_id, path)

    @references.delete("/entity/{entity_id}", summary="Remove references to a deleted entity")
    async def remove_stale_references(
        entity_id: UUID,
        organisation_id: UUID = Header(alias=ORG_HEADER),
    ) -> dict[str, int]:
        removed = await services.references.remove_stale_references(entity_id, organisation_id)
        return {"removed": removed}

    return [schema, children, references, blocks]
