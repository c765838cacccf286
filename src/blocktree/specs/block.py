"""
Block specification types.

A block's payload is a closed tagged union discriminated by ``kind``:

- ``content``: inline data validated against the type schema
- ``entity_reference``: an ordered list of links to external entities
- ``block_reference``: a single link to another block
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from blocktree.specs.block_type import BlockType
from blocktree.specs.display import FetchPolicy, Presentation

# =============================================================================
# Entity Types
# =============================================================================


class EntityType(str, Enum):
    """Kinds of entity a reference can point at."""

    LINE_ITEM = "line_item"
    CLIENT = "client"
    INVOICE = "invoice"
    BLOCK = "block"
    REPORT = "report"
    DOCUMENT = "document"
    PROJECT = "project"
    ORGANISATION = "organisation"


class ReferenceItem(BaseModel):
    """One declared link inside a reference payload."""

    id: UUID
    type: EntityType
    path: str | None = Field(default=None, description="Explicit item path; derived when absent")

    model_config = ConfigDict(frozen=True)


# =============================================================================
# List Options
# =============================================================================


class Projection(BaseModel):
    fields: list[str] = Field(default_factory=list)
    template_id: str | None = None

    model_config = ConfigDict(frozen=True)


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


class SortSpec(BaseModel):
    by: str
    dir: SortDirection = SortDirection.ASC

    model_config = ConfigDict(frozen=True)


class FilterSpec(BaseModel):
    expr: str

    model_config = ConfigDict(frozen=True)


class PagingSpec(BaseModel):
    page_size: int = 20

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Payload Variants
# =============================================================================


class BlockMeta(BaseModel):
    """Validation bookkeeping for content payloads."""

    validation_errors: list[str] = Field(default_factory=list)
    computed_fields: list[str] = Field(default_factory=list)
    last_validated_version: int | None = None


class ContentPayload(BaseModel):
    """Inline data."""

    kind: Literal["content"] = "content"
    data: dict[str, Any] = Field(default_factory=dict)
    meta: BlockMeta = Field(default_factory=BlockMeta)


class EntityReferenceMetadata(BaseModel):
    """List-level settings for an entity reference payload."""

    entity_type: EntityType | None = Field(default=None, description="Expected item type")
    path: str = "$.items"
    allow_duplicates: bool = False
    fetch_policy: FetchPolicy = FetchPolicy.LAZY
    presentation: Presentation = Presentation.SUMMARY
    projection: Projection | None = None
    sort: SortSpec | None = None
    filter: FilterSpec | None = None
    paging: PagingSpec | None = None
    expand_depth: int = 1

    model_config = ConfigDict(frozen=True)


class EntityReferencePayload(BaseModel):
    """Ordered list of entity links. ``items`` is the source of truth for order."""

    kind: Literal["entity_reference"] = "entity_reference"
    meta: EntityReferenceMetadata = Field(default_factory=EntityReferenceMetadata)
    items: list[ReferenceItem] = Field(default_factory=list)

    def item_path(self, index: int) -> str:
        item = self.items[index]
        return item.path or f"{self.meta.path}[{index}]"


class BlockReferenceMetadata(BaseModel):
    path: str = "$.block"
    expand_depth: int = 1

    model_config = ConfigDict(frozen=True)


class BlockReferencePayload(BaseModel):
    """A single link to another block."""

    kind: Literal["block_reference"] = "block_reference"
    meta: BlockReferenceMetadata = Field(default_factory=BlockReferenceMetadata)
    item: ReferenceItem


BlockPayload = Annotated[
    ContentPayload | EntityReferencePayload | BlockReferencePayload,
    Field(discriminator="kind"),
]


# =============================================================================
# Block
# =============================================================================


class Block(BaseModel):
    """A typed content node owned by an organisation."""

    id: UUID = Field(default_factory=uuid4)
    organisation_id: UUID
    name: str | None = None
    type: BlockType
    payload: BlockPayload
    archived: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Requests
# =============================================================================


class CreateBlockRequest(BaseModel):
    """Create a block from a type key. Missing payload means type defaults."""

    type_key: str
    type_version: int | None = None
    name: str | None = None
    payload: BlockPayload | None = None


class UpdateBlockRequest(BaseModel):
    """Partial update: content data is deep-merged, reference payloads replace."""

    name: str | None = None
    payload: BlockPayload | None = None
