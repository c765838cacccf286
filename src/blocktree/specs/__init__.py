"""
Blocktree specification types.

Pydantic models for blocks, block types, display structures and the
tree projection assembled on read.
"""

from blocktree.specs.block import (
    Block,
    BlockMeta,
    BlockPayload,
    BlockReferenceMetadata,
    BlockReferencePayload,
    ContentPayload,
    CreateBlockRequest,
    EntityReferenceMetadata,
    EntityReferencePayload,
    EntityType,
    FilterSpec,
    PagingSpec,
    Projection,
    ReferenceItem,
    SortDirection,
    SortSpec,
    UpdateBlockRequest,
)
from blocktree.specs.block_type import (
    BlockDisplay,
    BlockSchema,
    BlockType,
    BlockTypeForkRequest,
    BlockTypeNesting,
    BlockTypeRequest,
    BlockTypeResult,
    DataFormat,
    DataType,
    ValidationStrictness,
    normalise_type_key,
)
from blocktree.specs.display import (
    BindingSource,
    BlockBinding,
    BlockComponentNode,
    BlockRenderStructure,
    ComputedSource,
    Condition,
    ConditionOp,
    DataPathSource,
    FetchPolicy,
    GridItem,
    GridRect,
    IssueLevel,
    LayoutGrid,
    LintIssue,
    Operand,
    PathOperand,
    Presentation,
    RefPresentation,
    RefSlotSource,
    RenderNode,
    ValueOperand,
)
from blocktree.specs.tree import (
    BlockNode,
    BlockTree,
    Edge,
    Ownership,
    Reference,
    ReferenceWarning,
    StoredReference,
)

__all__ = [
    # Block
    "Block",
    "BlockMeta",
    "BlockPayload",
    "BlockReferenceMetadata",
    "BlockReferencePayload",
    "ContentPayload",
    "CreateBlockRequest",
    "EntityReferenceMetadata",
    "EntityReferencePayload",
    "EntityType",
    "FilterSpec",
    "PagingSpec",
    "Projection",
    "ReferenceItem",
    "SortDirection",
    "SortSpec",
    "UpdateBlockRequest",
    # Block type
    "BlockDisplay",
    "BlockSchema",
    "BlockType",
    "BlockTypeForkRequest",
    "BlockTypeNesting",
    "BlockTypeRequest",
    "BlockTypeResult",
    "DataFormat",
    "DataType",
    "ValidationStrictness",
    "normalise_type_key",
    # Display
    "BindingSource",
    "BlockBinding",
    "BlockComponentNode",
    "BlockRenderStructure",
    "ComputedSource",
    "Condition",
    "ConditionOp",
    "DataPathSource",
    "FetchPolicy",
    "GridItem",
    "GridRect",
    "IssueLevel",
    "LayoutGrid",
    "LintIssue",
    "Operand",
    "PathOperand",
    "Presentation",
    "RefPresentation",
    "RefSlotSource",
    "RenderNode",
    "ValueOperand",
    # Tree
    "BlockNode",
    "BlockTree",
    "Edge",
    "Ownership",
    "Reference",
    "ReferenceWarning",
    "StoredReference",
]
