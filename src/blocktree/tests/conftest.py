"""Shared fixtures for blocktree tests."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest

from blocktree.runtime.app_factory import BlocktreeServices, build_services
from blocktree.runtime.config import ServerConfig
from blocktree.specs.block import Block, BlockPayload, CreateBlockRequest, EntityType
from blocktree.specs.block_type import (
    BlockDisplay,
    BlockSchema,
    BlockType,
    BlockTypeNesting,
    BlockTypeRequest,
    ValidationStrictness,
)

ORG_ID = UUID("6f1c2a40-0000-4000-8000-000000000001")
OTHER_ORG_ID = UUID("6f1c2a40-0000-4000-8000-000000000002")


class RecordingResolver:
    """Resolver that serves a fixed entity map and records every call."""

    def __init__(self, entity_type: EntityType, entities: Mapping[UUID, Any] | None = None):
        self.entity_type = entity_type
        self.entities = dict(entities or {})
        self.calls: list[set[UUID]] = []

    async def fetch(self, ids: set[UUID]) -> Mapping[UUID, Any]:
        self.calls.append(set(ids))
        return {i: self.entities[i] for i in ids if i in self.entities}


@pytest.fixture
def config(tmp_path: Path) -> ServerConfig:
    """Config with an isolated database and no log files."""
    return ServerConfig(db_path=tmp_path / "blocktree.db", log_dir=None, resolver_timeout=1.0)


@pytest.fixture
def services(config: ServerConfig) -> BlocktreeServices:
    """Fully wired services over a fresh database."""
    return build_services(config)


@pytest.fixture
def publish_type(services: BlocktreeServices) -> Callable[..., Awaitable[BlockType]]:
    """Publish a block type and return it."""

    async def _publish(
        key: str,
        nesting: BlockTypeNesting | None = None,
        block_schema: BlockSchema | None = None,
        display: BlockDisplay | None = None,
        strictness: ValidationStrictness = ValidationStrictness.SOFT,
        organisation_id: UUID | None = ORG_ID,
        system: bool = False,
    ) -> BlockType:
        fields: dict[str, Any] = {
            "key": key,
            "name": key.replace("-", " ").title(),
            "nesting": nesting,
            "strictness": strictness,
            "system": system,
        }
        if block_schema is not None:
            fields["block_schema"] = block_schema
        if display is not None:
            fields["display"] = display
        result = await services.types.publish(organisation_id, BlockTypeRequest(**fields))
        return result.block_type

    return _publish


@pytest.fixture
def create_block(services: BlocktreeServices) -> Callable[..., Awaitable[Block]]:
    """Create a block from a type key."""

    async def _create(
        type_key: str,
        payload: BlockPayload | None = None,
        name: str | None = None,
        organisation_id: UUID = ORG_ID,
    ) -> Block:
        return await services.blocks.create_block(
            organisation_id, CreateBlockRequest(type_key=type_key, name=name, payload=payload)
        )

    return _create
