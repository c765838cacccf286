"""
Entity resolvers for EAGER reference resolution.

A resolver loads entities of one type in a single batch. Deployments
register one resolver per entity type at startup; references to a type
with no resolver are reported as UNSUPPORTED.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.specs.block import EntityType


@runtime_checkable
class ReferenceResolver(Protocol):
    """Batch loader for one entity type."""

    entity_type: EntityType

    async def fetch(self, ids: set[UUID]) -> Mapping[UUID, Any]:
        """Return the entities found for ``ids``; absent ids are simply left out."""
        ...


class ResolverRegistry:
    """Lookup table from entity type to resolver."""

    def __init__(self, resolvers: Iterable[ReferenceResolver] = ()):
        self._resolvers: dict[EntityType, ReferenceResolver] = {}
        for resolver in resolvers:
            self.register(resolver)

    def register(self, resolver: ReferenceResolver) -> None:
        self._resolvers[EntityType(resolver.entity_type)] = resolver

    def unregister(self, entity_type: EntityType) -> None:
        self._resolvers.pop(entity_type, None)

    def get(self, entity_type: EntityType) -> ReferenceResolver | None:
        return self._resolvers.get(entity_type)

    @property
    def entity_types(self) -> list[EntityType]:
        return list(self._resolvers)


@dataclass
class CallableResolver:
    """Adapts an async function ``fetch(ids) -> mapping`` to a resolver."""

    entity_type: EntityType
    loader: Callable[[set[UUID]], Awaitable[Mapping[UUID, Any]]]

    async def fetch(self, ids: set[UUID]) -> Mapping[UUID, Any]:
        return await self.loader(ids)


class BlockResolver:
    """Resolves BLOCK references from the block table."""

    entity_type = EntityType.BLOCK

    def __init__(self, db: DatabaseManager, repos: RepositoryFactory):
        self.db = db
        self.repos = repos

    async def fetch(self, ids: set[UUID]) -> Mapping[UUID, Any]:
        with self.db.connection() as conn:
            return self.repos.blocks.get_many(conn, ids)
