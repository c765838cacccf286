"""
Block type registry.

Published types are immutable. ``update`` writes a new row with the next
version and ``fork`` copies a type into an organisation; neither migrates
existing blocks.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID, uuid4

from blocktree.runtime.config import ServerConfig
from blocktree.runtime.errors import ConflictError, NotFoundError, ValidationError
from blocktree.runtime.linter import has_errors, lint
from blocktree.runtime.logging import get_logger, log_with_context
from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.specs.block_type import (
    BlockType,
    BlockTypeForkRequest,
    BlockTypeRequest,
    BlockTypeResult,
)
from blocktree.specs.display import LintIssue

logger = get_logger("Types")


class BlockTypeService:
    """Publish, version, archive and look up block types."""

    def __init__(
        self,
        db: DatabaseManager,
        repos: RepositoryFactory,
        config: ServerConfig | None = None,
    ):
        self.db = db
        self.repos = repos
        self.config = config or ServerConfig()

    def _lint(self, block_type: BlockType) -> list[LintIssue]:
        issues = lint(block_type.display.render)
        if issues:
            log_with_context(
                logger,
                logging.WARNING,
                f"Display lint found {len(issues)} issue(s) for '{block_type.key}'",
                key=block_type.key,
                version=block_type.version,
                issues=[f"{i.level.value} {i.path}: {i.message}" for i in issues],
            )
        if self.config.reject_on_lint_errors and has_errors(issues):
            raise ValidationError(
                f"Display for '{block_type.key}' has lint errors",
                {"issues": [i.model_dump(mode="json") for i in issues]},
            )
        return issues

    async def publish(
        self, organisation_id: UUID | None, request: BlockTypeRequest
    ) -> BlockTypeResult:
        """
        Publish a new block type at version 1.

        System types (``request.system`` or no organisation) are visible to
        every organisation.

        Raises:
            ConflictError: key already published for this owner
            ValidationError: lint errors while ``reject_on_lint_errors`` is set
        """
        owner = None if request.system else organisation_id
        block_type = BlockType(
            key=request.key,
            name=request.name,
            description=request.description,
            organisation_id=owner,
            block_schema=request.block_schema,
            display=request.display,
            nesting=request.nesting,
            strictness=request.strictness,
            system=owner is None,
        )
        issues = self._lint(block_type)

        with self.db.transaction() as conn:
            if self.repos.types.find_by_key(conn, block_type.key, owner) is not None:
                raise ConflictError(f"Block type '{block_type.key}' already exists")
            self.repos.types.insert(conn, block_type)

        log_with_context(
            logger, logging.INFO, f"Published block type '{block_type.key}'", id=str(block_type.id)
        )
        return BlockTypeResult(block_type=block_type, issues=issues)

    async def update(self, type_id: UUID, request: BlockTypeRequest) -> BlockTypeResult:
        """
        Create the next version of a type. The previous row stays untouched.

        Raises:
            NotFoundError: type does not exist
            ValidationError: type archived or key changed
        """
        with self.db.transaction() as conn:
            current = self.repos.types.get(conn, type_id)
            if current is None:
                raise NotFoundError(f"Block type {type_id} not found")
            if current.archived:
                raise ValidationError(f"Block type '{current.key}' is archived")
            if request.key != current.key:
                raise ValidationError(
                    f"Cannot change key of '{current.key}' on update; fork it instead"
                )
            latest = self.repos.types.find_by_key(conn, current.key, current.organisation_id)
            next_version = (latest.version if latest else current.version) + 1
            block_type = BlockType(
                key=current.key,
                version=next_version,
                name=request.name,
                description=request.description,
                organisation_id=current.organisation_id,
                block_schema=request.block_schema,
                display=request.display,
                nesting=request.nesting,
                strictness=request.strictness,
                system=current.system,
                source_id=current.id,
            )
            issues = self._lint(block_type)
            self.repos.types.insert(conn, block_type)

        log_with_context(
            logger,
            logging.INFO,
            f"Updated block type '{block_type.key}' to v{block_type.version}",
            id=str(block_type.id),
            source_id=str(current.id),
        )
        return BlockTypeResult(block_type=block_type, issues=issues)

    async def archive(self, type_id: UUID, archived: bool) -> BlockType:
        """
        Set the archived flag. Unchanged state is a no-op.

        Raises:
            NotFoundError: type does not exist
            ValidationError: system types cannot be archived
        """
        with self.db.transaction() as conn:
            current = self.repos.types.get(conn, type_id)
            if current is None:
                raise NotFoundError(f"Block type {type_id} not found")
            if current.system:
                raise ValidationError(f"System block type '{current.key}' cannot be archived")
            if current.archived == archived:
                return current
            now = datetime.now(UTC)
            self.repos.types.set_archived(conn, type_id, archived, now)

        logger.info("Block type '%s' archived=%s", current.key, archived)
        return current.model_copy(update={"archived": archived, "updated_at": now})

    async def get(self, type_id: UUID) -> BlockType:
        with self.db.connection() as conn:
            block_type = self.repos.types.get(conn, type_id)
        if block_type is None:
            raise NotFoundError(f"Block type {type_id} not found")
        return block_type

    async def get_by_key(
        self, key: str, organisation_id: UUID | None, version: int | None = None
    ) -> BlockType:
        """
        Resolve a key for an organisation, falling back to the system type.

        Raises:
            NotFoundError: neither the organisation nor the system has the key
        """
        with self.db.connection() as conn:
            block_type = None
            if organisation_id is not None:
                block_type = self.repos.types.find_by_key(conn, key, organisation_id, version)
            if block_type is None:
                block_type = self.repos.types.find_by_key(conn, key, None, version)
        if block_type is None:
            suffix = f" v{version}" if version is not None else ""
            raise NotFoundError(f"Block type '{key}'{suffix} not found")
        return block_type

    async def list_for_organisation(
        self,
        organisation_id: UUID,
        include_system: bool = True,
        all_versions: bool = False,
    ) -> list[BlockType]:
        """Types visible to an organisation; latest version per key unless ``all_versions``."""
        with self.db.connection() as conn:
            rows = self.repos.types.list_for_organisation(conn, organisation_id, include_system)
        if all_versions:
            return rows
        latest: dict[tuple[str, UUID | None], BlockType] = {}
        for row in rows:
            latest[(row.key, row.organisation_id)] = row
        return list(latest.values())

    async def fork(self, organisation_id: UUID, request: BlockTypeForkRequest) -> BlockTypeResult:
        """
        Copy a visible type into the organisation as a new version-1 type.

        Raises:
            NotFoundError: source type not visible
            ConflictError: target key already exists in the organisation
        """
        source = await self.get_by_key(request.source_key, organisation_id, request.source_version)
        new_key = request.new_key or source.key
        now = datetime.now(UTC)
        forked = source.model_copy(
            update={
                "id": uuid4(),
                "key": new_key,
                "version": 1,
                "name": request.name or source.name,
                "organisation_id": organisation_id,
                "system": False,
                "archived": False,
                "source_id": source.id,
                "created_at": now,
                "updated_at": now,
            }
        )
        with self.db.transaction() as conn:
            if self.repos.types.find_by_key(conn, new_key, organisation_id) is not None:
                raise ConflictError(f"Block type '{new_key}' already exists in organisation")
            self.repos.types.insert(conn, forked)

        log_with_context(
            logger,
            logging.INFO,
            f"Forked block type '{source.key}' as '{new_key}'",
            source_id=str(source.id),
            id=str(forked.id),
        )
        return BlockTypeResult(block_type=forked, issues=lint(forked.display.render))
