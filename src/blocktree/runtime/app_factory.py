"""App factory and service wiring.

``build_services`` wires the repositories and services around one
database; ``create_app`` puts them behind the FastAPI routers.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from blocktree.runtime.block_service import BlockService
from blocktree.runtime.block_type_service import BlockTypeService
from blocktree.runtime.children_service import ChildrenService
from blocktree.runtime.config import ServerConfig
from blocktree.runtime.logging import get_api_logger, setup_logging
from blocktree.runtime.reference_service import ReferenceService
from blocktree.runtime.render_evaluator import RenderEvaluator
from blocktree.runtime.repository import DatabaseManager, RepositoryFactory
from blocktree.runtime.resolvers import BlockResolver, ReferenceResolver, ResolverRegistry

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = get_api_logger()


@dataclass
class BlocktreeServices:
    """Everything a request handler needs, sharing one database."""

    config: ServerConfig
    db: DatabaseManager
    repos: RepositoryFactory
    registry: ResolverRegistry
    types: BlockTypeService
    children: ChildrenService
    references: ReferenceService
    blocks: BlockService
    renderer: RenderEvaluator


def build_services(
    config: ServerConfig | None = None,
    resolvers: Iterable[ReferenceResolver] = (),
) -> BlocktreeServices:
    """
    Create the database schema and wire every service.

    Args:
        config: Runtime configuration (defaults from environment)
        resolvers: Extra entity resolvers; BLOCK is always registered

    Returns:
        Wired services
    """
    config = config or ServerConfig.from_env()
    db = DatabaseManager(config.db_path)
    db.create_tables()
    repos = RepositoryFactory(db)

    registry = ResolverRegistry([BlockResolver(db, repos)])
    for resolver in resolvers:
        registry.register(resolver)

    types = BlockTypeService(db, repos, config)
    children = ChildrenService(db, repos)
    references = ReferenceService(db, repos, registry, config)
    blocks = BlockService(db, repos, types, children, references, config)
    return BlocktreeServices(
        config=config,
        db=db,
        repos=repos,
        registry=registry,
        types=types,
        children=children,
        references=references,
        blocks=blocks,
        renderer=RenderEvaluator(),
    )


def create_app(
    config: ServerConfig | None = None,
    resolvers: Iterable[ReferenceResolver] = (),
) -> FastAPI:
    """
    Create the blocktree FastAPI application.

    Args:
        config: Runtime configuration (defaults from BLOCKTREE_* env vars)
        resolvers: Entity resolvers registered in addition to BLOCK

    Returns:
        FastAPI application

    Example:
        >>> app = create_app(ServerConfig(db_path=Path("/tmp/blocks.db")))
        >>> # Run with uvicorn: uvicorn mymodule:app
    """
    from fastapi import FastAPI

    from blocktree import __version__
    from blocktree.runtime.exception_handlers import register_exception_handlers
    from blocktree.runtime.routes import create_routers

    config = config or ServerConfig.from_env()
    setup_logging(config.log_dir, config.log_level)

    services = build_services(config, resolvers)
    app = FastAPI(title="Blocktree", version=__version__)
    app.state.services = services
    for router in create_routers(services):
        app.include_router(router)
    register_exception_handlers(app)

    logger.info(
        "Blocktree app ready (db=%s, resolvers=%s)",
        config.db_path,
        ", ".join(t.value for t in services.registry.entity_types),
    )
    return app


def run_app(config: ServerConfig | None = None, reload: bool = False) -> None:
    """
    Run the blocktree app with uvicorn.

    Args:
        config: Runtime configuration; host and port are taken from it
        reload: Enable auto-reload (for development)
    """
    import uvicorn

    config = config or ServerConfig.from_env()
    uvicorn.run(create_app(config), host=config.host, port=config.port, reload=reload)


def main() -> None:
    """Console entry point."""
    run_app()
