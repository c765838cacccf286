"""
Blocktree runtime.

Services over a SQLite store plus the FastAPI surface:

- Block types (publish, version, fork, archive)
- Blocks and tree assembly
- Owned children in named slots
- Linked references with batched resolution
- Display linting and render evaluation

Example usage:
    >>> from blocktree.runtime import ServerConfig, create_app
    >>> app = create_app(ServerConfig(db_path=Path("/tmp/blocks.db")))
"""

from blocktree.runtime.app_factory import (
    BlocktreeServices,
    build_services,
    create_app,
    run_app,
)
from blocktree.runtime.config import ServerConfig
from blocktree.runtime.errors import (
    AmbiguousDeletionError,
    BlockTreeError,
    ConflictError,
    CycleError,
    NotFoundError,
    SchemaValidationError,
    UnsupportedBindingError,
    ValidationError,
)
from blocktree.runtime.linter import lint
from blocktree.runtime.render_evaluator import RenderContext, RenderEvaluator
from blocktree.runtime.resolvers import (
    BlockResolver,
    CallableResolver,
    ReferenceResolver,
    ResolverRegistry,
)

__all__ = [
    # App
    "BlocktreeServices",
    "ServerConfig",
    "build_services",
    "create_app",
    "run_app",
    # Errors
    "AmbiguousDeletionError",
    "BlockTreeError",
    "ConflictError",
    "CycleError",
    "NotFoundError",
    "SchemaValidationError",
    "UnsupportedBindingError",
    "ValidationError",
    # Display
    "RenderContext",
    "RenderEvaluator",
    "lint",
    # Resolvers
    "BlockResolver",
    "CallableResolver",
    "ReferenceResolver",
    "ResolverRegistry",
]
