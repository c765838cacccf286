"""
Runtime configuration.

``ServerConfig`` groups every option the services and the HTTP app need.
Values not passed explicitly fall back to ``BLOCKTREE_*`` environment
variables via ``ServerConfig.from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    """Configuration for the blocktree services and HTTP app."""

    # Database settings
    db_path: Path = field(default_factory=lambda: Path(".blocktree/data.db"))

    # Server settings
    host: str = "127.0.0.1"
    port: int = 8000

    # Logging
    log_dir: Path | None = field(default_factory=lambda: Path(".blocktree/logs"))
    log_level: str = "INFO"

    # Reference resolution
    resolver_timeout: float = 5.0  # seconds per resolver call
    default_max_depth: int = 1  # tree depth when the caller omits maxDepth
    max_tree_depth: int = 8  # hard ceiling on requested depth

    # Block types
    reject_on_lint_errors: bool = False  # ERROR lint issues block publish/update

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build a config from BLOCKTREE_* environment variables."""
        defaults = cls()
        log_dir_env = os.environ.get("BLOCKTREE_LOG_DIR")
        if log_dir_env is None:
            log_dir = defaults.log_dir
        else:
            log_dir = Path(log_dir_env) if log_dir_env else None
        return cls(
            db_path=Path(os.environ.get("BLOCKTREE_DB_PATH", str(defaults.db_path))),
            host=os.environ.get("BLOCKTREE_HOST", defaults.host),
            port=int(os.environ.get("BLOCKTREE_PORT", defaults.port)),
            log_dir=log_dir,
            log_level=os.environ.get("BLOCKTREE_LOG_LEVEL", defaults.log_level),
            resolver_timeout=float(
                os.environ.get("BLOCKTREE_RESOLVER_TIMEOUT", defaults.resolver_timeout)
            ),
            default_max_depth=int(
                os.environ.get("BLOCKTREE_DEFAULT_MAX_DEPTH", defaults.default_max_depth)
            ),
            max_tree_depth=int(os.environ.get("BLOCKTREE_MAX_TREE_DEPTH", defaults.max_tree_depth)),
            reject_on_lint_errors=_env_bool(
                "BLOCKTREE_REJECT_ON_LINT_ERRORS", defaults.reject_on_lint_errors
            ),
        )
