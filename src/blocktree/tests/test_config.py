"""Tests for runtime configuration and error status mapping."""

from __future__ import annotations

from pathlib import Path

import pytest

from blocktree.runtime.config import ServerConfig
from blocktree.runtime.errors import (
    AmbiguousDeletionError,
    BlockTreeError,
    ConflictError,
    CycleError,
    NotFoundError,
    SchemaValidationError,
    ValidationError,
)
from blocktree.runtime.exception_handlers import status_for


class TestServerConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("BLOCKTREE_DB_PATH", "BLOCKTREE_LOG_DIR", "BLOCKTREE_RESOLVER_TIMEOUT"):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.db_path == Path(".blocktree/data.db")
        assert config.resolver_timeout == 5.0
        assert config.default_max_depth == 1

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("BLOCKTREE_DB_PATH", str(tmp_path / "t.db"))
        monkeypatch.setenv("BLOCKTREE_PORT", "9001")
        monkeypatch.setenv("BLOCKTREE_RESOLVER_TIMEOUT", "0.5")
        monkeypatch.setenv("BLOCKTREE_MAX_TREE_DEPTH", "3")
        monkeypatch.setenv("BLOCKTREE_REJECT_ON_LINT_ERRORS", "yes")

        config = ServerConfig.from_env()

        assert config.db_path == tmp_path / "t.db"
        assert config.port == 9001
        assert config.resolver_timeout == 0.5
        assert config.max_tree_depth == 3
        assert config.reject_on_lint_errors is True

    def test_empty_log_dir_disables_file_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BLOCKTREE_LOG_DIR", "")
        assert ServerConfig.from_env().log_dir is None


class TestStatusMapping:
    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (NotFoundError("gone"), 404),
            (ConflictError("taken"), 409),
            (AmbiguousDeletionError("which one"), 400),
            (CycleError("loop"), 422),
            (ValidationError("bad"), 422),
            (SchemaValidationError("bad data", ["data.name: required"]), 422),
            (BlockTreeError("other"), 400),
        ],
    )
    def test_status_for(self, error: BlockTreeError, status: int) -> None:
        assert status_for(error) == status

    def test_error_payload(self) -> None:
        error = SchemaValidationError("bad data", ["data.name: required"])

        assert error.to_dict() == {
            "detail": "bad data",
            "type": "schema_validation_error",
            "details": {"issues": ["data.name: required"]},
        }
