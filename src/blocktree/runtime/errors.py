"""
Error types for the blocktree runtime.

Structural mutations raise these; resolution-time absence of data is
never an error and is reported as a reference warning instead.
"""

from __future__ import annotations

from typing import Any


class BlockTreeError(Exception):
    """Base exception for all blocktree errors."""

    error_type = "blocktree_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "type": self.error_type}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BlockTreeError):
    """
    Raised when a request does not fit a type, slot or schema.

    Examples:
    - Child type not allowed in the parent's slot
    - Slot already holds ``nesting.max`` children
    - Reorder list does not match the current children
    """

    error_type = "validation_error"


class SchemaValidationError(ValidationError):
    """Raised when STRICT content fails schema validation."""

    error_type = "schema_validation_error"

    def __init__(self, message: str, issues: list[str]):
        self.issues = issues
        super().__init__(message, {"issues": issues})


class UnsupportedBindingError(ValidationError):
    """Raised when a binding source has no evaluation semantics."""

    error_type = "unsupported_binding"


class ConflictError(BlockTreeError):
    """
    Raised when a write would break a uniqueness rule.

    Examples:
    - Child already has a parent
    - Duplicate reference in a list that disallows duplicates
    - Block type key already published in the organisation
    """

    error_type = "conflict"


class NotFoundError(BlockTreeError):
    """Raised when a block, type, edge or reference does not exist."""

    error_type = "not_found"


class AmbiguousDeletionError(BlockTreeError):
    """Raised when several stored references match and no path disambiguates."""

    error_type = "ambiguous_deletion"


class CycleError(BlockTreeError):
    """Raised when an ownership edge would make a block its own ancestor."""

    error_type = "cycle"
