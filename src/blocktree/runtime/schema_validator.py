"""
Content validation against block type schemas.

``validate_data`` walks a ``BlockSchema`` and the data side by side and
collects every issue with a dotted location. ``apply_strictness`` turns
the issues into a ``BlockMeta`` (SOFT), an exception (STRICT) or nothing
(NONE).
"""

from __future__ import annotations

import logging
import re
from typing import Any

from blocktree.runtime.errors import SchemaValidationError
from blocktree.specs.block import BlockMeta
from blocktree.specs.block_type import (
    BlockSchema,
    BlockType,
    DataFormat,
    DataType,
    ValidationStrictness,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def _type_name(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, int | float):
        return "NUMBER"
    if isinstance(value, str):
        return "STRING"
    if isinstance(value, list):
        return "ARRAY"
    if isinstance(value, dict):
        return "OBJECT"
    return type(value).__name__


def _matches_type(expected: DataType, value: Any) -> bool:
    return _type_name(value) == expected.value


def _check_format(fmt: DataFormat, value: Any, path: str) -> str | None:
    if fmt == DataFormat.EMAIL:
        if not isinstance(value, str) or not EMAIL_PATTERN.match(value):
            return f"{path}: invalid email address"
    elif fmt == DataFormat.CURRENCY:
        if not isinstance(value, str) or not CURRENCY_PATTERN.match(value):
            return f"{path}: currency must be a 3-letter ISO code"
    elif fmt == DataFormat.PHONE:
        digits = value.replace(" ", "") if isinstance(value, str) else value
        if not isinstance(digits, str) or not PHONE_PATTERN.match(digits):
            return f"{path}: phone number must be E.164"
    elif fmt == DataFormat.PERCENTAGE:
        if isinstance(value, bool) or not isinstance(value, int | float) or not 0 <= value <= 100:
            return f"{path}: percentage must be between 0 and 100"
    return None


def validate_data(schema: BlockSchema, value: Any, path: str = "data") -> list[str]:
    """
    Validate a value against a schema.

    Args:
        schema: Schema node
        value: Value at this node
        path: Dotted location used in issue messages

    Returns:
        List of issues; empty when valid
    """
    if value is None and (schema.nullable or schema.type == DataType.NULL):
        return []
    if not _matches_type(schema.type, value):
        return [f"{path}: expected {schema.type.value}, got {_type_name(value)}"]

    issues: list[str] = []

    if schema.enum is not None and value not in schema.enum:
        issues.append(f"{path}: value {value!r} not in {schema.enum!r}")

    if schema.format is not None:
        issue = _check_format(schema.format, value, path)
        if issue:
            issues.append(issue)

    if schema.type == DataType.NUMBER:
        if schema.minimum is not None and value < schema.minimum:
            issues.append(f"{path}: must be >= {schema.minimum}")
        if schema.maximum is not None and value > schema.maximum:
            issues.append(f"{path}: must be <= {schema.maximum}")
    elif schema.type == DataType.STRING:
        if schema.minimum is not None and len(value) < schema.minimum:
            issues.append(f"{path}: length must be >= {int(schema.minimum)}")
        if schema.maximum is not None and len(value) > schema.maximum:
            issues.append(f"{path}: length must be <= {int(schema.maximum)}")
    elif schema.type == DataType.OBJECT:
        for name in schema.required:
            if name not in value:
                issues.append(f"{path}.{name}: required")
        for name, child_schema in schema.properties.items():
            if name in value:
                issues.extend(validate_data(child_schema, value[name], f"{path}.{name}"))
    elif schema.type == DataType.ARRAY:
        if schema.minimum is not None and len(value) < schema.minimum:
            issues.append(f"{path}: must contain at least {int(schema.minimum)} items")
        if schema.maximum is not None and len(value) > schema.maximum:
            issues.append(f"{path}: must contain at most {int(schema.maximum)} items")
        if schema.items is not None:
            for i, element in enumerate(value):
                issues.extend(validate_data(schema.items, element, f"{path}[{i}]"))

    return issues


def default_data(schema: BlockSchema) -> Any:
    """Initial value for a schema: explicit defaults, empty containers otherwise."""
    if schema.default is not None:
        return schema.default
    if schema.type == DataType.OBJECT:
        values = {}
        for name, child in schema.properties.items():
            child_default = default_data(child)
            if child_default is not None:
                values[name] = child_default
        return values
    if schema.type == DataType.ARRAY:
        return []
    return None


def apply_strictness(block_type: BlockType, data: dict[str, Any], meta: BlockMeta) -> BlockMeta:
    """
    Validate content data according to the type's strictness.

    Raises:
        SchemaValidationError: STRICT type and at least one issue
    """
    if block_type.strictness == ValidationStrictness.NONE:
        return meta.model_copy(update={"validation_errors": []})

    issues = validate_data(block_type.block_schema, data)
    if issues and block_type.strictness == ValidationStrictness.STRICT:
        raise SchemaValidationError(
            f"Content does not match schema for '{block_type.key}' v{block_type.version}",
            issues,
        )
    if issues:
        logger.debug("Stored %d soft validation issue(s) for %s", len(issues), block_type.key)
    return meta.model_copy(
        update={"validation_errors": issues, "last_validated_version": block_type.version}
    )
