"""
Display linter for block render structures.

Static checks run when a block type is published or updated. Linting is
advisory and never mutates the structure.
"""

from __future__ import annotations

from blocktree.specs.display import (
    BlockRenderStructure,
    ComputedSource,
    DataPathSource,
    IssueLevel,
    LintIssue,
    RefPresentation,
    RefSlotSource,
)

DATA_PATH_PREFIX = "$.data/"


def _error(path: str, message: str) -> LintIssue:
    return LintIssue(level=IssueLevel.ERROR, path=path, message=message)


def _warning(path: str, message: str) -> LintIssue:
    return LintIssue(level=IssueLevel.WARNING, path=path, message=message)


def _lint_layout(display: BlockRenderStructure) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for i, item in enumerate(display.layout.items):
        if item.id not in display.components:
            issues.append(_error(f"layout.items[{i}].id", f"Unknown component id '{item.id}'"))
        for name, rect in item.breakpoints.items():
            if rect.width <= 0 or rect.height <= 0:
                issues.append(
                    _error(
                        f"layout.items[{i}].{name}",
                        f"Invalid size {rect.width}x{rect.height}",
                    )
                )
    return issues


def _lint_slots(display: BlockRenderStructure) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for cid, node in display.components.items():
        for slot, child_ids in node.slots.items():
            for idx, child_id in enumerate(child_ids):
                if child_id not in display.components:
                    issues.append(
                        _error(
                            f"components.{cid}.slots.{slot}[{idx}]",
                            f"Unknown component id '{child_id}' in slot '{slot}'",
                        )
                    )
    return issues


def _lint_slot_cycles(display: BlockRenderStructure) -> list[LintIssue]:
    """Components that reach themselves through slots would recurse forever."""
    issues: list[LintIssue] = []
    for cid in display.components:
        stack = [
            child
            for ids in display.components[cid].slots.values()
            for child in ids
        ]
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == cid:
                issues.append(_error(f"components.{cid}.slots", f"Slot cycle through '{cid}'"))
                break
            if current in seen or current not in display.components:
                continue
            seen.add(current)
            for ids in display.components[current].slots.values():
                stack.extend(ids)
    return issues


def _lint_bindings(display: BlockRenderStructure) -> list[LintIssue]:
    issues: list[LintIssue] = []
    for cid, node in display.components.items():
        for bi, binding in enumerate(node.bindings):
            source = binding.source
            base = f"components.{cid}.bindings[{bi}]"
            if isinstance(source, DataPathSource):
                if not source.path.startswith(DATA_PATH_PREFIX):
                    issues.append(
                        _warning(f"{base}.source.path", f"Path should start with {DATA_PATH_PREFIX}")
                    )
            elif isinstance(source, RefSlotSource):
                if source.presentation == RefPresentation.INLINE and "." in binding.prop:
                    issues.append(
                        _warning(base, "INLINE references should bind to a top-level prop")
                    )
            elif isinstance(source, ComputedSource):
                issues.append(
                    _warning(f"{base}.source", "Computed bindings are not evaluated at render time")
                )
    return issues


def lint(display: BlockRenderStructure) -> list[LintIssue]:
    """
    Validate a render structure.

    Args:
        display: Render structure of a block type

    Returns:
        Issues ordered by check: layout, slots, slot cycles, bindings
    """
    return [
        *_lint_layout(display),
        *_lint_slots(display),
        *_lint_slot_cycles(display),
        *_lint_bindings(display),
    ]


def has_errors(issues: list[LintIssue]) -> bool:
    return any(issue.level == IssueLevel.ERROR for issue in issues)
