"""Guardrail checks applied to every plan before any file is touched.

The validator is a pure function of ``(plan, policy)``: it reads nothing from
disk, mutates nothing and yields the same answer on every call.  Checks run in
a fixed order and stop at the first failure:

``MAX_OPS``
    Too many operations.
``UNSAFE_PATH``
    Empty, absolute, drive-letter, ``..`` or ``.git`` paths.
``DENIED_PATH`` / ``LOCKED_PATH``
    Policy prefixes; locked prefixes may be unlocked by the plan.
``LINE_RANGE`` / ``DELETE_CONTENT`` / ``NOT_REVERSIBLE``
    Per-operation shape rules.
``MAX_BYTES``
    Total bytes written across all operations.
``PRIVILEGED_PATH``
    Extra deny-list for privileged (self-modifying) modes.
"""

from __future__ import annotations

import posixpath
import re
import textwrap
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Dict, List, Tuple

from ..errors import GuardrailViolation
from ..schema import RANGE_KINDS, WHOLE_FILE_KINDS, Operation, OperationKind, Plan

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")

DEFAULT_PRIVILEGED_MODES: Tuple[str, ...] = ("self_improve",)


@dataclass(slots=True, frozen=True)
class GuardrailPolicy:
    """Process-wide guardrail configuration; read-only during validation."""

    locked_path_prefixes: Tuple[str, ...] = ()
    denied_path_prefixes: Tuple[str, ...] = ()
    max_ops: int = 20
    max_total_write_bytes: int = 200_000
    allow_unlocks: bool = True
    privileged_modes: Tuple[str, ...] = DEFAULT_PRIVILEGED_MODES
    privileged_denied_prefixes: Tuple[str, ...] = ()

    def with_denied_prefixes(self, *prefixes: str) -> "GuardrailPolicy":
        """Return a copy that also denies ``prefixes`` (duplicates are skipped)."""
        extra = tuple(prefix for prefix in prefixes if prefix and prefix not in self.denied_path_prefixes)
        if not extra:
            return self
        return replace(self, denied_path_prefixes=self.denied_path_prefixes + extra)


@dataclass(slots=True)
class RuleDefinition:
    """Metadata describing a guardrail rule."""

    code: str
    title: str
    detail: str


def normalise_plan_path(raw: str) -> str:
    """Convert ``raw`` to forward slashes without resolving any segments."""
    return (raw or "").strip().replace("\\", "/")


def _normalise_prefix(raw: str) -> str:
    prefix = normalise_plan_path(raw)
    while prefix.startswith("./"):
        prefix = prefix[2:]
    return prefix


def unsafe_path_reason(raw: str) -> str | None:
    """Return why ``raw`` may not be written, or ``None`` when it is acceptable."""
    path = normalise_plan_path(raw)
    if not path:
        return "path is empty"
    if path.startswith("/"):
        return "absolute paths are not permitted"
    if _DRIVE_LETTER.match(path):
        return "drive-letter paths are not permitted"
    segments = path.split("/")
    if any(segment == ".." for segment in segments):
        return "path traversal ('..') is not permitted"
    meaningful = [segment for segment in segments if segment not in ("", ".")]
    if not meaningful:
        return "path does not name a file"
    if meaningful[0] == ".git":
        return "the .git directory may not be modified"
    return None


def _canonical(raw: str) -> str:
    """Collapse ``./`` and duplicate slashes of an already-safe path."""
    return posixpath.normpath(normalise_plan_path(raw))


def _matching_prefix(path: str, prefixes: Iterable[str]) -> str | None:
    for prefix in prefixes:
        candidate = _normalise_prefix(prefix)
        if candidate and path.startswith(candidate):
            return candidate
    return None


def _check_max_ops(plan: Plan, policy: GuardrailPolicy) -> None:
    count = len(plan.ops)
    if count > policy.max_ops:
        raise GuardrailViolation(
            "MAX_OPS",
            f"Plan has {count} operations; the limit is {policy.max_ops}",
            details={"ops": count, "max_ops": policy.max_ops},
        )


def _check_paths(plan: Plan, policy: GuardrailPolicy) -> None:
    for op in plan.ops:
        reason = unsafe_path_reason(op.file)
        if reason is not None:
            raise GuardrailViolation(
                "UNSAFE_PATH",
                f"Unsafe path {op.file!r}: {reason}",
                op_id=op.id,
                path=op.file,
            )


def _check_prefixes(plan: Plan, policy: GuardrailPolicy) -> None:
    unlocked = {_normalise_prefix(entry) for entry in plan.meta.unlock_path_prefixes}
    for op in plan.ops:
        path = _canonical(op.file)
        denied = _matching_prefix(path, policy.denied_path_prefixes)
        if denied is not None:
            raise GuardrailViolation(
                "DENIED_PATH",
                f"Path {op.file!r} is under denied prefix {denied!r}",
                op_id=op.id,
                path=op.file,
            )
        for prefix in policy.locked_path_prefixes:
            locked = _normalise_prefix(prefix)
            if not locked or not path.startswith(locked):
                continue
            if policy.allow_unlocks and locked in unlocked:
                continue
            raise GuardrailViolation(
                "LOCKED_PATH",
                f"Path {op.file!r} is under locked prefix {locked!r} and the plan does not unlock it",
                op_id=op.id,
                path=op.file,
            )


def _operation_shape_error(op: Operation) -> Tuple[str, str] | None:
    start, end = op.start_line, op.end_line
    kind = op.kind
    if start is None or start < 1:
        return "LINE_RANGE", f"{kind.value} requires start_line >= 1 (got {start})"
    if kind in WHOLE_FILE_KINDS or kind is OperationKind.INSERT_AFTER:
        if end is not None:
            return "LINE_RANGE", f"{kind.value} must have end_line=null (got {end})"
    elif kind in RANGE_KINDS:
        if end is None:
            return "LINE_RANGE", f"{kind.value} requires end_line"
        if end < start:
            return "LINE_RANGE", f"{kind.value} has end_line {end} before start_line {start}"
    if kind is OperationKind.DELETE_RANGE and op.content:
        return "DELETE_CONTENT", "delete_range must carry empty content"
    if op.reversible is False:
        return "NOT_REVERSIBLE", "operation is marked reversible=false"
    return None


def _check_shapes(plan: Plan, policy: GuardrailPolicy) -> None:
    for op in plan.ops:
        problem = _operation_shape_error(op)
        if problem is not None:
            rule, message = problem
            raise GuardrailViolation(rule, message, op_id=op.id, path=op.file)


def _check_total_bytes(plan: Plan, policy: GuardrailPolicy) -> None:
    total = sum(op.content_bytes for op in plan.ops)
    if total > policy.max_total_write_bytes:
        raise GuardrailViolation(
            "MAX_BYTES",
            f"Plan writes {total} bytes; the limit is {policy.max_total_write_bytes}",
            details={"bytes": total, "max_total_write_bytes": policy.max_total_write_bytes},
        )


def _check_privileged_mode(plan: Plan, policy: GuardrailPolicy) -> None:
    if plan.meta.mode not in policy.privileged_modes:
        return
    for op in plan.ops:
        blocked = _matching_prefix(_canonical(op.file), policy.privileged_denied_prefixes)
        if blocked is not None:
            raise GuardrailViolation(
                "PRIVILEGED_PATH",
                f"Mode {plan.meta.mode!r} may not modify {op.file!r} (prefix {blocked!r})",
                op_id=op.id,
                path=op.file,
            )


GUARDRAIL_RULES: Dict[str, RuleDefinition] = {
    "PLAN_SCHEMA": RuleDefinition(
        code="PLAN_SCHEMA",
        title="Plan structure",
        detail="Planner output must parse into a plan with known operation kinds and integer line numbers.",
    ),
    "MAX_OPS": RuleDefinition(
        code="MAX_OPS",
        title="Operation budget",
        detail="A plan may not contain more operations than guardrails.max_ops.",
    ),
    "UNSAFE_PATH": RuleDefinition(
        code="UNSAFE_PATH",
        title="Path safety",
        detail="Paths must be relative, non-empty, free of '..' segments and drive letters, "
        "and outside the .git directory.",
    ),
    "DENIED_PATH": RuleDefinition(
        code="DENIED_PATH",
        title="Denied prefixes",
        detail="Paths under guardrails.denied_path_prefixes are always rejected.",
    ),
    "LOCKED_PATH": RuleDefinition(
        code="LOCKED_PATH",
        title="Locked prefixes",
        detail="Paths under guardrails.locked_path_prefixes are rejected unless the plan lists the "
        "prefix in meta.unlock_path_prefixes and unlocks are allowed.",
    ),
    "LINE_RANGE": RuleDefinition(
        code="LINE_RANGE",
        title="Line bounds",
        detail="start_line >= 1; end_line is null for create_file, update_file and insert_after and "
        ">= start_line for replace_range and delete_range.",
    ),
    "DELETE_CONTENT": RuleDefinition(
        code="DELETE_CONTENT",
        title="Empty delete payload",
        detail="delete_range operations must not carry content.",
    ),
    "NOT_REVERSIBLE": RuleDefinition(
        code="NOT_REVERSIBLE",
        title="Reversibility",
        detail="Operations explicitly marked reversible=false are rejected; a missing flag counts as true.",
    ),
    "MAX_BYTES": RuleDefinition(
        code="MAX_BYTES",
        title="Write budget",
        detail="The UTF-8 size of all operation content may not exceed guardrails.max_total_write_bytes.",
    ),
    "PRIVILEGED_PATH": RuleDefinition(
        code="PRIVILEGED_PATH",
        title="Privileged mode deny-list",
        detail="Plans in a privileged mode (guardrails.privileged_modes) may not touch "
        "guardrails.privileged_denied_prefixes.",
    ),
}


RuleHandler = Callable[[Plan, GuardrailPolicy], None]

RULE_SEQUENCE: List[Tuple[str, RuleHandler]] = [
    ("MAX_OPS", _check_max_ops),
    ("UNSAFE_PATH", _check_paths),
    ("DENIED_PATH", _check_prefixes),
    ("LINE_RANGE", _check_shapes),
    ("MAX_BYTES", _check_total_bytes),
    ("PRIVILEGED_PATH", _check_privileged_mode),
]


def validate_plan(plan: Plan, policy: GuardrailPolicy) -> None:
    """Raise :class:`GuardrailViolation` on the first rule ``plan`` breaks."""
    for _code, handler in RULE_SEQUENCE:
        handler(plan, policy)


def check_plan(plan: Plan, policy: GuardrailPolicy) -> GuardrailViolation | None:
    """Return the first violation instead of raising it."""
    try:
        validate_plan(plan, policy)
    except GuardrailViolation as violation:
        return violation
    return None


def describe_guardrails() -> str:
    """Return a formatted description of the guardrail rules."""
    lines = ["Guardrail rules:"]
    for rule in GUARDRAIL_RULES.values():
        detail = textwrap.fill(rule.detail, width=88, subsequent_indent="  ")
        lines.append(f"- {rule.code} :: {rule.title}")
        lines.append(f"  {detail}")
    return "\n".join(lines)


__all__ = [
    "DEFAULT_PRIVILEGED_MODES",
    "GUARDRAIL_RULES",
    "GuardrailPolicy",
    "RuleDefinition",
    "check_plan",
    "describe_guardrails",
    "normalise_plan_path",
    "unsafe_path_reason",
    "validate_plan",
]
