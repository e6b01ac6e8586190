"""Typed plan, operation and lifecycle records handled by the engine.

Plans arrive from an untrusted planner as loosely shaped JSON.  ``parse_plan``
is the one place where that payload is coerced into the strict, immutable
models below; every later stage (guardrails, executor, lifecycle) only sees
validated ``Plan`` instances.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import GuardrailViolation

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _snake(value: str) -> str:
    """Convert ``camelCase`` identifiers to ``snake_case``."""
    return _CAMEL_BOUNDARY.sub(r"_\1", value.strip()).lower()


def _snake_keys(data: Any) -> Any:
    """Return ``data`` with snake_case keys when it is a mapping."""
    if not isinstance(data, Mapping):
        return data
    return {_snake(str(key)): value for key, value in data.items()}


class OperationKind(str, Enum):
    """Closed set of edit kinds a plan may contain."""

    CREATE_FILE = "create_file"
    UPDATE_FILE = "update_file"
    REPLACE_RANGE = "replace_range"
    INSERT_AFTER = "insert_after"
    DELETE_RANGE = "delete_range"


WHOLE_FILE_KINDS = frozenset({OperationKind.CREATE_FILE, OperationKind.UPDATE_FILE})
RANGE_KINDS = frozenset({OperationKind.REPLACE_RANGE, OperationKind.DELETE_RANGE})
LINE_KINDS = frozenset({*RANGE_KINDS, OperationKind.INSERT_AFTER})


class PlanModel(BaseModel):
    """Base model for planner payloads: tolerant of extra keys, frozen once built."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class Operation(PlanModel):
    """Single file edit.

    ``kind`` is carried as ``type`` and ``content`` as ``patch`` on the wire.
    Line numbers are 1-based and inclusive.
    """

    id: str = ""
    file: str
    kind: OperationKind = Field(alias="type")
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    content: str = Field(default="", alias="patch")
    reversible: bool = True
    before_summary: str = ""
    after_summary: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalise_payload(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if not isinstance(data, dict):
            return data

        raw_kind = data.pop("kind", None)
        if "type" not in data and raw_kind is not None:
            data["type"] = raw_kind
        if isinstance(data.get("type"), str):
            data["type"] = _snake(data["type"])

        if "patch" not in data and "content" in data:
            data["patch"] = data.pop("content")
        if data.get("patch") is None:
            data["patch"] = ""

        if data.get("reversible") is None:
            data["reversible"] = True
        for key in ("before_summary", "after_summary", "id"):
            if data.get(key) is None:
                data[key] = ""

        if data.get("start_line") is None and data.get("type") in {
            kind.value for kind in WHOLE_FILE_KINDS
        }:
            data["start_line"] = 1
        return data

    @property
    def content_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


class PlanMeta(PlanModel):
    """Descriptive metadata; never consulted for safety decisions except ``mode``."""

    goal: str = ""
    rationale: str = ""
    confidence: float = 0.0
    mode: str = ""
    unlock_path_prefixes: Tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalise_payload(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict):
            for key in ("goal", "rationale", "mode"):
                if data.get(key) is None:
                    data.pop(key, None)
            if data.get("unlock_path_prefixes") is None:
                data.pop("unlock_path_prefixes", None)
            if data.get("confidence") is None:
                data.pop("confidence", None)
        return data

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        if math.isnan(value):
            return 0.0
        return min(max(value, 0.0), 1.0)


class PlanScope(PlanModel):
    """Planner's own estimate of the change footprint (informational only)."""

    files: Tuple[str, ...] = ()
    total_ops: int = 0
    estimated_bytes_changed: int = 0

    @model_validator(mode="before")
    @classmethod
    def _normalise_payload(cls, data: Any) -> Any:
        return _snake_keys(data)


class PlanVerification(PlanModel):
    """Advisory verification notes supplied by the planner."""

    steps: Tuple[str, ...] = ()
    success_criteria: Tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalise_payload(cls, data: Any) -> Any:
        return _snake_keys(data)


class Plan(PlanModel):
    """A proposed, ordered set of file operations plus metadata."""

    meta: PlanMeta = Field(default_factory=PlanMeta)
    scope: PlanScope = Field(default_factory=PlanScope)
    ops: Tuple[Operation, ...] = ()
    expected_effects: Tuple[str, ...] = ()
    verification: PlanVerification = Field(default_factory=PlanVerification)

    @model_validator(mode="before")
    @classmethod
    def _normalise_payload(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if not isinstance(data, dict):
            return data
        for key in ("meta", "scope", "verification", "expected_effects"):
            if data.get(key) is None:
                data.pop(key, None)
        ops = data.get("ops")
        if ops is None:
            data["ops"] = []
        elif isinstance(ops, (list, tuple)):
            normalised: List[Any] = []
            for index, entry in enumerate(ops, start=1):
                if isinstance(entry, Mapping):
                    entry = dict(entry)
                    if not entry.get("id"):
                        entry["id"] = f"op-{index}"
                normalised.append(entry)
            data["ops"] = normalised
        return data

    @property
    def mode(self) -> str:
        return self.meta.mode

    def with_mode(self, mode: str) -> "Plan":
        """Return a copy of the plan annotated with the run ``mode``."""
        return self.model_copy(update={"meta": self.meta.model_copy(update={"mode": mode})})

    def to_payload(self) -> Dict[str, Any]:
        """Serialise to the snake_case wire shape (``type``/``patch`` keys)."""
        return self.model_dump(mode="json", by_alias=True)


def parse_plan(payload: Any) -> Plan:
    """Coerce untrusted planner output into a validated :class:`Plan`.

    Raises :class:`GuardrailViolation` (rule ``PLAN_SCHEMA``) when the payload
    cannot be interpreted as a plan.
    """
    if isinstance(payload, Plan):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as error:
            raise GuardrailViolation("PLAN_SCHEMA", f"Plan is not valid JSON: {error}") from error
    if not isinstance(payload, Mapping):
        raise GuardrailViolation(
            "PLAN_SCHEMA",
            f"Plan must be a JSON object, got {type(payload).__name__}",
        )
    try:
        return Plan.model_validate(dict(payload))
    except ValidationError as error:
        problems = [
            {"loc": ".".join(str(part) for part in item.get("loc", ())), "msg": item.get("msg", "")}
            for item in error.errors()
        ]
        first = problems[0] if problems else {"loc": "", "msg": str(error)}
        raise GuardrailViolation(
            "PLAN_SCHEMA",
            f"Plan did not validate ({len(problems)} error(s)); first: {first['loc']}: {first['msg']}",
            details={"errors": problems},
        ) from error


class RecordModel(BaseModel):
    """Base model for persisted lifecycle records."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class BranchRecord(RecordModel):
    """The most recent branch created for an executed plan."""

    branch_name: str
    plan_id: str
    created_at: datetime = Field(default_factory=utc_now)
    mode: str = ""
    base_head: Optional[str] = None
    base_branch: Optional[str] = None
    commit: Optional[str] = None
    verification_required: bool = False


class VerificationRecord(RecordModel):
    """Outcome of the build/test step run against a branch."""

    branch_name: str
    plan_id: str
    ok: bool
    exit_code: Optional[int] = None
    duration_ms: int = 0
    log_paths: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "BranchRecord",
    "LINE_KINDS",
    "Operation",
    "OperationKind",
    "Plan",
    "PlanMeta",
    "PlanScope",
    "PlanVerification",
    "RANGE_KINDS",
    "RecordModel",
    "VerificationRecord",
    "WHOLE_FILE_KINDS",
    "parse_plan",
    "utc_now",
]
