"""Planner implementations shipped with the engine.

Planners return raw payloads; the lifecycle parses and validates them, so a
planner is never trusted beyond producing ``ops``.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

from ..errors import PlannerError
from .context import PlannerInput


class Planner(ABC):
    """Base class: turn a :class:`PlannerInput` into a plan payload."""

    name = "planner"

    @abstractmethod
    def plan_patch(self, request: PlannerInput) -> Any:
        """Return a plan payload (mapping, JSON text or :class:`~repo_agent.schema.Plan`)."""


class StubPlanner(Planner):
    """Deterministic planner that proposes no changes."""

    name = "stub"

    def plan_patch(self, request: PlannerInput) -> Dict[str, Any]:
        return {
            "meta": {
                "goal": "noop",
                "rationale": "Planner disabled; the stub planner produced no changes.",
                "confidence": 0.0,
                "mode": request.mode,
            },
            "scope": {"files": [], "total_ops": 0, "estimated_bytes_changed": 0},
            "expected_effects": [],
            "ops": [],
            "verification": {"steps": [], "success_criteria": []},
        }


class FilePlanner(Planner):
    """Read a prepared plan from a JSON file (operator-authored or produced offline)."""

    name = "file"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def plan_patch(self, request: PlannerInput) -> Any:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise PlannerError(f"Unable to read plan file {self.path}: {error}") from error
        try:
            return json.loads(text)
        except json.JSONDecodeError as error:
            raise PlannerError(f"Plan file {self.path} is not valid JSON: {error}") from error


def planner_from_config(kind: str, *, plan_file: str = "", base_dir: Path | None = None) -> Planner:
    """Return the planner named by ``kind`` (``stub`` or ``file``)."""
    normalised = (kind or "stub").strip().lower()
    if normalised == "stub":
        return StubPlanner()
    if normalised == "file":
        if not plan_file:
            raise PlannerError("planner.kind=file requires planner.plan_file")
        path = Path(plan_file)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        return FilePlanner(path)
    raise PlannerError(f"Unknown planner kind: {kind!r}")


__all__ = ["FilePlanner", "Planner", "StubPlanner", "planner_from_config"]
