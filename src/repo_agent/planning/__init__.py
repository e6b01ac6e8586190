"""Planner collaborator boundary: request context in, untrusted plan payload out."""

from .context import FilePreview, PlannerInput, build_planner_input
from .planner import FilePlanner, Planner, StubPlanner, planner_from_config

__all__ = [
    "FilePlanner",
    "FilePreview",
    "Planner",
    "PlannerInput",
    "StubPlanner",
    "build_planner_input",
    "planner_from_config",
]
