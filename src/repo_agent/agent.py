"""Front-end facade: every operation returns a structured :class:`AgentResponse`.

Callers such as the CLI (or a chat front end) render ``error.message`` and
``error.category`` verbatim and never see raw exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .config import AgentConfig
from .errors import AgentError, PlannerError
from .lifecycle import BranchLifecycleManager
from .planning import Planner, build_planner_input, planner_from_config
from .queue import LatestTriggerQueue
from .schema import parse_plan

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ErrorInfo:
    message: str
    category: str = "internal"
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: BaseException) -> "ErrorInfo":
        if isinstance(error, AgentError):
            return cls(message=error.message, category=error.category, details=dict(error.details))
        return cls(message=str(error) or type(error).__name__, category="internal", details={"type": type(error).__name__})

    def render(self) -> str:
        return f"[{self.category}] {self.message}"


@dataclass(slots=True)
class AgentResponse:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None

    @classmethod
    def success(cls, **data: Any) -> "AgentResponse":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: BaseException) -> "AgentResponse":
        return cls(ok=False, error=ErrorInfo.from_exception(error))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "data": self.data}
        if self.error is not None:
            payload["error"] = {
                "message": self.error.message,
                "category": self.error.category,
                "details": self.error.details,
            }
        return payload


@dataclass(slots=True, frozen=True)
class RunTrigger:
    """A request to plan, as queued by :meth:`RepoAgent.trigger`."""

    mode: str
    reason: str = ""
    scope: Tuple[str, ...] = ()


class RepoAgent:
    """Wires the planner and the lifecycle manager for one repository."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        planner: Planner | None = None,
        manager: BranchLifecycleManager | None = None,
    ) -> None:
        self.config = config
        self.manager = manager or BranchLifecycleManager.from_config(config)
        self._planner = planner
        self.triggers: LatestTriggerQueue[RunTrigger] = LatestTriggerQueue(self._handle_trigger)
        self.last_trigger_response: AgentResponse | None = None

    @property
    def planner(self) -> Planner:
        if self._planner is None:
            self._planner = planner_from_config(
                self.config.planner.kind,
                plan_file=self.config.planner.plan_file,
                base_dir=self.config.base_dir,
            )
        return self._planner

    def _respond(self, action: str, operation: Callable[[], Dict[str, Any]]) -> AgentResponse:
        try:
            return AgentResponse.success(**operation())
        except AgentError as error:
            LOGGER.warning("%s failed [%s]: %s", action, error.category, error.message)
            return AgentResponse.failure(error)
        except Exception as error:  # noqa: BLE001  # surfaced as a structured internal error
            LOGGER.exception("%s failed unexpectedly", action)
            return AgentResponse.failure(error)

    # ------------------------------------------------------------------ run
    def run(self, mode: str, reason: str = "", *, scope: Sequence[str] = ()) -> AgentResponse:
        """Ask the planner for a plan and accept it as the pending plan."""

        def operation() -> Dict[str, Any]:
            repo = self.manager.repo
            artifacts_prefix = self._artifacts_prefix()
            request = build_planner_input(
                repo,
                mode=mode,
                reason=reason,
                scope=scope,
                max_files=self.config.planner.max_files,
                max_chars_per_file=self.config.planner.max_chars_per_file,
                max_total_chars=self.config.planner.max_total_chars,
                exclude_prefixes=[artifacts_prefix] if artifacts_prefix else [],
            )
            try:
                payload = self.planner.plan_patch(request)
            except AgentError:
                raise
            except Exception as error:
                raise PlannerError(f"Planner {self.planner.name!r} failed: {error}") from error
            return self._accept(payload, mode)

        return self._respond("run", operation)

    def trigger(self, mode: str, reason: str = "", *, scope: Sequence[str] = ()) -> bool:
        """Queue a :meth:`run` in the background.

        While a run is in flight only the newest trigger is kept and replayed
        afterwards.  Returns ``True`` when a run started straight away.
        """
        return self.triggers.submit(RunTrigger(mode=mode, reason=reason, scope=tuple(scope)))

    def wait_for_triggers(self, timeout: float | None = None) -> bool:
        return self.triggers.wait_idle(timeout)

    def _handle_trigger(self, trigger: RunTrigger) -> None:
        self.last_trigger_response = self.run(trigger.mode, trigger.reason, scope=trigger.scope)

    def submit_plan(self, payload: Any, mode: str) -> AgentResponse:
        """Accept an externally supplied plan payload as the pending plan."""
        return self._respond("submit_plan", lambda: self._accept(payload, mode))

    def _accept(self, payload: Any, mode: str) -> Dict[str, Any]:
        plan = parse_plan(payload)
        if mode:
            plan = plan.with_mode(mode)
        plan_id = self.manager.accept(plan)
        return {"plan_id": plan_id, "plan": plan.to_payload()}

    def _artifacts_prefix(self) -> str:
        return self.manager.artifacts.repo_prefix(self.manager.repo.root)

    # --------------------------------------------------------------- status
    def status(self) -> AgentResponse:
        return self._respond("status", self.manager.status)

    # -------------------------------------------------------------- execute
    def approve_and_execute(self) -> AgentResponse:
        def operation() -> Dict[str, Any]:
            result = self.manager.execute()
            verification = result.verification.model_dump(mode="json") if result.verification else None
            return {
                "plan_id": result.plan_id,
                "branch": result.branch,
                "commit": result.commit,
                "state": result.state.value,
                "files_changed": [{"status": status, "path": path} for status, path in result.files_changed],
                "diff": result.diff,
                "diff_snippet": result.diff_snippet,
                "diff_path": result.diff_path.as_posix() if result.diff_path else None,
                "verification": verification,
            }

        return self._respond("approve_and_execute", operation)

    # ---------------------------------------------------------------- merge
    def merge(self) -> AgentResponse:
        def operation() -> Dict[str, Any]:
            result = self.manager.merge()
            return {"merged_branch": result.merged_branch, "trunk": result.trunk, "commit": result.commit}

        return self._respond("merge", operation)

    # -------------------------------------------------------------- cleanup
    def cleanup(self) -> AgentResponse:
        def operation() -> Dict[str, Any]:
            result = self.manager.cleanup()
            return {
                "deleted_branches": result.deleted_branches,
                "pruned_artifacts": [path.name for path in result.pruned_artifacts],
            }

        return self._respond("cleanup", operation)


__all__ = ["AgentResponse", "ErrorInfo", "RepoAgent", "RunTrigger"]
