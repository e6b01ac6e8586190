"""Plan-to-merged-change state machine.

:class:`BranchLifecycleManager` is the only component that mutates git state.
One instance serves one repository root and holds at most one pending plan.

``accept`` validates and parks a plan.  ``execute`` records the current head,
creates ``<prefix><plan_id>``, re-validates, applies the operations, refuses
no-op results, commits and (for gated modes) verifies.  Any failure before the
commit is recorded rolls the repository back to the recorded head and deletes
the branch.  ``merge`` only proceeds through its gate, and ``cleanup`` removes
every engine branch.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import AgentError, ExecutionError, MergeBlocked, VerificationFailure
from .policy.guardrails import GuardrailPolicy, validate_plan
from .schema import BranchRecord, Plan, VerificationRecord, parse_plan
from .telemetry import emit_event
from .tools.artifacts import LAST_VERIFICATION_FILE, ArtifactStore
from .tools.patch import AppliedOperation, apply_operations, revert_operations
from .tools.vcs import GitCheckpoint, GitError, GitRepository
from .tools.verification import Verifier

LOGGER = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    IDLE = "idle"
    PLANNED = "planned"
    BRANCHED = "branched"
    APPLIED = "applied"
    COMMITTED = "committed"
    VERIFIED_OK = "verified_ok"
    VERIFIED_FAILED = "verified_failed"
    UNVERIFIED = "unverified"
    MERGE_PENDING = "merge_pending"
    MERGED = "merged"
    CLEANED_UP = "cleaned_up"
    ROLLED_BACK = "rolled_back"


def new_plan_id() -> str:
    """Return ``plan_<epoch-ms>_<6 hex>``."""
    return f"plan_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


@dataclass(slots=True)
class LifecycleSettings:
    trunk_branch: str = "main"
    branch_prefix: str = "agent/"
    verification_commands: Tuple[str, ...] = ()
    required_modes: Tuple[str, ...] = ()
    diff_max_chars: int = 400_000
    diff_snippet_chars: int = 1_800
    artifact_max_count: int = 200
    artifact_max_age_seconds: float = 168 * 3600


@dataclass(slots=True)
class ExecutionResult:
    """What ``execute`` produced on the new branch."""

    plan_id: str
    branch: str
    commit: str
    base_head: str
    base_branch: str | None
    state: LifecycleState
    files_changed: List[Tuple[str, str]] = field(default_factory=list)
    applied: Tuple[AppliedOperation, ...] = ()
    diff: str = ""
    diff_snippet: str = ""
    diff_path: Path | None = None
    verification: VerificationRecord | None = None


@dataclass(slots=True)
class MergeResult:
    merged_branch: str
    trunk: str
    commit: str


@dataclass(slots=True)
class CleanupResult:
    deleted_branches: List[str] = field(default_factory=list)
    pruned_artifacts: List[Path] = field(default_factory=list)


class BranchLifecycleManager:
    """Owns the pending plan and every git mutation for one repository."""

    def __init__(
        self,
        repo: GitRepository,
        policy: GuardrailPolicy,
        artifacts: ArtifactStore,
        *,
        verifier: Verifier | None = None,
        settings: LifecycleSettings | None = None,
        plan_id_factory: Callable[[], str] = new_plan_id,
    ) -> None:
        self.repo = repo
        self.artifacts = artifacts
        # Plans must never write the records merge trusts.
        self.policy = policy.with_denied_prefixes(artifacts.repo_prefix(repo.root))
        self.verifier = verifier
        self.settings = settings or LifecycleSettings()
        self._plan_id_factory = plan_id_factory
        self.state = LifecycleState.IDLE
        self.pending_plan: Plan | None = None
        self.pending_plan_id: str | None = None

    @classmethod
    def from_config(cls, config: Any, *, repo: GitRepository | None = None, **kwargs: Any) -> "BranchLifecycleManager":
        """Wire a manager from an :class:`~repo_agent.config.AgentConfig`."""
        repo = repo or GitRepository(
            config.repo_root,
            identity=(config.git.author_name, config.git.author_email),
        )
        artifacts = ArtifactStore(config.artifacts_dir)
        verifier = Verifier(
            repo.root,
            config.verification.allowlist(),
            log_dir=artifacts.root,
            default_timeout=config.verification.timeout_seconds,
            max_output_bytes=config.verification.max_output_bytes,
        )
        settings = LifecycleSettings(
            trunk_branch=config.git.trunk_branch,
            branch_prefix=config.git.branch_prefix,
            verification_commands=tuple(config.verification.run),
            required_modes=tuple(config.verification.required_modes),
            diff_max_chars=config.git.diff_max_chars,
            diff_snippet_chars=config.git.diff_snippet_chars,
            artifact_max_count=config.artifacts.max_count,
            artifact_max_age_seconds=config.artifacts.max_age_hours * 3600,
        )
        return cls(repo, config.guardrails.to_policy(), artifacts, verifier=verifier, settings=settings, **kwargs)

    # ------------------------------------------------------------------ helpers
    def branch_name(self, plan_id: str) -> str:
        return f"{self.settings.branch_prefix}{plan_id}"

    def requires_verification(self, mode: str) -> bool:
        return mode in self.settings.required_modes

    def _clear_pending(self) -> None:
        self.pending_plan = None
        self.pending_plan_id = None

    # ------------------------------------------------------------------- accept
    def accept(self, plan: Plan | Any) -> str:
        """Validate ``plan`` and make it the pending plan; returns its id."""
        parsed = parse_plan(plan)
        validate_plan(parsed, self.policy)
        if self.pending_plan_id is not None:
            LOGGER.warning("Replacing pending plan %s", self.pending_plan_id)
        plan_id = self._plan_id_factory()
        self.pending_plan = parsed
        self.pending_plan_id = plan_id
        self.state = LifecycleState.PLANNED
        self.artifacts.save_plan(plan_id, parsed)
        emit_event(
            "plan.accepted",
            plan_id=plan_id,
            mode=parsed.mode,
            ops=len(parsed.ops),
            goal=parsed.meta.goal,
        )
        return plan_id

    # ------------------------------------------------------------------ execute
    def execute(self) -> ExecutionResult:
        """Apply the pending plan on a fresh branch and commit it."""
        if self.state is not LifecycleState.PLANNED or self.pending_plan is None or not self.pending_plan_id:
            raise ExecutionError("No plan is pending approval.", details={"state": self.state.value})
        plan = self.pending_plan
        plan_id = self.pending_plan_id

        self.artifacts.ensure()
        self.repo.ensure_clean()
        checkpoint = self.repo.create_checkpoint(label=plan_id)
        if checkpoint.head is None:
            raise GitError("Repository has no commits; cannot branch from HEAD.")
        branch = self.branch_name(plan_id)
        if self.repo.branch_exists(branch):
            raise GitError(f"Branch {branch} already exists.", details={"branch": branch})

        self.repo.create_branch(branch)
        self.state = LifecycleState.BRANCHED
        emit_event("branch.created", plan_id=plan_id, branch=branch, base_head=checkpoint.head)

        journal: List[AppliedOperation] = []
        try:
            result = self._apply_and_commit(plan, plan_id, branch, checkpoint, journal)
        except Exception as error:
            self._rollback(checkpoint, branch, plan_id, error, journal)
            raise

        result.verification = self._verify(plan, plan_id, branch)
        result.state = self.state
        self._clear_pending()
        return result

    def _apply_and_commit(
        self,
        plan: Plan,
        plan_id: str,
        branch: str,
        checkpoint: GitCheckpoint,
        journal: List[AppliedOperation],
    ) -> ExecutionResult:
        validate_plan(plan, self.policy)
        applied = apply_operations(plan.ops, self.repo.root, journal=journal)
        self.state = LifecycleState.APPLIED
        emit_event("ops.applied", plan_id=plan_id, ops=[item.op_id for item in applied])

        if self.repo.is_clean():
            raise ExecutionError(
                "Execution produced no changes.",
                details={"plan_id": plan_id, "ops": [item.op_id for item in applied]},
            )
        goal = plan.meta.goal.strip() or "apply plan"
        commit = self.repo.commit_all(f"agent: {goal} ({plan_id})")
        if commit is None:
            raise ExecutionError("Execution produced no changes.", details={"plan_id": plan_id})
        self.state = LifecycleState.COMMITTED

        base_head = checkpoint.head or ""
        files_changed = self.repo.diff_name_status(base_head, commit)
        diff = self.repo.diff_unified(base_head, commit, max_chars=self.settings.diff_max_chars)
        diff_path = self.artifacts.save_diff(plan_id, diff)
        self.artifacts.remove(LAST_VERIFICATION_FILE)
        self.artifacts.save_branch_record(
            BranchRecord(
                branch_name=branch,
                plan_id=plan_id,
                mode=plan.mode,
                base_head=base_head,
                base_branch=checkpoint.branch,
                commit=commit,
                verification_required=self.requires_verification(plan.mode),
            )
        )
        emit_event(
            "plan.committed",
            plan_id=plan_id,
            branch=branch,
            commit=commit,
            files=[path for _status, path in files_changed],
        )
        return ExecutionResult(
            plan_id=plan_id,
            branch=branch,
            commit=commit,
            base_head=base_head,
            base_branch=checkpoint.branch,
            state=self.state,
            files_changed=files_changed,
            applied=applied,
            diff=diff,
            diff_snippet=diff[: self.settings.diff_snippet_chars],
            diff_path=diff_path,
        )

    def _rollback(
        self,
        checkpoint: GitCheckpoint,
        branch: str,
        plan_id: str,
        error: BaseException,
        journal: List[AppliedOperation],
    ) -> None:
        """Return to the recorded head, undo journalled writes and delete ``branch``; never raises.

        git restores tracked and new untracked files.  The journal also covers
        ignored files, which git leaves alone.
        """
        LOGGER.warning("Rolling back %s after failure: %s", plan_id, error)
        restore_ref = checkpoint.branch or checkpoint.head or self.settings.trunk_branch

        def delete_branch() -> None:
            if self.repo.branch_exists(branch):
                self.repo.delete_branch(branch, force=True)

        steps: List[Tuple[str, Callable[[], Any]]] = [
            ("checkout", lambda: self.repo.checkout(restore_ref, force=True)),
            ("restore_checkpoint", checkpoint.rollback),
            ("revert_writes", lambda: revert_operations(journal, self.repo.root)),
            ("delete_branch", delete_branch),
        ]
        problems: List[str] = []
        for name, step in steps:
            try:
                step()
            except (GitError, OSError) as step_error:
                LOGGER.error("Rollback step %s failed for %s: %s", name, plan_id, step_error)
                problems.append(f"{name}: {step_error}")

        if isinstance(error, AgentError):
            error.details.setdefault("plan_id", plan_id)
            error.details["rolled_back"] = not problems
            if problems:
                error.details["rollback_errors"] = problems
        self._clear_pending()
        self.state = LifecycleState.ROLLED_BACK
        emit_event(
            "plan.rolled_back",
            plan_id=plan_id,
            branch=branch,
            reason=str(error),
            rollback_errors=problems,
        )

    def _verify(self, plan: Plan, plan_id: str, branch: str) -> VerificationRecord | None:
        if not self.requires_verification(plan.mode):
            self.state = LifecycleState.UNVERIFIED
            return None

        commands = list(self.settings.verification_commands)
        if self.verifier is None:
            record = VerificationRecord(branch_name=branch, plan_id=plan_id, ok=False, commands=commands)
            LOGGER.error("Mode %s requires verification but no verifier is configured", plan.mode)
        else:
            report = self.verifier.run(commands, label=plan_id)
            LOGGER.info("Verification for %s:\n%s", plan_id, report.summary())
            record = VerificationRecord(
                branch_name=branch,
                plan_id=plan_id,
                ok=report.ok,
                exit_code=report.exit_code,
                duration_ms=report.duration_ms,
                log_paths=report.log_paths,
                commands=report.commands,
            )
        self.artifacts.save_verification_record(record)
        self.state = LifecycleState.VERIFIED_OK if record.ok else LifecycleState.VERIFIED_FAILED
        emit_event(
            "verification.finished",
            plan_id=plan_id,
            branch=branch,
            ok=record.ok,
            exit_code=record.exit_code,
            duration_ms=record.duration_ms,
        )
        return record

    # -------------------------------------------------------------------- merge
    def merge(self) -> MergeResult:
        """Merge the last executed branch into trunk once its gate is satisfied."""
        record = self.artifacts.load_branch_record()
        if record is None:
            raise MergeBlocked("No executed branch is recorded; nothing to merge.")
        details: Dict[str, Any] = {"branch": record.branch_name, "plan_id": record.plan_id}

        if record.verification_required:
            verification = self.artifacts.load_verification_record()
            if verification is None:
                raise MergeBlocked(
                    f"Branch {record.branch_name} has no verification record.", details=details
                )
            if verification.branch_name != record.branch_name or verification.plan_id != record.plan_id:
                raise MergeBlocked(
                    f"Verification record is stale: it covers {verification.branch_name}, "
                    f"not {record.branch_name}.",
                    details={**details, "verified_branch": verification.branch_name},
                )
            if not verification.ok:
                raise VerificationFailure(
                    f"Verification failed for {record.branch_name} (exit code {verification.exit_code}).",
                    details={**details, "exit_code": verification.exit_code},
                )

        self.repo.ensure_clean()
        trunk = self.settings.trunk_branch
        if not self.repo.branch_exists(record.branch_name):
            raise GitError(f"Branch {record.branch_name} no longer exists.", details=details)
        if not self.repo.branch_exists(trunk):
            raise GitError(f"Trunk branch {trunk} does not exist.", details=details)

        self.state = LifecycleState.MERGE_PENDING
        self.repo.checkout(trunk)
        commit = self.repo.merge(
            record.branch_name,
            message=f"Merge {record.branch_name} ({record.plan_id})",
            no_ff=True,
        )
        self.artifacts.clear_records()
        self.state = LifecycleState.MERGED
        emit_event("branch.merged", branch=record.branch_name, trunk=trunk, commit=commit)
        return MergeResult(merged_branch=record.branch_name, trunk=trunk, commit=commit)

    # ------------------------------------------------------------------ cleanup
    def cleanup(self) -> CleanupResult:
        """Delete every engine branch, clear records and prune old artifacts."""
        prefix = self.settings.branch_prefix
        trunk = self.settings.trunk_branch
        current = self.repo.current_branch()
        if current and current != trunk and current.startswith(prefix):
            self.repo.checkout(trunk)

        result = CleanupResult()
        for name in self.repo.list_local_branches(prefix):
            if name == trunk:
                continue
            self.repo.delete_branch(name, force=True)
            result.deleted_branches.append(name)

        self.artifacts.clear_records()
        keep = [self.pending_plan_id] if self.pending_plan_id else []
        result.pruned_artifacts = self.artifacts.prune(
            max_count=self.settings.artifact_max_count,
            max_age_seconds=self.settings.artifact_max_age_seconds,
            keep_plan_ids=keep,
        )
        self.state = LifecycleState.CLEANED_UP
        emit_event("branches.cleaned", deleted=result.deleted_branches, pruned=len(result.pruned_artifacts))
        return result

    # ------------------------------------------------------------------- status
    def status(self) -> Dict[str, Any]:
        last_branch = self.artifacts.load_branch_record()
        last_verification = self.artifacts.load_verification_record()
        return {
            "state": self.state.value,
            "pending_plan": self.pending_plan is not None,
            "pending_plan_id": self.pending_plan_id,
            "branch": self.repo.current_branch(),
            "head": self.repo.head(),
            "last_branch": last_branch.model_dump(mode="json") if last_branch else None,
            "last_verification": last_verification.model_dump(mode="json") if last_verification else None,
        }


__all__ = [
    "BranchLifecycleManager",
    "CleanupResult",
    "ExecutionResult",
    "LifecycleSettings",
    "LifecycleState",
    "MergeResult",
    "new_plan_id",
]
