"""On-disk artifacts: lifecycle records, plans, diffs and verification logs.

The directory carries its own ``.gitignore`` (``*``) so nothing written here
ever shows up as a working-tree change of the repository being edited.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, List, Mapping, Type, TypeVar

from pydantic import ValidationError

from ..schema import BranchRecord, Plan, RecordModel, VerificationRecord
from ..utils.fsio import artifact_file_name, safe_name, write_text_atomic

LOGGER = logging.getLogger(__name__)

LAST_BRANCH_FILE = "last_branch.json"
LAST_VERIFICATION_FILE = "last_verification.json"
_PROTECTED = frozenset({".gitignore", LAST_BRANCH_FILE, LAST_VERIFICATION_FILE})
_PLAN_ID_PATTERN = re.compile(r"plan_\d+(?:_[0-9a-f]+)?")

RecordT = TypeVar("RecordT", bound=RecordModel)


def plan_id_from_name(filename: str) -> str:
    """Return the plan id embedded in an artifact file name, or ``""``."""
    match = _PLAN_ID_PATTERN.search(filename)
    return match.group(0) if match else ""


class ArtifactStore:
    """Small JSON/text store rooted at the artifacts directory."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def repo_prefix(self, repo_root: Path | str) -> str:
        """Return the store as a ``dir/`` prefix relative to ``repo_root``, or ``""`` when outside it."""
        try:
            relative = self.root.resolve().relative_to(Path(repo_root).resolve())
        except ValueError:
            return ""
        return f"{relative.as_posix()}/" if relative.parts else ""

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        ignore = self.root / ".gitignore"
        if not ignore.exists():
            write_text_atomic(ignore, "*\n")
        return self.root

    # ------------------------------------------------------------------ raw IO
    def write_text(self, name: str, text: str) -> Path:
        self.ensure()
        path = self.root / name
        write_text_atomic(path, text)
        return path

    def write_json(self, name: str, payload: Mapping[str, Any]) -> Path:
        return self.write_text(name, json.dumps(payload, indent=2, sort_keys=True) + "\n")

    def read_json(self, name: str) -> Any | None:
        path = self.root / name
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable artifact %s: %s", path, error)
            return None

    def remove(self, name: str) -> bool:
        path = self.root / name
        if not path.exists():
            return False
        path.unlink()
        return True

    # ---------------------------------------------------------------- records
    def _load_record(self, name: str, model: Type[RecordT]) -> RecordT | None:
        payload = self.read_json(name)
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except ValidationError as error:
            LOGGER.warning("Ignoring malformed record %s: %s", name, error)
            return None

    def load_branch_record(self) -> BranchRecord | None:
        return self._load_record(LAST_BRANCH_FILE, BranchRecord)

    def save_branch_record(self, record: BranchRecord) -> Path:
        return self.write_json(LAST_BRANCH_FILE, record.model_dump(mode="json"))

    def load_verification_record(self) -> VerificationRecord | None:
        return self._load_record(LAST_VERIFICATION_FILE, VerificationRecord)

    def save_verification_record(self, record: VerificationRecord) -> Path:
        return self.write_json(LAST_VERIFICATION_FILE, record.model_dump(mode="json"))

    def clear_records(self) -> None:
        self.remove(LAST_BRANCH_FILE)
        self.remove(LAST_VERIFICATION_FILE)

    # --------------------------------------------------------------- per plan
    def save_plan(self, plan_id: str, plan: Plan) -> Path:
        return self.write_json(f"{safe_name(plan_id, fallback='unknown')}.json", plan.to_payload())

    def save_diff(self, plan_id: str, diff: str) -> Path:
        return self.write_text(artifact_file_name("diff", plan_id, "patch"), diff)

    # ---------------------------------------------------------------- pruning
    def prune(
        self,
        *,
        max_count: int,
        max_age_seconds: float,
        keep_plan_ids: Iterable[str] = (),
        now: float | None = None,
    ) -> List[Path]:
        """Delete old artifacts, first by age and then down to ``max_count`` files.

        Records and files belonging to ``keep_plan_ids`` are never deleted.
        """
        if not self.root.is_dir():
            return []
        keep = {entry for entry in keep_plan_ids if entry}
        current = time.time() if now is None else now
        files = sorted(
            (
                path
                for path in self.root.iterdir()
                if path.is_file() and path.name not in _PROTECTED
            ),
            key=lambda path: path.stat().st_mtime,
        )

        def deletable(path: Path) -> bool:
            return plan_id_from_name(path.name) not in keep

        doomed = [
            path
            for path in files
            if current - path.stat().st_mtime > max_age_seconds and deletable(path)
        ]
        remaining = [path for path in files if path not in doomed]
        overflow = len(remaining) - max_count
        for path in remaining[: max(overflow, 0)]:
            if deletable(path):
                doomed.append(path)

        for path in doomed:
            path.unlink(missing_ok=True)
            LOGGER.info("Artifact pruned: %s", path.name)
        return doomed


__all__ = [
    "ArtifactStore",
    "LAST_BRANCH_FILE",
    "LAST_VERIFICATION_FILE",
    "plan_id_from_name",
]
