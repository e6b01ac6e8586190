from __future__ import annotations

import os
import time
from pathlib import Path

from repo_agent.schema import BranchRecord, VerificationRecord, parse_plan
from repo_agent.tools.artifacts import (
    LAST_BRANCH_FILE,
    ArtifactStore,
    plan_id_from_name,
)
from repo_agent.utils.fsio import artifact_file_name, safe_name


def _touch(path: Path, age_seconds: float, now: float) -> Path:
    path.write_text("x", encoding="utf-8")
    os.utime(path, (now - age_seconds, now - age_seconds))
    return path


def test_ensure_writes_ignore_file(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path / "agent_artifacts")
    store.ensure()
    assert (tmp_path / "agent_artifacts" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_records_round_trip_and_clear(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    store.save_branch_record(BranchRecord(branch_name="agent/plan_1", plan_id="plan_1", mode="default"))
    store.save_verification_record(
        VerificationRecord(branch_name="agent/plan_1", plan_id="plan_1", ok=True, exit_code=0)
    )

    branch = store.load_branch_record()
    verification = store.load_verification_record()
    assert branch is not None and branch.branch_name == "agent/plan_1"
    assert verification is not None and verification.ok is True

    store.clear_records()
    assert store.load_branch_record() is None
    assert store.load_verification_record() is None


def test_corrupt_records_read_as_missing(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    (tmp_path / LAST_BRANCH_FILE).write_text("{not json", encoding="utf-8")
    assert store.load_branch_record() is None

    store.write_json(LAST_BRANCH_FILE, {"branch_name": "x"})
    assert store.load_branch_record() is None


def test_plan_and_diff_names(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    plan = parse_plan({"ops": [{"file": "a.txt", "type": "createFile", "patch": "x"}]})

    assert store.save_plan("plan_12_abc", plan).name == "plan_12_abc.json"
    assert store.save_diff("plan_12_abc", "diff").name == "diff_plan_12_abc.patch"
    assert plan_id_from_name("verify_plan_12_abc_tests_stdout.log") == "plan_12_abc"
    assert plan_id_from_name("notes.txt") == ""


def test_safe_names() -> None:
    assert safe_name("a/b c", fallback="x") == "a_b_c"
    assert safe_name("  ", fallback="x") == "x"
    assert artifact_file_name("diff", "../evil", ".patch") == "diff_.._evil.patch"


def test_prune_by_age_then_count(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    store.ensure()
    now = time.time()
    old = _touch(tmp_path / "diff_plan_1.patch", 10_000, now)
    middle = _touch(tmp_path / "diff_plan_2.patch", 300, now)
    recent = _touch(tmp_path / "diff_plan_3.patch", 200, now)
    newest = _touch(tmp_path / "diff_plan_4.patch", 100, now)
    _touch(tmp_path / LAST_BRANCH_FILE, 50_000, now)

    removed = store.prune(max_count=2, max_age_seconds=3600, now=now)

    assert set(removed) == {old, middle}
    assert recent.exists() and newest.exists()
    assert (tmp_path / LAST_BRANCH_FILE).exists()
    assert (tmp_path / ".gitignore").exists()


def test_prune_keeps_requested_plans(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    now = time.time()
    kept = _touch(tmp_path / "plan_7_ab.json", 10_000, now)
    dropped = _touch(tmp_path / "plan_8_cd.json", 10_000, now)

    removed = store.prune(max_count=0, max_age_seconds=60, keep_plan_ids=["plan_7_ab"], now=now)

    assert removed == [dropped]
    assert kept.exists()


def test_repo_prefix_is_relative_to_the_repository(tmp_path: Path) -> None:
    assert ArtifactStore(tmp_path / "repo" / "agent_artifacts").repo_prefix(tmp_path / "repo") == "agent_artifacts/"
    assert ArtifactStore(tmp_path / "repo" / "a" / "b").repo_prefix(tmp_path / "repo") == "a/b/"
    assert ArtifactStore(tmp_path / "elsewhere").repo_prefix(tmp_path / "repo") == ""
    assert ArtifactStore(tmp_path / "repo").repo_prefix(tmp_path / "repo") == ""
