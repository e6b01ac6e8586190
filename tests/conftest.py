from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from repo_agent.tools.vcs import GitRepository  # noqa: E402


@dataclass(slots=True)
class SampleRepo:
    """A small git repository on a ``main`` trunk with one commit."""

    root: Path
    repo: GitRepository

    def git(self, *args: str) -> str:
        return self.repo.git(*args).stdout.strip()

    def write(self, relative: str, text: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def commit_all(self, message: str) -> str:
        self.git("add", "--all")
        self.git("commit", "-m", message)
        return self.git("rev-parse", "HEAD")

    def commit_count(self, ref: str = "HEAD") -> int:
        return int(self.git("rev-list", "--count", ref))


def make_plan(*ops: Mapping[str, Any], goal: str = "test change", mode: str = "default") -> dict:
    """Return a camelCase plan payload as a planner would emit it."""
    return {
        "meta": {"goal": goal, "rationale": "test", "confidence": 0.9, "mode": mode},
        "scope": {"files": [op["file"] for op in ops], "totalOps": len(ops), "estimatedBytesChanged": 0},
        "ops": [dict(op) for op in ops],
        "expectedEffects": [],
        "verification": {"steps": [], "successCriteria": []},
    }


def write_plan_file(path: Path, payload: Mapping[str, Any]) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture()
def sample_repo(tmp_path: Path) -> SampleRepo:
    root = tmp_path / "repo"
    root.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=root, check=True, capture_output=True)
    subprocess.run(
        ["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=root, check=True, capture_output=True
    )
    repo = GitRepository(root, identity=("Repo Agent Tests", "tests@example.com"))
    repo.git("config", "user.email", "tests@example.com")
    repo.git("config", "user.name", "Repo Agent Tests")
    repo.git("config", "commit.gpgsign", "false")

    sample = SampleRepo(root=root, repo=repo)
    sample.write("README.md", "# sample\n")
    sample.write("a.txt", "A\nX\nC\n")
    sample.write("src/app.py", "def main():\n    return 1\n")
    sample.commit_all("initial commit")
    return sample
