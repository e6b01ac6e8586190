"""Build the repository summary handed to a planner."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..tools.vcs import GitRepository

LOGGER = logging.getLogger(__name__)

TEXT_SUFFIXES = frozenset(
    {".py", ".pyi", ".md", ".rst", ".txt", ".toml", ".cfg", ".ini", ".json", ".yml", ".yaml",
     ".js", ".ts", ".tsx", ".html", ".css", ".sh"}
)
_WHITESPACE_RUN = re.compile(r"[ \t]{4,}")
TRUNCATION_MARKER = "\n...TRUNCATED..."


@dataclass(slots=True)
class FilePreview:
    path: str
    content: str


@dataclass(slots=True)
class PlannerInput:
    """Everything a planner sees about the repository and the trigger."""

    repo_root: str
    head_ref: str
    branch: str
    mode: str
    reason: str = ""
    scope: List[str] = field(default_factory=list)
    files_preview: List[FilePreview] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": {"root": self.repo_root, "head_ref": self.head_ref, "branch": self.branch},
            "mode": self.mode,
            "reason": self.reason,
            "scope": list(self.scope),
            "files_preview": [{"path": item.path, "content": item.content} for item in self.files_preview],
        }


def make_excerpt(raw: str, max_chars: int) -> str:
    """Collapse long whitespace runs and cut ``raw`` to ``max_chars``."""
    text = _WHITESPACE_RUN.sub("  ", raw.replace("\r\n", "\n"))
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _in_scope(path: str, scope: Sequence[str]) -> bool:
    if not scope:
        return True
    prefixes = [prefix.strip().removeprefix("./") for prefix in scope]
    return any(path.startswith(prefix) for prefix in prefixes if prefix)


def build_planner_input(
    repo: GitRepository,
    *,
    mode: str,
    reason: str = "",
    scope: Sequence[str] = (),
    max_files: int = 40,
    max_chars_per_file: int = 4_000,
    max_total_chars: int = 60_000,
    exclude_prefixes: Sequence[str] = (),
) -> PlannerInput:
    """Summarise tracked text files for the planner within the given limits."""
    previews: List[FilePreview] = []
    budget = max_total_chars
    for relative in repo.list_tracked_paths():
        if len(previews) >= max_files or budget <= 0:
            break
        posix = relative.as_posix()
        if relative.suffix.lower() not in TEXT_SUFFIXES or not _in_scope(posix, scope):
            continue
        if any(posix.startswith(prefix) for prefix in exclude_prefixes if prefix):
            continue
        try:
            raw = (repo.root / relative).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Skipping preview of %s: %s", posix, error)
            continue
        excerpt = make_excerpt(raw, min(max_chars_per_file, budget))
        budget -= len(excerpt)
        previews.append(FilePreview(path=posix, content=excerpt))

    return PlannerInput(
        repo_root=str(repo.root),
        head_ref=repo.head() or "unknown",
        branch=repo.current_branch() or "HEAD",
        mode=mode,
        reason=reason,
        scope=list(scope),
        files_preview=previews,
    )


__all__ = ["FilePreview", "PlannerInput", "build_planner_input", "make_excerpt"]
