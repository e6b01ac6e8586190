"""Git plumbing used by the branch lifecycle.

Every call goes through the ``git`` binary with an argument vector (never a
shell string).  Output is decoded as UTF-8 with replacement so odd bytes in
file names or diffs never abort a rollback.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

import shutil
import subprocess
import time

from ..errors import VersionControlError


class GitError(VersionControlError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the repository taken before a plan touches it.

    The checkpoint records ``HEAD``, the branch that was checked out (``None``
    when detached) and the untracked paths that already existed.  Restoring it
    resets tracked files to ``head`` and removes only untracked paths that
    appeared afterwards.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    branch: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float

    def rollback(self) -> None:
        """Restore the repository to the checkpoint."""

        self.repo.restore_checkpoint(self)


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(
        self,
        root: Path | str,
        *,
        identity: Tuple[str, str] | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        # (name, email) applied to commits the engine creates itself.
        self.identity = identity

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        with_identity: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git"]
        if with_identity and self.identity:
            name, email = self.identity
            command.extend(["-c", f"user.name={name}", "-c", f"user.email={email}"])
        command.extend(args)
        process = subprocess.run(
            command,
            cwd=self.root,
            capture_output=True,
            text=False,
            check=False,
        )
        result = subprocess.CompletedProcess(
            process.args, process.returncode, _decode(process.stdout), _decode(process.stderr)
        )
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(
                f"git {' '.join(args)} failed: {message}",
                details={"args": list(args), "returncode": result.returncode},
            )
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def list_tracked_paths(self, *patterns: str) -> List[Path]:
        """Return tracked paths matching the git pathspec ``patterns`` (all when empty)."""

        args: List[str] = ["ls-files", "-z"]
        if patterns:
            args.extend(["--", *patterns])
        result = self._run_git(args)
        return [Path(entry) for entry in result.stdout.split("\0") if entry]

    # -------------------------------------------------------------- revisions
    def head(self) -> str | None:
        """Return the ``HEAD`` commit SHA, or ``None`` in an empty repository."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # -------------------------------------------------------------- branches
    def branch_exists(self, name: str) -> bool:
        result = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False
        )
        return result.returncode == 0

    def list_local_branches(self, prefix: str = "") -> List[str]:
        """Return local branch names, optionally restricted to ``prefix``."""

        result = self._run_git(["for-each-ref", "--format=%(refname:short)", "refs/heads/"])
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return sorted(name for name in names if name.startswith(prefix))

    def create_branch(self, name: str, *, start_point: str | None = None) -> None:
        """Create ``name`` and check it out; fails if it already exists."""

        args = ["checkout", "-b", name]
        if start_point:
            args.append(start_point)
        self._run_git(args)

    def checkout(self, ref: str, *, force: bool = False) -> None:
        args = ["checkout"]
        if force:
            args.append("--force")
        args.append(ref)
        self._run_git(args)

    def delete_branch(self, name: str, *, force: bool = False) -> None:
        self._run_git(["branch", "-D" if force else "-d", name])

    def merge(self, branch: str, *, message: str, no_ff: bool = True) -> str:
        """Merge ``branch`` into the current branch and return the new ``HEAD``.

        A failed merge is aborted and the current branch reset to its previous
        commit before :class:`GitError` is raised, so the work tree never keeps
        conflict markers.
        """

        before = self.head()
        args = ["merge"]
        if no_ff:
            args.append("--no-ff")
        args.extend(["-m", message, branch])
        result = self._run_git(args, check=False, with_identity=True)
        if result.returncode != 0:
            self._run_git(["merge", "--abort"], check=False)
            if before:
                self._run_git(["reset", "--hard", before], check=False)
            output = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(
                f"git merge {branch} failed: {output}",
                details={"branch": branch, "returncode": result.returncode},
            )
        return self.head() or ""

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, Path]]:
        """Return porcelain status entries as ``(status, path)`` pairs.

        Untracked directories are expanded into their files.
        """

        result = self._run_git(["status", "--porcelain=v1", "-z", "--untracked-files=all"])
        entries: List[tuple[str, Path]] = []
        records = result.stdout.split("\0")
        index = 0
        while index < len(records):
            record = records[index]
            index += 1
            if len(record) < 4:
                continue
            status = record[:2]
            entries.append((status.strip() or status, Path(record[3:])))
            if status[0] in {"R", "C"}:
                # -z emits the source path of a rename as a separate record.
                index += 1
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths = {
            path
            for status, path in self.status_entries()
            if include_untracked or status != "??"
        }
        return sorted(paths, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        return [path for status, path in self.status_entries() if status == "??"]

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    def ensure_clean(self, *, include_untracked: bool = True) -> None:
        """Raise :class:`GitError` if the working tree is not clean."""

        changes = self.working_tree_changes(include_untracked=include_untracked)
        if changes:
            raise GitError(
                "Working tree has pending changes.",
                details={"paths": [path.as_posix() for path in changes[:50]]},
            )

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record ``HEAD``, the current branch and the untracked files."""

        head = self.head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            branch=self.current_branch(),
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Reset tracked files to the checkpoint and drop new untracked paths."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        if checkpoint.head:
            self._run_git(["reset", "--hard", checkpoint.head])
        else:
            self._run_git(["restore", "--worktree", "--staged", "--", "."], check=False)
        self.remove_new_untracked(checkpoint)

    def remove_new_untracked(self, checkpoint: GitCheckpoint) -> List[Path]:
        """Delete untracked paths absent from ``checkpoint``; deepest first."""

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)
            self._prune_empty_parents(target.parent)
        return extra

    def _prune_empty_parents(self, directory: Path) -> None:
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    # ----------------------------------------------------------- diff helpers
    def diff_name_status(self, base: str, target: str = "HEAD") -> List[tuple[str, str]]:
        """Return ``(status, path)`` pairs changed between ``base`` and ``target``."""

        result = self._run_git(["diff", "--name-status", "-z", base, target])
        records = [entry for entry in result.stdout.split("\0") if entry]
        pairs: List[tuple[str, str]] = []
        index = 0
        while index < len(records):
            status = records[index]
            index += 1
            if status[:1] in {"R", "C"} and index + 1 < len(records):
                pairs.append((status, records[index + 1]))
                index += 2
            elif index < len(records):
                pairs.append((status, records[index]))
                index += 1
        return pairs

    def diff_unified(self, base: str, target: str = "HEAD", *, max_chars: int | None = None) -> str:
        """Return the unified diff ``base..target``, truncated to ``max_chars``."""

        result = self._run_git(["diff", base, target])
        text = result.stdout
        if max_chars is not None and len(text) > max_chars:
            omitted = len(text) - max_chars
            text = f"{text[:max_chars]}\n... [diff truncated, {omitted} characters omitted]\n"
        return text

    # ---------------------------------------------------------------- commits
    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Stage every change and commit.

        Returns the new commit SHA, or ``None`` when there was nothing to commit
        (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"])
        if not allow_empty:
            staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
            if staged.returncode == 0:
                return None

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")
        commit = self._run_git(commit_args, check=False, with_identity=True)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        return self.head()


__all__ = ["GitCheckpoint", "GitError", "GitRepository"]
