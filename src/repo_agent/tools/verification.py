"""Run allow-listed build/test commands against a working tree.

Commands are always executed from an argument vector, never through a shell.
Each run gets its own process session so a timeout can kill the whole process
group, and output is spooled to temporary files so memory stays bounded
regardless of how chatty the command is.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import tempfile
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Tuple

from ..utils.fsio import safe_name, write_text_atomic

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20 * 60
DEFAULT_MAX_OUTPUT_BYTES = 1_000_000


@dataclass(slots=True, frozen=True)
class CommandSpec:
    """An allow-listed command: a name plus the argument vector to run."""

    name: str
    argv: Tuple[str, ...]
    cwd: str | None = None
    timeout_seconds: float | None = None

    @classmethod
    def from_value(
        cls,
        name: str,
        command: str | Sequence[str],
        *,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> "CommandSpec":
        """Build a spec; a string command is tokenised with :func:`shlex.split`."""
        argv = shlex.split(command) if isinstance(command, str) else [str(part) for part in command]
        return cls(name=name, argv=tuple(argv), cwd=cwd, timeout_seconds=timeout_seconds)


@dataclass(slots=True)
class CommandResult:
    """Outcome of one command; spawn failures have ``exit_code=None``."""

    ok: bool
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _read_bounded(handle: IO[bytes], limit: int) -> str:
    handle.seek(0)
    data = handle.read(limit + 1)
    text = data[:limit].decode("utf-8", errors="replace")
    if len(data) > limit:
        text += f"\n... [output truncated at {limit} bytes]\n"
    return text


def _kill_process_group(process: subprocess.Popen) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        process.kill()
    except ProcessLookupError:
        pass


def run_command(
    spec: CommandSpec,
    cwd: Path | str,
    *,
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CommandResult:
    """Run ``spec`` in ``cwd`` and never raise for process-level failures.

    A missing binary, an empty argument vector or an invalid ``cwd`` are all
    reported as ``ok=False`` with ``exit_code=None``.  On timeout the process
    group is killed and ``timed_out`` is set.
    """
    started = time.monotonic()
    if not spec.argv:
        return CommandResult(False, None, "", f"Command {spec.name!r} has an empty argument vector", 0)

    with tempfile.TemporaryFile() as stdout_file, tempfile.TemporaryFile() as stderr_file:
        try:
            process = subprocess.Popen(  # noqa: S603  # argv comes from the configured allowlist
                list(spec.argv),
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file,
                start_new_session=True,
            )
        except (OSError, ValueError) as error:
            LOGGER.warning("Unable to start %s: %s", spec.name, error)
            return CommandResult(
                ok=False,
                exit_code=None,
                stdout="",
                stderr=f"Failed to start {spec.argv[0]!r}: {error}",
                duration_ms=_elapsed_ms(started),
            )

        timed_out = False
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            LOGGER.warning("Command %s exceeded %ss; killing process group", spec.name, timeout)
            _kill_process_group(process)
            exit_code = process.wait()

        stdout = _read_bounded(stdout_file, max_output_bytes)
        stderr = _read_bounded(stderr_file, max_output_bytes)

    if timed_out:
        stderr += f"\nCommand timed out after {timeout} seconds and was killed.\n"
    return CommandResult(
        ok=exit_code == 0 and not timed_out,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=_elapsed_ms(started),
        timed_out=timed_out,
    )


@dataclass(slots=True)
class CommandOutcome:
    """Result of one named command within a verification run."""

    name: str
    argv: Tuple[str, ...]
    result: CommandResult
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass(slots=True)
class VerificationReport:
    """Aggregate of a verification run over several named commands."""

    outcomes: List[CommandOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.outcomes) and all(outcome.ok for outcome in self.outcomes)

    @property
    def exit_code(self) -> int | None:
        """Exit code of the first failing command, else the last command's."""
        for outcome in self.outcomes:
            if not outcome.ok:
                return outcome.result.exit_code
        return self.outcomes[-1].result.exit_code if self.outcomes else None

    @property
    def duration_ms(self) -> int:
        return sum(outcome.result.duration_ms for outcome in self.outcomes)

    @property
    def commands(self) -> List[str]:
        return [outcome.name for outcome in self.outcomes]

    @property
    def log_paths(self) -> List[str]:
        paths: List[str] = []
        for outcome in self.outcomes:
            for path in (outcome.stdout_path, outcome.stderr_path):
                if path is not None:
                    paths.append(path.as_posix())
        return paths

    def summary(self) -> str:
        lines = []
        for outcome in self.outcomes:
            if outcome.ok:
                status = "passed"
            elif outcome.result.timed_out:
                status = "timed out"
            else:
                status = f"failed (exit {outcome.result.exit_code})"
            lines.append(f"{outcome.name}: {status} in {outcome.result.duration_ms} ms")
        return "\n".join(lines) if lines else "no verification commands ran"


class Verifier:
    """Run allow-listed commands by name and keep their logs."""

    def __init__(
        self,
        repo_root: Path | str,
        allowlist: Mapping[str, CommandSpec],
        *,
        log_dir: Path | str | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.allowlist = dict(allowlist)
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    def run(self, names: Sequence[str], *, label: str = "") -> VerificationReport:
        """Run every name in ``names``; unknown names fail without spawning anything."""
        report = VerificationReport()
        for name in names:
            spec = self.allowlist.get(name)
            if spec is None:
                result = CommandResult(
                    ok=False,
                    exit_code=None,
                    stdout="",
                    stderr=f"Verification command not allowlisted: {name}",
                    duration_ms=0,
                )
                report.outcomes.append(self._record(name, (), result, label))
                continue

            cwd = (self.repo_root / spec.cwd).resolve() if spec.cwd else self.repo_root
            timeout = spec.timeout_seconds or self.default_timeout
            LOGGER.info("Running verification command %s: %s", name, shlex.join(spec.argv))
            result = run_command(spec, cwd, timeout=timeout, max_output_bytes=self.max_output_bytes)
            report.outcomes.append(self._record(name, spec.argv, result, label))
        return report

    def _record(
        self,
        name: str,
        argv: Tuple[str, ...],
        result: CommandResult,
        label: str,
    ) -> CommandOutcome:
        outcome = CommandOutcome(name=name, argv=argv, result=result)
        if self.log_dir is None:
            return outcome
        stem = "_".join(
            part for part in ("verify", safe_name(label, fallback=""), safe_name(name, fallback="command")) if part
        )
        outcome.stdout_path = self.log_dir / f"{stem}_stdout.log"
        outcome.stderr_path = self.log_dir / f"{stem}_stderr.log"
        write_text_atomic(outcome.stdout_path, result.stdout)
        write_text_atomic(outcome.stderr_path, result.stderr)
        return outcome


__all__ = [
    "CommandOutcome",
    "CommandResult",
    "CommandSpec",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "DEFAULT_TIMEOUT_SECONDS",
    "Verifier",
    "run_command",
]
