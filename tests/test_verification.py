from __future__ import annotations

import sys
from pathlib import Path

from repo_agent.tools.verification import CommandSpec, Verifier, run_command


def _python(name: str, code: str, **kwargs) -> CommandSpec:
    return CommandSpec(name=name, argv=(sys.executable, "-c", code), **kwargs)


def test_successful_command_captures_output(tmp_path: Path) -> None:
    result = run_command(_python("ok", "print('hello')"), tmp_path)

    assert result.ok is True
    assert result.exit_code == 0
    assert result.stdout.strip() == "hello"
    assert result.timed_out is False


def test_failing_command_reports_exit_code(tmp_path: Path) -> None:
    result = run_command(_python("fail", "import sys; sys.stderr.write('boom'); sys.exit(3)"), tmp_path)

    assert result.ok is False
    assert result.exit_code == 3
    assert "boom" in result.stderr


def test_timeout_kills_the_command(tmp_path: Path) -> None:
    result = run_command(_python("slow", "import time; time.sleep(30)"), tmp_path, timeout=0.5)

    assert result.ok is False
    assert result.timed_out is True
    assert "timed out" in result.stderr
    assert result.duration_ms < 20_000


def test_missing_binary_is_a_failure_not_an_exception(tmp_path: Path) -> None:
    spec = CommandSpec(name="ghost", argv=("definitely-not-a-real-binary-xyz",))

    result = run_command(spec, tmp_path)

    assert result.ok is False
    assert result.exit_code is None
    assert "Failed to start" in result.stderr


def test_empty_argv_is_rejected(tmp_path: Path) -> None:
    result = run_command(CommandSpec(name="empty", argv=()), tmp_path)
    assert result.ok is False
    assert result.exit_code is None


def test_output_is_truncated(tmp_path: Path) -> None:
    result = run_command(_python("chatty", "print('x' * 5000)"), tmp_path, max_output_bytes=100)

    assert result.ok is True
    assert result.stdout.startswith("x" * 100)
    assert "output truncated at 100 bytes" in result.stdout


def test_string_commands_are_tokenised_without_a_shell() -> None:
    spec = CommandSpec.from_value("tests", "python -m pytest -q 'tests/a b.py'")
    assert spec.argv == ("python", "-m", "pytest", "-q", "tests/a b.py")

    listed = CommandSpec.from_value("lint", ["ruff", "check", "."])
    assert listed.argv == ("ruff", "check", ".")


def test_verifier_runs_all_commands_and_writes_logs(tmp_path: Path) -> None:
    logs = tmp_path / "logs"
    verifier = Verifier(
        tmp_path,
        {
            "first": _python("first", "print('one')"),
            "second": _python("second", "import sys; sys.exit(1)"),
            "third": _python("third", "print('three')"),
        },
        log_dir=logs,
    )

    report = verifier.run(["first", "second", "third"], label="plan_1")

    assert report.ok is False
    assert report.exit_code == 1
    assert report.commands == ["first", "second", "third"]
    assert (logs / "verify_plan_1_first_stdout.log").read_text(encoding="utf-8").strip() == "one"
    assert (logs / "verify_plan_1_third_stdout.log").exists()
    assert len(report.log_paths) == 6
    assert "second: failed (exit 1)" in report.summary()


def test_unknown_command_name_fails_without_spawning(tmp_path: Path) -> None:
    verifier = Verifier(tmp_path, {})

    report = verifier.run(["rm -rf /"])

    assert report.ok is False
    assert report.exit_code is None
    assert report.outcomes[0].argv == ()
    assert "not allowlisted" in report.outcomes[0].result.stderr


def test_command_runs_in_configured_subdirectory(tmp_path: Path) -> None:
    (tmp_path / "pkg").mkdir()
    verifier = Verifier(tmp_path, {"where": _python("where", "import os; print(os.getcwd())", cwd="pkg")})

    report = verifier.run(["where"])

    assert report.ok is True
    assert Path(report.outcomes[0].result.stdout.strip()).resolve() == (tmp_path / "pkg").resolve()


def test_empty_run_is_not_ok(tmp_path: Path) -> None:
    report = Verifier(tmp_path, {}).run([])
    assert report.ok is False
    assert report.summary() == "no verification commands ran"
