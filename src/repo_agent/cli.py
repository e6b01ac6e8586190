"""CLI commands for proposing, applying, merging and cleaning up agent branches."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .agent import AgentResponse, ErrorInfo, RepoAgent
from .config import (
    DEFAULT_CONFIG_NAME,
    AgentConfig,
    copy_config_template,
    load_config,
    write_config,
)
from .errors import AgentError
from .planning import FilePlanner
from .policy.guardrails import check_plan, describe_guardrails
from .schema import parse_plan
from .tools.artifacts import ArtifactStore

APP_HELP = "Guarded patch application and branch lifecycle for a git repository."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION_HELP = "Path to the agent configuration file."


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config: str) -> AgentConfig:
    try:
        return load_config(Path(config))
    except AgentError as error:
        typer.echo(f"[{error.category}] {error.message}", err=True)
        raise typer.Exit(code=1) from error


def _build_agent(config: str, *, plan_file: Optional[Path] = None) -> RepoAgent:
    agent_config = _load(config)
    try:
        planner = FilePlanner(plan_file) if plan_file is not None else None
        return RepoAgent(agent_config, planner=planner)
    except AgentError as error:
        typer.echo(f"[{error.category}] {error.message}", err=True)
        raise typer.Exit(code=1) from error


def _finish(response: AgentResponse, *, as_json: bool = False) -> Dict[str, Any]:
    """Echo a failed response and exit 1; return the data of a successful one."""
    if not response.ok:
        error = response.error or ErrorInfo(message="unknown error")
        typer.echo(error.render(), err=True)
        for key, value in sorted(error.details.items()):
            typer.echo(f"  {key}: {value}", err=True)
        raise typer.Exit(code=1)
    if as_json:
        typer.echo(json.dumps(response.data, indent=2, sort_keys=True, default=str))
    return response.data


def _render_execution(data: Dict[str, Any]) -> None:
    typer.echo(f"Branch: {data['branch']}")
    typer.echo(f"Commit: {data['commit']}")
    typer.echo(f"State: {data['state']}")
    files: List[Dict[str, str]] = data.get("files_changed") or []
    typer.echo(f"Files changed ({len(files)}):")
    for entry in files:
        typer.echo(f"- {entry['status']} {entry['path']}")
    verification = data.get("verification")
    if verification is not None:
        outcome = "passed" if verification["ok"] else f"failed (exit {verification['exit_code']})"
        typer.echo(f"Verification: {outcome}")
    if data.get("diff_snippet"):
        typer.echo("")
        typer.echo(data["diff_snippet"])


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a starter configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists: {config_path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote {config_path}")


@app.command()
def rules() -> None:
    """Describe the guardrail rules applied to every plan."""
    typer.echo(describe_guardrails())


@app.command()
def validate(
    plan_path: Path = typer.Argument(..., help="Plan JSON file to check."),
    mode: str = typer.Option("", "--mode", "-m", help="Mode to validate the plan under."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run the guardrails against a plan file without touching the repository."""
    agent_config = _load(config)
    try:
        plan = parse_plan(plan_path.read_text(encoding="utf-8"))
    except OSError as error:
        typer.echo(f"Unable to read {plan_path}: {error}", err=True)
        raise typer.Exit(code=1) from error
    except AgentError as error:
        typer.echo(f"[{error.category}] {error.message}", err=True)
        raise typer.Exit(code=1) from error
    if mode:
        plan = plan.with_mode(mode)
    policy = agent_config.guardrails.to_policy().with_denied_prefixes(
        ArtifactStore(agent_config.artifacts_dir).repo_prefix(agent_config.repo_root)
    )
    violation = check_plan(plan, policy)
    if violation is not None:
        typer.echo(f"[{violation.category}] {violation.message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Plan OK: {len(plan.ops)} operation(s).")


@app.command()
def run(
    mode: str = typer.Option("default", "--mode", "-m", help="Run mode recorded on the plan."),
    reason: str = typer.Option("", "--reason", "-r", help="Why the run was triggered."),
    plan_file: Optional[Path] = typer.Option(None, "--plan-file", help="Use a prepared plan JSON file."),
    approve: bool = typer.Option(False, "--approve", help="Execute the plan immediately."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Ask the planner for a plan and optionally execute it on a new branch."""
    agent = _build_agent(config, plan_file=plan_file)
    data = _finish(agent.run(mode, reason))
    plan = data["plan"]
    typer.echo(f"Plan {data['plan_id']}: {plan['meta'].get('goal') or '(no goal)'}")
    for op in plan["ops"]:
        typer.echo(f"- {op['id']} {op['type']} {op['file']}")
    if not approve:
        typer.echo("Plan accepted; re-run with --approve to execute it.")
        return
    _render_execution(_finish(agent.approve_and_execute()))


@app.command()
def apply(
    plan_path: Path = typer.Argument(..., help="Plan JSON file to execute."),
    mode: str = typer.Option("default", "--mode", "-m", help="Run mode recorded on the plan."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Validate a plan file and execute it on a new branch."""
    agent = _build_agent(config)
    try:
        payload = plan_path.read_text(encoding="utf-8")
    except OSError as error:
        typer.echo(f"Unable to read {plan_path}: {error}", err=True)
        raise typer.Exit(code=1) from error
    data = _finish(agent.submit_plan(payload, mode))
    typer.echo(f"Accepted plan {data['plan_id']}")
    _render_execution(_finish(agent.approve_and_execute()))


@app.command()
def status(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show the current branch and the persisted branch/verification records."""
    _finish(_build_agent(config).status(), as_json=True)


@app.command()
def merge(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Merge the last executed branch into trunk if its verification gate passes."""
    data = _finish(_build_agent(config).merge())
    typer.echo(f"Merged {data['merged_branch']} into {data['trunk']} ({data['commit']})")


@app.command()
def cleanup(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Delete every agent branch and clear the persisted records."""
    data = _finish(_build_agent(config).cleanup())
    deleted = data["deleted_branches"]
    if deleted:
        typer.echo(f"Deleted {len(deleted)} branch(es):")
        for name in deleted:
            typer.echo(f"- {name}")
    else:
        typer.echo("No agent branches to delete.")


if __name__ == "__main__":
    app()
