import json
import os
import subprocess
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, NoReturn, Optional, Sequence

import typer
from dotenv import load_dotenv

from .core.commands import SubprocessRunner
from .core.errors import AgencyError, ErrorCode, exit_code_for, format_error
from .core.git import Git
from .core.ids import resolve_run_ref
from .core.locks import RepoLock
from .core.logging_utils import LogConfig, setup_rotating_logger
from .core.paths import AgencySettings
from .core.pipeline import Pipeline, RunPipelineOptions
from .core.repo_safety import resolve_repo_identity
from .core.run_service import REPORT_NAME, RunService, dot_agency_dir
from .core.status import Snapshot, derive_status
from .core.store import RunRecord, Store, model_to_json
from .core.tmux import Tmux, attach_argv, session_name

app = typer.Typer(add_completion=False)


def main() -> None:
    """Entrypoint for CLI execution."""
    load_dotenv()
    app()


def _settings() -> AgencySettings:
    settings = AgencySettings.resolve(env=os.environ, home=Path.home(), cwd=Path.cwd())
    setup_rotating_logger("agency", LogConfig.for_data_dir(settings.data_dir))
    return settings


def _fail(exc: AgencyError, evidence: Optional[Dict[str, str]] = None) -> NoReturn:
    typer.echo(format_error(exc), err=True)
    for key, value in (evidence or {}).items():
        if value:
            typer.echo(f"{key}: {value}", err=True)
    raise typer.Exit(code=exit_code_for(exc)) from exc


def _live_sessions(tmux: Tmux) -> List[str]:
    try:
        return tmux.list_sessions()
    except AgencyError:
        return []


def _snapshot(record: RunRecord, live_sessions: Sequence[str]) -> Snapshot:
    meta = record.meta
    if meta is None:
        return Snapshot()
    worktree = Path(meta.worktree_path)
    report = dot_agency_dir(worktree) / REPORT_NAME
    try:
        report_bytes = report.stat().st_size
    except OSError:
        report_bytes = 0
    name = meta.tmux_session_name or session_name(meta.run_id)
    return Snapshot(
        tmux_active=name in live_sessions,
        worktree_present=worktree.is_dir(),
        report_bytes=report_bytes,
    )


def _run_summary(record: RunRecord, live_sessions: Sequence[str]) -> dict:
    derived = derive_status(record.meta, _snapshot(record, live_sessions))
    meta = record.meta
    return {
        "run_id": record.run_id,
        "repo_id": record.repo_id,
        "title": meta.title if meta else None,
        "runner": meta.runner if meta else None,
        "branch": meta.branch if meta else None,
        "created_at": meta.created_at if meta else None,
        "broken": record.broken,
        "status": derived.label,
        "archived": derived.archived,
        "report_nonempty": derived.report_nonempty,
    }


def _resolve_record(store: Store, run_id: str) -> RunRecord:
    records = store.scan_all_runs()
    ref = resolve_run_ref(run_id, [rec.to_ref() for rec in records])
    for record in records:
        if record.repo_id == ref.repo_id and record.run_id == ref.run_id:
            return record
    raise AgencyError(ErrorCode.RUN_NOT_FOUND, f"run not found: {run_id}")


def _require_meta(store: Store, record: RunRecord):
    if record.meta is None:
        raise AgencyError(
            ErrorCode.RUN_BROKEN,
            f"run {record.run_id} has unreadable metadata",
            details={"meta_path": str(store.run_meta_path(record.repo_id, record.run_id))},
        )
    return record.meta


@app.command()
def run(
    title: str = typer.Option("", "--title", help="Run title"),
    runner: str = typer.Option("", "--runner", help="Runner name (default from agency.json)"),
    parent: str = typer.Option("", "--parent", help="Local parent branch"),
    attach: bool = typer.Option(False, "--attach", help="Attach to the tmux session"),
):
    """Create a worktree, run setup, and start the runner in tmux."""
    settings = _settings()
    command_runner = SubprocessRunner()
    try:
        _, identity = resolve_repo_identity(Git(command_runner), settings.cwd)
    except AgencyError as exc:
        _fail(exc)

    repo_lock = RepoLock(
        settings.data_dir,
        stale_after=timedelta(seconds=settings.lock_stale_after_seconds),
    )
    service = RunService(settings, command_runner)
    pipeline = Pipeline(service)
    opts = RunPipelineOptions(title=title, runner=runner, parent=parent, attach=attach)
    try:
        with repo_lock.held(identity.repo_id, "agency run"):
            result = pipeline.run(opts)
    except AgencyError as exc:
        _fail(exc)

    state = result.state
    for warning in state.warnings:
        typer.echo(f"warning: {warning.message}", err=True)
    if result.error is not None:
        _fail(
            result.error,
            {
                "run_id": result.run_id,
                "worktree": str(state.worktree_path or ""),
                "log": str(state.setup_log_path or ""),
            },
        )

    typer.echo(f"run_id: {result.run_id}")
    typer.echo(f"title: {state.title}")
    typer.echo(f"runner: {state.runner}")
    typer.echo(f"parent: {state.parent_branch}")
    typer.echo(f"branch: {state.branch}")
    typer.echo(f"worktree: {state.worktree_path}")
    typer.echo(f"tmux: {state.tmux_session_name}")
    if attach:
        code = subprocess.call(attach_argv(state.tmux_session_name))
        if code != 0:
            _fail(
                AgencyError(
                    ErrorCode.TMUX_ATTACH_FAILED,
                    f"failed to attach to tmux session {state.tmux_session_name}",
                )
            )
    else:
        typer.echo(f"attach: agency attach {result.run_id}")


@app.command("ls")
def list_runs(
    show_all: bool = typer.Option(False, "--all", help="Include archived runs"),
    all_repos: bool = typer.Option(False, "--all-repos", help="List runs from every repo"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """List runs for the current repo (or all repos)."""
    settings = _settings()
    command_runner = SubprocessRunner()
    store = Store(settings.data_dir)

    repo_id: Optional[str] = None
    if not all_repos:
        try:
            _, identity = resolve_repo_identity(Git(command_runner), settings.cwd)
            repo_id = identity.repo_id
        except AgencyError as exc:
            if exc.code != ErrorCode.NO_REPO:
                _fail(exc)

    try:
        records = (
            store.scan_runs_for_repo(repo_id) if repo_id else store.scan_all_runs()
        )
    except AgencyError as exc:
        _fail(exc)
    live = _live_sessions(Tmux(command_runner))
    rows = [_run_summary(record, live) for record in records]
    if not show_all:
        rows = [row for row in rows if not row["archived"] or row["broken"]]
    rows.sort(key=lambda row: row["run_id"], reverse=True)

    if output_json:
        typer.echo(json.dumps({"schema_version": "1.0", "runs": rows}, indent=2))
        return
    if not rows:
        typer.echo("No runs.")
        return
    for row in rows:
        title = row["title"] if row["title"] is not None else "<broken>"
        typer.echo(f"{row['run_id']}  {row['status']:<16}  {title}")


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run id or unique prefix"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """Show a single run."""
    settings = _settings()
    store = Store(settings.data_dir)
    try:
        record = _resolve_record(store, run_id)
        meta = _require_meta(store, record)
    except AgencyError as exc:
        _fail(exc)

    live = _live_sessions(Tmux(SubprocessRunner()))
    derived = derive_status(meta, _snapshot(record, live))
    if output_json:
        payload = {
            "meta": model_to_json(meta),
            "derived": {
                "status": derived.label,
                "archived": derived.archived,
                "report_nonempty": derived.report_nonempty,
            },
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    typer.echo(f"run_id: {meta.run_id}")
    typer.echo(f"repo_id: {meta.repo_id}")
    typer.echo(f"title: {meta.title}")
    typer.echo(f"status: {derived.label}")
    typer.echo(f"runner: {meta.runner} ({meta.runner_cmd})")
    typer.echo(f"parent: {meta.parent_branch}")
    typer.echo(f"branch: {meta.branch}")
    typer.echo(f"worktree: {meta.worktree_path}")
    typer.echo(f"created_at: {meta.created_at}")
    if meta.tmux_session_name:
        typer.echo(f"tmux: {meta.tmux_session_name}")
    if meta.setup is not None:
        typer.echo(f"setup: exit={meta.setup.exit_code} log={meta.setup.log_path}")


@app.command()
def attach(run_id: str = typer.Argument(..., help="Run id or unique prefix")):
    """Attach to a run's tmux session."""
    settings = _settings()
    store = Store(settings.data_dir)
    tmux = Tmux(SubprocessRunner())
    try:
        record = _resolve_record(store, run_id)
        meta = _require_meta(store, record)
        name = meta.tmux_session_name or session_name(meta.run_id)
        if not tmux.has_session(name):
            raise AgencyError(
                ErrorCode.TMUX_SESSION_MISSING,
                f"tmux session {name} is not running",
                details={"session": name},
            )
    except AgencyError as exc:
        _fail(exc)

    code = subprocess.call(attach_argv(name))
    if code != 0:
        _fail(
            AgencyError(ErrorCode.TMUX_ATTACH_FAILED, f"failed to attach to tmux session {name}")
        )


if __name__ == "__main__":
    main()
