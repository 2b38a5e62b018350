"""The six run pipeline steps.

Each step reads and fills in :class:`PipelineState`. All git and tmux access
goes through the injected :class:`CommandRunner`; all store writes go through
the injected :class:`FileSystem`.
"""

import json
import logging
import stat
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from .commands import EXIT_CANCELED, CommandRunner, ScriptResult, run_script
from .config import load_agency_config, resolve_runner, validate_agency_config
from .errors import AgencyError, ErrorCode
from .filesystem import FileSystem, RealFileSystem
from .git import Git
from .logging_utils import log_event
from .naming import branch_name, build_runner_shell_script, default_title
from .paths import AgencySettings
from .pipeline import PipelineState, STEP_WRITE_META
from .repo_safety import check_repo_safe, require_parent_branch
from .store import RunMeta, SCHEMA_VERSION, SetupRecord, Store
from .tmux import Tmux, session_name
from .utils import now_iso

logger = logging.getLogger(__name__)

DOT_AGENCY_DIR = ".agency"
SETUP_LOG_NAME = "setup.log"
SETUP_OUTPUT_NAME = "setup.json"
REPORT_NAME = "report.md"

WARN_GITIGNORE = "W_GITIGNORE_MISSING_AGENCY"
WARN_REPORT = "W_REPORT_TEMPLATE_FAILED"
WARN_RUNNER = "W_RUNNER_NOT_ON_PATH"

REPORT_TEMPLATE = """# {title}

## summary

## decisions

## testing

## pr notes
"""

ScriptExecutor = Callable[..., ScriptResult]


@dataclass
class SetupOutput:
    ok: Optional[bool]
    summary: str = ""


def dot_agency_dir(worktree_path: Path) -> Path:
    return worktree_path / DOT_AGENCY_DIR


def setup_command(script: str) -> str:
    return f"sh -lc {script}"


def parse_setup_output(text: str) -> Optional[SetupOutput]:
    """Parse ``.agency/out/setup.json``; malformed content yields None."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    ok = payload.get("ok")
    summary = payload.get("summary")
    return SetupOutput(
        ok=ok if isinstance(ok, bool) else None,
        summary=summary if isinstance(summary, str) else "",
    )


def build_setup_env(state: PipelineState, logs_dir: Path) -> Dict[str, str]:
    workspace = state.worktree_path or Path()
    dotagency = dot_agency_dir(workspace)
    return {
        "AGENCY_RUN_ID": state.run_id,
        "AGENCY_TITLE": state.title,
        "AGENCY_REPO_ROOT": str(state.repo_root or ""),
        "AGENCY_WORKSPACE_ROOT": str(workspace),
        "AGENCY_BRANCH": state.branch,
        "AGENCY_PARENT_BRANCH": state.parent_branch,
        "AGENCY_ORIGIN_NAME": "origin",
        "AGENCY_ORIGIN_URL": state.origin_url,
        "AGENCY_RUNNER": state.runner,
        "AGENCY_PR_URL": "",
        "AGENCY_PR_NUMBER": "",
        "AGENCY_DOTAGENCY_DIR": str(dotagency),
        "AGENCY_OUTPUT_DIR": str(dotagency / "out"),
        "AGENCY_LOG_DIR": str(logs_dir),
        "AGENCY_NONINTERACTIVE": "1",
        "CI": "1",
    }


def setup_log_header(*, timestamp: str, command: str, cwd: Path) -> str:
    return (
        "# agency setup log\n"
        f"# timestamp: {timestamp}\n"
        f"# command: {command}\n"
        f"# cwd: {cwd}\n"
        "# ---\n"
        "\n"
    )


def _gitignore_covers_agency(text: str) -> bool:
    for line in text.splitlines():
        if line.strip() in (".agency", ".agency/"):
            return True
    return False


class RunService:
    def __init__(
        self,
        settings: AgencySettings,
        runner: CommandRunner,
        *,
        fs: Optional[FileSystem] = None,
        env: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        script_executor: ScriptExecutor = run_script,
    ) -> None:
        self.settings = settings
        self.fs: FileSystem = fs or RealFileSystem()
        self.git = Git(runner)
        self.tmux = Tmux(runner)
        self.store = Store(settings.data_dir, fs=self.fs)
        self.env = env
        self.cancel_event = cancel_event
        self._execute_script = script_executor

    # 1
    def check_repo_safe(self, state: PipelineState) -> None:
        ctx = check_repo_safe(
            self.git,
            self.store,
            self.settings.cwd,
            parent_branch=state.parent or None,
        )
        state.repo_root = ctx.repo_root
        state.repo_id = ctx.repo_id
        state.repo_key = ctx.repo_key
        state.origin_url = ctx.origin_url
        state.data_dir = ctx.data_dir

    # 2
    def load_agency_config(self, state: PipelineState) -> None:
        repo_root = self._require_repo_root(state)
        config = validate_agency_config(load_agency_config(repo_root, fs=self.fs))
        runner = resolve_runner(config, state.runner, env=self.env)
        for message in runner.warnings:
            state.warn(WARN_RUNNER, message)

        parent_branch = state.parent or config.defaults.parent_branch
        if not state.parent:
            # Deferred from CheckRepoSafe: the parent only became known now.
            require_parent_branch(self.git, repo_root, parent_branch)

        state.runner = runner.name
        state.runner_cmd = runner.command
        state.setup_script = config.scripts.setup
        state.parent_branch = parent_branch

    # 3
    def create_worktree(self, state: PipelineState) -> None:
        repo_root = self._require_repo_root(state)
        branch = branch_name(state.title, state.run_id)
        worktree_path = self.store.worktree_path(state.repo_id, state.run_id)
        details = {"branch": branch, "worktree_path": str(worktree_path)}
        if self._exists(worktree_path):
            raise AgencyError(
                ErrorCode.WORKTREE_CREATE_FAILED,
                f"worktree path already exists: {worktree_path}",
                details=details,
            )
        try:
            self.fs.mkdirs(worktree_path.parent, 0o700)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.WORKTREE_CREATE_FAILED,
                f"failed to create worktrees directory: {exc}",
                details=details,
            ) from exc

        self.git.add_worktree(
            repo_root,
            branch=branch,
            worktree_path=worktree_path,
            start_point=state.parent_branch,
        )
        state.branch = branch
        state.worktree_path = worktree_path
        if not state.title:
            state.title = default_title(state.run_id)

        dotagency = dot_agency_dir(worktree_path)
        try:
            for directory in (dotagency, dotagency / "out", dotagency / "tmp"):
                self.fs.mkdirs(directory)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.WORKTREE_CREATE_FAILED,
                f"failed to create .agency directories: {exc}",
                details=details,
            ) from exc

        self._write_report_template(state, dotagency / REPORT_NAME)
        self._check_gitignore(state, repo_root)
        log_event(
            logger,
            logging.INFO,
            "run.worktree_created",
            run_id=state.run_id,
            branch=branch,
            worktree_path=worktree_path,
        )

    def _write_report_template(self, state: PipelineState, report_path: Path) -> None:
        try:
            self.fs.stat(report_path)
            return
        except FileNotFoundError:
            pass
        except OSError as exc:
            state.warn(WARN_REPORT, f"could not inspect {report_path}: {exc}")
            return
        try:
            self.fs.write_text(report_path, REPORT_TEMPLATE.format(title=state.title))
        except OSError as exc:
            state.warn(WARN_REPORT, f"failed to write report template: {exc}")

    def _check_gitignore(self, state: PipelineState, repo_root: Path) -> None:
        try:
            text = self.fs.read_text(repo_root / ".gitignore")
        except OSError:
            text = ""
        if not _gitignore_covers_agency(text):
            state.warn(
                WARN_GITIGNORE,
                ".agency/ is not in .gitignore; run artifacts may show up as untracked files",
            )

    # 4
    def write_meta(self, state: PipelineState) -> None:
        worktree_path = state.worktree_path
        details = {"step": STEP_WRITE_META, "worktree_path": str(worktree_path or "")}
        if worktree_path is None:
            raise AgencyError(
                ErrorCode.INTERNAL,
                "worktree_path is not set (WriteMeta called before CreateWorktree?)",
                details=details,
            )
        try:
            info = self.fs.stat(worktree_path)
        except FileNotFoundError as exc:
            raise AgencyError(
                ErrorCode.INTERNAL,
                "worktree_path does not exist (WriteMeta called before CreateWorktree?)",
                details=details,
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.INTERNAL, "failed to stat worktree_path", details=details
            ) from exc
        if not stat.S_ISDIR(info.st_mode):
            raise AgencyError(
                ErrorCode.INTERNAL, "worktree_path is not a directory", details=details
            )

        self.store.ensure_run_dir(state.repo_id, state.run_id)
        meta = RunMeta(
            schema_version=SCHEMA_VERSION,
            run_id=state.run_id,
            repo_id=state.repo_id,
            title=state.title,
            runner=state.runner,
            runner_cmd=state.runner_cmd,
            parent_branch=state.parent_branch,
            branch=state.branch,
            worktree_path=str(worktree_path),
            created_at=now_iso(),
        )
        self.store.write_initial_meta(meta)

    # 5
    def run_setup(self, state: PipelineState) -> None:
        worktree_path = state.worktree_path
        if worktree_path is None:
            raise AgencyError(ErrorCode.INTERNAL, "worktree_path is not set")
        logs_dir = self.store.run_logs_dir(state.repo_id, state.run_id)
        log_path = logs_dir / SETUP_LOG_NAME
        command = setup_command(state.setup_script)
        state.setup_log_path = log_path
        self.fs.mkdirs(logs_dir, 0o700)

        env = build_setup_env(state, logs_dir)
        log_event(logger, logging.INFO, "setup.start", run_id=state.run_id, command=command)
        interrupt: Optional[KeyboardInterrupt] = None
        started = time.monotonic()
        with open(log_path, "w", encoding="utf-8") as output:
            output.write(
                setup_log_header(timestamp=now_iso(), command=command, cwd=worktree_path)
            )
            try:
                result = self._execute_script(
                    ["sh", "-lc", state.setup_script],
                    cwd=worktree_path,
                    env=env,
                    output=output,
                    timeout_seconds=self.settings.setup_timeout_seconds,
                    cancel_event=self.cancel_event,
                )
            except KeyboardInterrupt as exc:
                # The child is already killed; record the outcome, then re-raise.
                interrupt = exc
                result = ScriptResult(
                    exit_code=EXIT_CANCELED,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    canceled=True,
                )
            if result.start_error:
                output.write(f"\n# failed to start: {result.start_error}\n")

        structured = self._read_setup_output(worktree_path)
        reported_failure = structured is not None and structured.ok is False
        failed = result.failed or reported_failure

        setup_record = SetupRecord(
            command=command,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            log_path=str(log_path),
        )
        if structured is not None:
            setup_record.output_ok = structured.ok
            setup_record.output_summary = structured.summary or None

        def apply(meta: RunMeta) -> None:
            meta.setup = setup_record
            if failed:
                meta.ensure_flags().setup_failed = True

        self.store.update_meta(state.repo_id, state.run_id, apply)
        log_event(
            logger,
            logging.INFO if not failed else logging.WARNING,
            "setup.finished",
            run_id=state.run_id,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
            canceled=result.canceled,
        )

        if interrupt is not None:
            raise interrupt
        if result.timed_out:
            raise AgencyError(
                ErrorCode.SCRIPT_TIMEOUT,
                f"setup script timed out after {self.settings.setup_timeout_seconds:g}s",
                details={"command": command, "log_path": str(log_path)},
            )
        if result.canceled:
            raise AgencyError(
                ErrorCode.SCRIPT_CANCELED,
                "setup script was canceled",
                details={"command": command, "log_path": str(log_path)},
            )
        if failed:
            message = "setup script failed"
            if reported_failure:
                message = "setup script reported failure via setup.json"
                if structured is not None and structured.summary:
                    message += f": {structured.summary}"
            raise AgencyError(
                ErrorCode.SCRIPT_FAILED,
                message,
                details={
                    "command": command,
                    "exit_code": str(result.exit_code),
                    "log_path": str(log_path),
                },
            )

    def _read_setup_output(self, worktree_path: Path) -> Optional[SetupOutput]:
        path = dot_agency_dir(worktree_path) / "out" / SETUP_OUTPUT_NAME
        try:
            text = self.fs.read_text(path)
        except OSError:
            return None
        except UnicodeDecodeError:
            return None
        return parse_setup_output(text)

    # 6
    def start_tmux(self, state: PipelineState) -> None:
        worktree_path = state.worktree_path
        if worktree_path is None:
            raise AgencyError(ErrorCode.INTERNAL, "worktree_path is not set")
        name = session_name(state.run_id)
        if self.tmux.has_session(name):
            raise AgencyError(
                ErrorCode.TMUX_SESSION_EXISTS,
                f"tmux session {name} already exists",
                details={"session": name},
            )
        script = build_runner_shell_script(str(worktree_path), state.runner_cmd)
        try:
            self.tmux.new_session(name, cwd=worktree_path, shell_script=script)
        except AgencyError:
            self.store.update_meta(state.repo_id, state.run_id, _mark_tmux_failed)
            raise

        def record_session(meta: RunMeta) -> None:
            meta.tmux_session_name = name

        self.store.update_meta(state.repo_id, state.run_id, record_session)
        state.tmux_session_name = name
        log_event(logger, logging.INFO, "tmux.session_started", run_id=state.run_id, session=name)

    def _exists(self, path: Path) -> bool:
        try:
            self.fs.stat(path)
        except FileNotFoundError:
            return False
        return True

    def _require_repo_root(self, state: PipelineState) -> Path:
        if state.repo_root is None:
            raise AgencyError(ErrorCode.INTERNAL, "repo root is not resolved")
        return state.repo_root


def _mark_tmux_failed(meta: RunMeta) -> None:
    meta.ensure_flags().tmux_failed = True
