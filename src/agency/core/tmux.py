import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .commands import CommandResult, CommandRunner, CommandTimeoutError
from .errors import AgencyError, ErrorCode

logger = logging.getLogger(__name__)

SESSION_PREFIX = "agency_"
TMUX_TIMEOUT_SECONDS = 15


def session_name(run_id: str) -> str:
    return f"{SESSION_PREFIX}{run_id}"


class Tmux:
    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def run(self, args: Sequence[str], *, cwd: Optional[Path] = None) -> CommandResult:
        try:
            return self.runner.run("tmux", args, cwd=cwd, timeout_seconds=TMUX_TIMEOUT_SECONDS)
        except FileNotFoundError as exc:
            raise AgencyError(
                ErrorCode.TMUX_NOT_INSTALLED, "tmux is not installed or not on PATH"
            ) from exc
        except CommandTimeoutError as exc:
            raise AgencyError(
                ErrorCode.TMUX_FAILED,
                f"tmux timed out after {TMUX_TIMEOUT_SECONDS}s",
                details={"command": " ".join(["tmux", *args])},
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.TMUX_FAILED,
                f"failed to run tmux: {exc}",
                details={"command": " ".join(["tmux", *args])},
            ) from exc

    def has_session(self, name: str) -> bool:
        return self.run(["has-session", "-t", name]).ok

    def list_sessions(self) -> List[str]:
        # No server running yields a non-zero exit; that means no sessions.
        result = self.run(["list-sessions", "-F", "#{session_name}"])
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def new_session(self, name: str, *, cwd: Path, shell_script: str) -> None:
        result = self.run(
            ["new-session", "-d", "-s", name, "-c", str(cwd), "sh", "-lc", shell_script],
            cwd=cwd,
        )
        if not result.ok:
            detail = (result.stderr or result.stdout).strip() or f"exit {result.exit_code}"
            raise AgencyError(
                ErrorCode.TMUX_FAILED,
                f"failed to start tmux session {name}: {detail}",
                details={"session": name},
            )
        logger.info("Started tmux session %s in %s", name, cwd)


def attach_argv(name: str) -> List[str]:
    return ["tmux", "attach", "-t", name]
