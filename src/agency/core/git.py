import logging
from pathlib import Path
from typing import Optional, Sequence

from .commands import CommandResult, CommandRunner, CommandTimeoutError
from .errors import AgencyError, ErrorCode

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30
WORKTREE_TIMEOUT_SECONDS = 120


def git_failure_detail(result: CommandResult) -> str:
    return (result.stderr or result.stdout or "").strip() or f"exit {result.exit_code}"


class Git:
    """git queries routed through a :class:`CommandRunner`.

    A missing git binary raises ``E_GIT_NOT_INSTALLED``. Non-zero exits are
    interpreted per query rather than raised.
    """

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def run(
        self,
        args: Sequence[str],
        cwd: Path,
        *,
        timeout_seconds: float = GIT_TIMEOUT_SECONDS,
    ) -> CommandResult:
        try:
            return self.runner.run("git", args, cwd=cwd, timeout_seconds=timeout_seconds)
        except FileNotFoundError as exc:
            raise AgencyError(
                ErrorCode.GIT_NOT_INSTALLED, "git is not installed or not on PATH"
            ) from exc
        except CommandTimeoutError as exc:
            raise AgencyError(
                ErrorCode.INTERNAL,
                f"git timed out after {timeout_seconds:g}s",
                details={"command": " ".join(["git", *args])},
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.INTERNAL,
                f"failed to run git: {exc}",
                details={"command": " ".join(["git", *args])},
            ) from exc

    def repo_root(self, cwd: Path) -> Path:
        result = self.run(["rev-parse", "--show-toplevel"], cwd)
        if not result.ok:
            raise AgencyError(ErrorCode.NO_REPO, "not inside a git repository")
        out = result.stdout.strip()
        if not out:
            raise AgencyError(ErrorCode.NO_REPO, "git rev-parse returned empty output")
        if "\n" in out:
            raise AgencyError(
                ErrorCode.NO_REPO, "git rev-parse returned unexpected multi-line output"
            )
        root = Path(out)
        if not root.is_absolute():
            root = cwd / root
        return root.absolute()

    def origin_url(self, repo_root: Path) -> str:
        """Return the origin URL, or "" when origin is missing."""
        result = self.run(["config", "--get", "remote.origin.url"], repo_root)
        if not result.ok:
            return ""
        return result.stdout.strip()

    def has_commits(self, repo_root: Path) -> bool:
        return self.run(["rev-parse", "--verify", "HEAD"], repo_root).ok

    def is_clean(self, repo_root: Path) -> bool:
        result = self.run(["status", "--porcelain"], repo_root)
        if not result.ok:
            return False
        return not result.stdout.strip()

    def branch_exists(self, repo_root: Path, branch: str) -> bool:
        return self.run(["show-ref", "--verify", f"refs/heads/{branch}"], repo_root).ok

    def add_worktree(
        self,
        repo_root: Path,
        *,
        branch: str,
        worktree_path: Path,
        start_point: Optional[str],
    ) -> None:
        args = ["worktree", "add", "-b", branch, str(worktree_path)]
        if start_point:
            args.append(start_point)
        result = self.run(args, repo_root, timeout_seconds=WORKTREE_TIMEOUT_SECONDS)
        if not result.ok:
            raise AgencyError(
                ErrorCode.WORKTREE_CREATE_FAILED,
                f"git worktree add failed: {git_failure_detail(result)}",
                details={"branch": branch, "worktree_path": str(worktree_path)},
            )
        logger.info("Created worktree %s on branch %s", worktree_path, branch)
