from enum import Enum
from typing import Dict, Mapping, Optional


class ErrorCode(str, Enum):
    USAGE = "E_USAGE"

    NO_REPO = "E_NO_REPO"
    NO_AGENCY_JSON = "E_NO_AGENCY_JSON"
    INVALID_AGENCY_JSON = "E_INVALID_AGENCY_JSON"
    RUNNER_NOT_CONFIGURED = "E_RUNNER_NOT_CONFIGURED"
    STORE_CORRUPT = "E_STORE_CORRUPT"

    GIT_NOT_INSTALLED = "E_GIT_NOT_INSTALLED"
    TMUX_NOT_INSTALLED = "E_TMUX_NOT_INSTALLED"
    PERSIST_FAILED = "E_PERSIST_FAILED"
    INTERNAL = "E_INTERNAL"

    EMPTY_REPO = "E_EMPTY_REPO"
    PARENT_DIRTY = "E_PARENT_DIRTY"
    PARENT_BRANCH_NOT_FOUND = "E_PARENT_BRANCH_NOT_FOUND"
    WORKTREE_CREATE_FAILED = "E_WORKTREE_CREATE_FAILED"

    TMUX_SESSION_EXISTS = "E_TMUX_SESSION_EXISTS"
    TMUX_FAILED = "E_TMUX_FAILED"
    TMUX_SESSION_MISSING = "E_TMUX_SESSION_MISSING"
    TMUX_ATTACH_FAILED = "E_TMUX_ATTACH_FAILED"

    RUN_NOT_FOUND = "E_RUN_NOT_FOUND"
    RUN_ID_AMBIGUOUS = "E_RUN_ID_AMBIGUOUS"
    RUN_BROKEN = "E_RUN_BROKEN"

    SCRIPT_TIMEOUT = "E_SCRIPT_TIMEOUT"
    SCRIPT_FAILED = "E_SCRIPT_FAILED"
    SCRIPT_CANCELED = "E_SCRIPT_CANCELED"

    RUN_DIR_EXISTS = "E_RUN_DIR_EXISTS"
    RUN_DIR_CREATE_FAILED = "E_RUN_DIR_CREATE_FAILED"
    META_WRITE_FAILED = "E_META_WRITE_FAILED"

    REPO_LOCKED = "E_REPO_LOCKED"


class AgencyError(Exception):
    """Domain error with a stable code.

    The cause is carried on ``__cause__`` (use ``raise ... from exc``) so that
    tracebacks keep the original failure. ``details`` holds structured context
    such as the failing step or evidence paths.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, str] = dict(details) if details else {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    @classmethod
    def wrap(
        cls,
        code: ErrorCode,
        message: str,
        exc: BaseException,
        *,
        details: Optional[Mapping[str, str]] = None,
    ) -> "AgencyError":
        err = cls(code, message, details=details)
        err.__cause__ = exc
        return err


def error_code(exc: Optional[BaseException]) -> Optional[ErrorCode]:
    if isinstance(exc, AgencyError):
        return exc.code
    return None


def exit_code_for(exc: Optional[BaseException]) -> int:
    if exc is None:
        return 0
    if error_code(exc) == ErrorCode.USAGE:
        return 2
    return 1


def format_error(exc: BaseException) -> str:
    if isinstance(exc, AgencyError):
        return f"error_code: {exc.code.value}\n{exc.message}"
    return str(exc)
