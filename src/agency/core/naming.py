import re
import secrets
from datetime import datetime, timezone
from typing import Optional

BRANCH_PREFIX = "agency/"
SLUG_MAX_LEN = 30
SHORT_ID_LEN = 4
UNTITLED = "untitled"

_HYPHEN_RUN_RE = re.compile(r"-+")


def new_run_id(now: Optional[datetime] = None) -> str:
    """Return ``YYYYMMDDHHMMSS-xxxx`` (UTC timestamp plus 4 random hex chars)."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    stamp = moment.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{stamp}-{secrets.token_hex(2)}"


def short_id(run_id: str) -> str:
    _, sep, suffix = run_id.rpartition("-")
    if sep and len(suffix) == SHORT_ID_LEN:
        return suffix
    return "x" * SHORT_ID_LEN


def _collapse(value: str) -> str:
    return _HYPHEN_RUN_RE.sub("-", value).strip("-")


def slugify(title: str, max_len: int = SLUG_MAX_LEN) -> str:
    if max_len <= 0:
        return UNTITLED
    chars = []
    for ch in title.lower():
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            chars.append(ch)
        elif ch.isspace() or ch in "_-":
            chars.append("-")
    slug = _collapse("".join(chars))
    if len(slug) > max_len:
        slug = _collapse(slug[:max_len])
    return slug or UNTITLED


def branch_name(title: str, run_id: str) -> str:
    return f"{BRANCH_PREFIX}{slugify(title)}-{short_id(run_id)}"


def default_title(run_id: str) -> str:
    return f"{UNTITLED}-{short_id(run_id)}"


def shell_escape_posix(value: str) -> str:
    if not value:
        return "''"
    return "'" + value.replace("'", "'\"'\"'") + "'"


def build_runner_shell_script(worktree_path: str, runner_cmd: str) -> str:
    # runner_cmd is a single executable (validated by config), so it is not quoted.
    return f"cd {shell_escape_posix(worktree_path)} && exec {runner_cmd}"
