import errno
import json
import logging
import os
import re
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import AgencyError, ErrorCode
from .logging_utils import log_event
from .utils import now_iso

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 2 * 60 * 60
DEFAULT_MAX_ATTEMPTS = 3
LOCK_FILE_MODE = 0o600

_RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})\Z"
)


@dataclass
class LockInfo:
    pid: int
    created_at: str
    cmd: str

    def to_json(self) -> dict:
        return asdict(self)


class RepoLockedError(AgencyError):
    def __init__(self, lock_path: Path, info: Optional[LockInfo]) -> None:
        details = {"lock_path": str(lock_path)}
        message = "repo is locked by another agency process"
        if info is not None:
            details.update(
                {"pid": str(info.pid), "created_at": info.created_at, "cmd": info.cmd}
            )
            message = (
                f"repo is locked by another agency process "
                f"(pid={info.pid}, started={info.created_at}, cmd={info.cmd!r})"
            )
        super().__init__(ErrorCode.REPO_LOCKED, message, details=details)
        self.lock_path = lock_path
        self.info = info


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM: the process exists but belongs to someone else.
        return exc.errno == errno.EPERM
    return True


def parse_lock_info(text: str) -> Optional[LockInfo]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    pid = payload.get("pid")
    created_at = payload.get("created_at")
    if not isinstance(pid, int) or isinstance(pid, bool) or not isinstance(created_at, str):
        return None
    # An unparseable timestamp makes the lock unreadable; staleness then
    # falls back to the file mtime.
    if _parse_timestamp(created_at) is None:
        return None
    cmd = payload.get("cmd")
    return LockInfo(pid=pid, created_at=created_at, cmd=cmd if isinstance(cmd, str) else "")


def read_lock_info(lock_path: Path) -> Optional[LockInfo]:
    try:
        text = lock_path.read_text(encoding="utf-8")
    except OSError:
        return None
    return parse_lock_info(text)


def _parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an RFC3339 timestamp (fractional seconds and offsets allowed)."""
    match = _RFC3339_RE.match(value)
    if match is None:
        return None
    day, clock, fraction, offset = match.groups()
    micros = (fraction or "").ljust(6, "0")[:6]
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        return datetime.fromisoformat(f"{day}T{clock}.{micros}{offset}")
    except ValueError:
        return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RepoLock:
    """Non-blocking per-repo mutex stored at ``repos/<repo_id>/.lock``.

    The lock file is created with O_EXCL. A holder whose pid is dead, or whose
    lock is older than ``stale_after``, is considered stale and is removed
    before retrying. Contention raises :class:`RepoLockedError` immediately.
    """

    def __init__(
        self,
        data_dir: Path,
        *,
        stale_after: timedelta = timedelta(seconds=DEFAULT_STALE_AFTER_SECONDS),
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: Callable[[], datetime] = _utc_now,
        is_alive: Callable[[int], bool] = process_alive,
    ) -> None:
        self.data_dir = data_dir
        self.stale_after = stale_after
        self.max_attempts = max_attempts
        self._now = now
        self._is_alive = is_alive

    def lock_path(self, repo_id: str) -> Path:
        return self.data_dir / "repos" / repo_id / ".lock"

    def lock(self, repo_id: str, cmd: str) -> Callable[[], None]:
        """Acquire the lock and return an idempotent unlock function."""
        lock_path = self.lock_path(repo_id)
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.PERSIST_FAILED,
                f"failed to create lock directory: {exc}",
                details={"lock_path": str(lock_path)},
            ) from exc
        for _ in range(self.max_attempts):
            try:
                fd = os.open(
                    str(lock_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, LOCK_FILE_MODE
                )
            except FileExistsError:
                info = read_lock_info(lock_path)
                if info is None:
                    if self._unreadable_lock_is_stale(lock_path):
                        self._remove_stale(lock_path, repo_id, reason="unreadable")
                        continue
                    log_event(logger, logging.INFO, "lock.contended", repo_id=repo_id)
                    raise RepoLockedError(lock_path, None)
                reason = self._stale_reason(info)
                if reason is not None:
                    self._remove_stale(lock_path, repo_id, reason=reason, pid=info.pid)
                    continue
                log_event(
                    logger, logging.INFO, "lock.contended", repo_id=repo_id, pid=info.pid
                )
                raise RepoLockedError(lock_path, info)
            except OSError as exc:
                raise AgencyError(
                    ErrorCode.PERSIST_FAILED,
                    f"failed to create lock file: {exc}",
                    details={"lock_path": str(lock_path)},
                ) from exc

            info = LockInfo(pid=os.getpid(), created_at=now_iso(self._now()), cmd=cmd)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(json.dumps(info.to_json()) + "\n")
                    handle.flush()
            except OSError as exc:
                _unlink_quietly(lock_path)
                raise AgencyError(
                    ErrorCode.PERSIST_FAILED,
                    f"failed to write lock file: {exc}",
                    details={"lock_path": str(lock_path)},
                ) from exc
            log_event(logger, logging.DEBUG, "lock.acquired", repo_id=repo_id, pid=info.pid)
            return _make_unlock(lock_path)

        raise RepoLockedError(lock_path, None)

    @contextmanager
    def held(self, repo_id: str, cmd: str) -> Iterator[None]:
        unlock = self.lock(repo_id, cmd)
        try:
            yield
        finally:
            unlock()

    def _stale_reason(self, info: LockInfo) -> Optional[str]:
        if not self._is_alive(info.pid):
            return "dead_pid"
        created = _parse_timestamp(info.created_at)
        if created is not None and self._now() - created > self.stale_after:
            return "expired"
        return None

    def _unreadable_lock_is_stale(self, lock_path: Path) -> bool:
        try:
            mtime = lock_path.stat().st_mtime
        except FileNotFoundError:
            # Removed by its owner between open and stat; retrying will tell.
            return True
        except OSError:
            return False
        modified = datetime.fromtimestamp(mtime, tz=timezone.utc)
        return self._now() - modified > self.stale_after

    def _remove_stale(self, lock_path: Path, repo_id: str, **fields: object) -> None:
        log_event(logger, logging.WARNING, "lock.stale_removed", repo_id=repo_id, **fields)
        _unlink_quietly(lock_path)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _make_unlock(lock_path: Path) -> Callable[[], None]:
    released = False

    def unlock() -> None:
        nonlocal released
        if released:
            return
        released = True
        _unlink_quietly(lock_path)

    return unlock
