import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from .filesystem import FileSystem, RealFileSystem

TEMP_PREFIX = ".agency-tmp-"


def now_iso(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def atomic_write(
    path: Path,
    content: str,
    *,
    mode: int = 0o644,
    fs: Optional[FileSystem] = None,
) -> None:
    """Write ``content`` to ``path`` via a sibling temp file and rename.

    The parent directory must already exist. If anything fails before the
    rename lands, the target keeps its previous contents and the temp file is
    removed.
    """
    fs = fs or RealFileSystem()
    tmp_path, handle = fs.create_temp(path.parent, TEMP_PREFIX)
    renamed = False
    try:
        with handle:
            handle.write(content)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except (OSError, AttributeError, ValueError):
                pass
        fs.chmod(tmp_path, mode)
        fs.rename(tmp_path, path)
        renamed = True
    finally:
        if not renamed:
            try:
                fs.remove(tmp_path)
            except FileNotFoundError:
                pass


def dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2) + "\n"


def atomic_write_json(
    path: Path,
    payload: Any,
    *,
    mode: int = 0o644,
    fs: Optional[FileSystem] = None,
) -> None:
    atomic_write(path, dump_json(payload), mode=mode, fs=fs)


def read_json(path: Path, *, fs: Optional[FileSystem] = None) -> Optional[Any]:
    fs = fs or RealFileSystem()
    try:
        text = fs.read_text(path)
    except FileNotFoundError:
        return None
    return json.loads(text)


def _default_path_prefixes() -> list[str]:
    """
    Non-interactive launchers often have a minimal PATH that excludes
    Homebrew/MacPorts and user-local installs where runner CLIs live.
    """
    home = Path.home()
    candidates = [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        "/opt/local/bin",
        str(home / ".local" / "bin"),
    ]
    return [p for p in candidates if os.path.isdir(p)]


def augmented_path(path: Optional[str] = None) -> str:
    prefixes = _default_path_prefixes()
    existing = [p for p in (path or "").split(os.pathsep) if p]
    merged: list[str] = []
    for p in existing + prefixes:
        if p and p not in merged:
            merged.append(p)
    return os.pathsep.join(merged)


def resolve_executable(
    binary: str, *, env: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Resolve an executable path in a way that's resilient to minimal PATHs.
    Returns an absolute path if found, else None.
    """
    if not binary:
        return None
    if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
        candidate = Path(binary).expanduser()
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
        return None

    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    resolved = shutil.which(binary, path=path)
    if resolved:
        return resolved
    return shutil.which(binary, path=augmented_path(path))
