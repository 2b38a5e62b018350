"""On-disk store for repo and run metadata.

Layout under the data directory::

    repo_index.json
    repos/<repo_id>/repo.json
    repos/<repo_id>/.lock
    repos/<repo_id>/worktrees/<run_id>/
    repos/<repo_id>/runs/<run_id>/meta.json
    repos/<repo_id>/runs/<run_id>/logs/

Every JSON file is written through :func:`atomic_write_json` and carries a
``schema_version`` that is checked on read. Meta updates are plain
read-modify-write; the repo lock keeps a single writer per repository.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import AgencyError, ErrorCode
from .filesystem import FileSystem, RealFileSystem
from .ids import RunRef
from .utils import atomic_write_json, now_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"

REPO_INDEX_FILE = "repo_index.json"
REPO_RECORD_FILE = "repo.json"
META_FILE = "meta.json"
LOCK_FILE = ".lock"

DIR_MODE = 0o700
FILE_MODE = 0o644


class RunFlags(BaseModel):
    model_config = ConfigDict(extra="allow")

    setup_failed: bool = False
    tmux_failed: bool = False
    needs_attention: bool = False
    abandoned: bool = False


class SetupRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    command: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    timed_out: bool = False
    log_path: str = ""
    output_ok: Optional[bool] = None
    output_summary: Optional[str] = None


class ArchiveRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    archived_at: Optional[str] = None
    merged_at: Optional[str] = None


class RunMeta(BaseModel):
    # Unknown keys written by newer tools survive read-modify-write.
    model_config = ConfigDict(extra="allow")

    schema_version: str
    run_id: str
    repo_id: str
    title: str
    runner: str
    runner_cmd: str
    parent_branch: str
    branch: str
    worktree_path: str
    created_at: str

    tmux_session_name: Optional[str] = None
    flags: Optional[RunFlags] = None
    setup: Optional[SetupRecord] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    last_push_at: Optional[str] = None
    last_verify_at: Optional[str] = None
    archive: Optional[ArchiveRecord] = None

    def ensure_flags(self) -> RunFlags:
        if self.flags is None:
            self.flags = RunFlags()
        return self.flags


class RepoCapabilities(BaseModel):
    model_config = ConfigDict(extra="allow")

    github_origin: bool = False
    origin_host: str = ""
    gh_authed: bool = False


class RepoRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = SCHEMA_VERSION
    repo_key: str
    repo_id: str
    repo_root_last_seen: str
    agency_json_path: str
    origin_present: bool = False
    origin_url: str = ""
    origin_host: str = ""
    capabilities: RepoCapabilities = Field(default_factory=RepoCapabilities)
    created_at: str = ""
    updated_at: str = ""


class RepoIndexEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    repo_id: str
    paths: List[str] = Field(default_factory=list)
    last_seen_at: str = ""


class RepoIndex(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = SCHEMA_VERSION
    repos: Dict[str, RepoIndexEntry] = Field(default_factory=dict)


@dataclass
class RunRecord:
    repo_id: str
    run_id: str
    broken: bool
    meta: Optional[RunMeta]

    def to_ref(self) -> RunRef:
        return RunRef(repo_id=self.repo_id, run_id=self.run_id, broken=self.broken)


def _prune_none(model: BaseModel, payload: Dict[str, Any]) -> Dict[str, Any]:
    # Optional declared fields are omitted when unset; extra keys are kept as-is.
    for name in type(model).model_fields:
        if name not in payload:
            continue
        value = getattr(model, name)
        if value is None:
            payload.pop(name)
        elif isinstance(value, BaseModel) and isinstance(payload[name], dict):
            payload[name] = _prune_none(value, payload[name])
    return payload


def model_to_json(model: BaseModel) -> Dict[str, Any]:
    return _prune_none(model, model.model_dump(mode="json"))


def upsert_repo_record(
    existing: Optional[RepoRecord], desired: RepoRecord, *, now: Optional[str] = None
) -> RepoRecord:
    """Return ``desired`` with ``created_at`` kept from ``existing`` and a fresh ``updated_at``."""
    stamp = now or now_iso()
    created_at = existing.created_at if existing is not None and existing.created_at else stamp
    return desired.model_copy(
        update={
            "schema_version": SCHEMA_VERSION,
            "created_at": created_at,
            "updated_at": stamp,
        }
    )


def normalize_index_path(path: str) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def upsert_repo_index(
    index: RepoIndex,
    repo_key: str,
    repo_id: str,
    path: str,
    *,
    now: Optional[str] = None,
) -> RepoIndex:
    """Record ``path`` as the most recently seen clone of ``repo_key``."""
    stamp = now or now_iso()
    normalized = normalize_index_path(path)
    repos = {key: entry.model_copy(deep=True) for key, entry in index.repos.items()}
    entry = repos.get(repo_key)
    if entry is None:
        entry = RepoIndexEntry(repo_id=repo_id, paths=[normalized], last_seen_at=stamp)
    else:
        paths = [normalized] + [
            p for p in entry.paths if normalize_index_path(p) != normalized
        ]
        entry = entry.model_copy(
            update={"repo_id": repo_id, "paths": paths, "last_seen_at": stamp}
        )
    repos[repo_key] = entry
    return index.model_copy(update={"schema_version": SCHEMA_VERSION, "repos": repos})


class Store:
    def __init__(self, data_dir: Path, *, fs: Optional[FileSystem] = None) -> None:
        self.data_dir = data_dir
        self.fs: FileSystem = fs or RealFileSystem()

    # paths

    @property
    def repo_index_path(self) -> Path:
        return self.data_dir / REPO_INDEX_FILE

    @property
    def repos_dir(self) -> Path:
        return self.data_dir / "repos"

    def repo_dir(self, repo_id: str) -> Path:
        return self.repos_dir / repo_id

    def repo_record_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / REPO_RECORD_FILE

    def lock_path(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / LOCK_FILE

    def worktrees_dir(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / "worktrees"

    def worktree_path(self, repo_id: str, run_id: str) -> Path:
        return self.worktrees_dir(repo_id) / run_id

    def runs_dir(self, repo_id: str) -> Path:
        return self.repo_dir(repo_id) / "runs"

    def run_dir(self, repo_id: str, run_id: str) -> Path:
        return self.runs_dir(repo_id) / run_id

    def run_meta_path(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / META_FILE

    def run_logs_dir(self, repo_id: str, run_id: str) -> Path:
        return self.run_dir(repo_id, run_id) / "logs"

    # run directories and meta

    def ensure_run_dir(self, repo_id: str, run_id: str) -> Path:
        """Create the run directory exclusively, plus its ``logs/`` subdirectory.

        An existing run directory is a run id collision and raises
        ``E_RUN_DIR_EXISTS``; the caller must not reuse it.
        """
        run_dir = self.run_dir(repo_id, run_id)
        details = {"run_dir": str(run_dir)}
        try:
            self.fs.mkdirs(self.runs_dir(repo_id), DIR_MODE)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_CREATE_FAILED,
                f"failed to create runs directory: {exc}",
                details=details,
            ) from exc
        try:
            self.fs.mkdir_exclusive(run_dir, DIR_MODE)
        except FileExistsError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_EXISTS,
                f"run directory already exists: {run_dir}",
                details=details,
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_CREATE_FAILED,
                f"failed to create run directory: {exc}",
                details=details,
            ) from exc
        try:
            self.fs.mkdirs(self.run_logs_dir(repo_id, run_id), DIR_MODE)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.RUN_DIR_CREATE_FAILED,
                f"failed to create logs directory: {exc}",
                details=details,
            ) from exc
        return run_dir

    def write_meta(self, meta: RunMeta) -> Path:
        meta_path = self.run_meta_path(meta.repo_id, meta.run_id)
        try:
            atomic_write_json(meta_path, model_to_json(meta), mode=FILE_MODE, fs=self.fs)
        except OSError as exc:
            raise AgencyError(
                ErrorCode.META_WRITE_FAILED,
                f"failed to write meta.json: {exc}",
                details={"meta_path": str(meta_path)},
            ) from exc
        return meta_path

    def write_initial_meta(self, meta: RunMeta) -> Path:
        if not meta.schema_version:
            meta = meta.model_copy(update={"schema_version": SCHEMA_VERSION})
        return self.write_meta(meta)

    def read_meta(self, repo_id: str, run_id: str) -> RunMeta:
        meta_path = self.run_meta_path(repo_id, run_id)
        details = {"meta_path": str(meta_path)}
        try:
            text = self.fs.read_text(meta_path)
        except FileNotFoundError as exc:
            raise AgencyError(
                ErrorCode.RUN_NOT_FOUND,
                f"meta.json not found for run {run_id}",
                details=details,
            ) from exc
        except OSError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"failed to read meta.json: {exc}",
                details=details,
            ) from exc
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"invalid meta.json: {exc}",
                details=details,
            ) from exc
        _check_schema_version(payload, "meta.json", details)
        try:
            return RunMeta.model_validate(payload)
        except ValidationError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"invalid meta.json: {exc.error_count()} validation error(s)",
                details=details,
            ) from exc

    def update_meta(
        self, repo_id: str, run_id: str, mutate: Callable[[RunMeta], None]
    ) -> RunMeta:
        meta = self.read_meta(repo_id, run_id)
        mutate(meta)
        self.write_meta(meta)
        return meta

    # repo index and repo record

    def load_repo_index(self) -> RepoIndex:
        path = self.repo_index_path
        payload = self._load_json(path, "repo_index.json")
        if payload is None:
            return RepoIndex()
        details = {"path": str(path)}
        _check_schema_version(payload, "repo_index.json", details)
        try:
            return RepoIndex.model_validate(payload)
        except ValidationError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                "invalid repo_index.json",
                details=details,
            ) from exc

    def save_repo_index(self, index: RepoIndex) -> None:
        self.fs.mkdirs(self.data_dir, DIR_MODE)
        atomic_write_json(self.repo_index_path, model_to_json(index), mode=FILE_MODE, fs=self.fs)

    def load_repo_record(self, repo_id: str) -> Optional[RepoRecord]:
        path = self.repo_record_path(repo_id)
        payload = self._load_json(path, "repo.json")
        if payload is None:
            return None
        details = {"path": str(path)}
        _check_schema_version(payload, "repo.json", details)
        try:
            return RepoRecord.model_validate(payload)
        except ValidationError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                "invalid repo.json",
                details=details,
            ) from exc

    def save_repo_record(self, record: RepoRecord) -> None:
        self.fs.mkdirs(self.repo_dir(record.repo_id), DIR_MODE)
        atomic_write_json(
            self.repo_record_path(record.repo_id),
            model_to_json(record),
            mode=FILE_MODE,
            fs=self.fs,
        )

    def _load_json(self, path: Path, label: str) -> Optional[Any]:
        try:
            text = self.fs.read_text(path)
        except FileNotFoundError:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AgencyError(
                ErrorCode.STORE_CORRUPT,
                f"invalid {label}: {exc}",
                details={"path": str(path)},
            ) from exc

    # scanning

    def scan_runs_for_repo(self, repo_id: str) -> List[RunRecord]:
        records: List[RunRecord] = []
        for run_dir in self.fs.list_dirs(self.runs_dir(repo_id)):
            run_id = run_dir.name
            try:
                meta: Optional[RunMeta] = self.read_meta(repo_id, run_id)
            except AgencyError as exc:
                logger.debug("Broken run %s/%s: %s", repo_id, run_id, exc)
                meta = None
            records.append(
                RunRecord(repo_id=repo_id, run_id=run_id, broken=meta is None, meta=meta)
            )
        return records

    def scan_all_runs(self) -> List[RunRecord]:
        records: List[RunRecord] = []
        for repo_dir in self.fs.list_dirs(self.repos_dir):
            records.extend(self.scan_runs_for_repo(repo_dir.name))
        records.sort(key=lambda rec: (rec.run_id, rec.repo_id))
        return records


def _check_schema_version(payload: Any, label: str, details: Dict[str, str]) -> None:
    if not isinstance(payload, dict):
        raise AgencyError(
            ErrorCode.STORE_CORRUPT,
            f"invalid {label}: expected a JSON object",
            details=details,
        )
    version = payload.get("schema_version")
    if not version:
        raise AgencyError(
            ErrorCode.STORE_CORRUPT,
            f"invalid {label}: missing schema_version",
            details=details,
        )
    if version != SCHEMA_VERSION:
        raise AgencyError(
            ErrorCode.STORE_CORRUPT,
            f"invalid {label}: unsupported schema_version {version!r}",
            details=details,
        )
