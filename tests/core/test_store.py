from __future__ import annotations

import json
from pathlib import Path

import pytest

from agency.core.errors import AgencyError, ErrorCode
from agency.core.filesystem import RealFileSystem
from agency.core.store import (
    SCHEMA_VERSION,
    RepoIndex,
    RepoRecord,
    RunMeta,
    Store,
    upsert_repo_index,
    upsert_repo_record,
)

REPO_ID = "0123456789abcdef"
RUN_ID = "20260110120000-a3f2"


def _meta(run_id: str = RUN_ID) -> RunMeta:
    return RunMeta(
        schema_version=SCHEMA_VERSION,
        run_id=run_id,
        repo_id=REPO_ID,
        title="Add feature",
        runner="claude",
        runner_cmd="claude",
        parent_branch="main",
        branch="agency/add-feature-a3f2",
        worktree_path="/tmp/wt",
        created_at="2026-01-10T12:00:00Z",
    )


class FailingMkdirFileSystem(RealFileSystem):
    def mkdir_exclusive(self, path: Path, mode: int = 0o700) -> None:
        raise PermissionError("denied")


def test_ensure_run_dir_creates_logs(data_dir: Path) -> None:
    store = Store(data_dir)
    run_dir = store.ensure_run_dir(REPO_ID, RUN_ID)

    assert run_dir == data_dir / "repos" / REPO_ID / "runs" / RUN_ID
    assert (run_dir / "logs").is_dir()


def test_ensure_run_dir_collision_is_distinct_error(data_dir: Path) -> None:
    store = Store(data_dir)
    store.ensure_run_dir(REPO_ID, RUN_ID)

    with pytest.raises(AgencyError) as excinfo:
        store.ensure_run_dir(REPO_ID, RUN_ID)
    assert excinfo.value.code == ErrorCode.RUN_DIR_EXISTS
    assert excinfo.value.details["run_dir"].endswith(RUN_ID)


def test_ensure_run_dir_other_failure(data_dir: Path) -> None:
    store = Store(data_dir, fs=FailingMkdirFileSystem())
    with pytest.raises(AgencyError) as excinfo:
        store.ensure_run_dir(REPO_ID, RUN_ID)
    assert excinfo.value.code == ErrorCode.RUN_DIR_CREATE_FAILED


def test_initial_meta_omits_unset_optional_fields(data_dir: Path) -> None:
    store = Store(data_dir)
    store.ensure_run_dir(REPO_ID, RUN_ID)
    path = store.write_initial_meta(_meta())

    text = path.read_text(encoding="utf-8")
    payload = json.loads(text)
    assert text.endswith("\n")
    assert payload["schema_version"] == "1.0"
    assert payload["run_id"] == RUN_ID
    assert "tmux_session_name" not in payload
    assert "flags" not in payload
    assert "setup" not in payload


def test_read_meta_missing_and_corrupt(data_dir: Path) -> None:
    store = Store(data_dir)
    with pytest.raises(AgencyError) as missing:
        store.read_meta(REPO_ID, RUN_ID)
    assert missing.value.code == ErrorCode.RUN_NOT_FOUND

    store.ensure_run_dir(REPO_ID, RUN_ID)
    store.run_meta_path(REPO_ID, RUN_ID).write_text("{not json", encoding="utf-8")
    with pytest.raises(AgencyError) as corrupt:
        store.read_meta(REPO_ID, RUN_ID)
    assert corrupt.value.code == ErrorCode.STORE_CORRUPT


@pytest.mark.parametrize("version", [None, "2.0"])
def test_read_meta_rejects_bad_schema_version(data_dir: Path, version) -> None:
    store = Store(data_dir)
    store.ensure_run_dir(REPO_ID, RUN_ID)
    payload = _meta().model_dump()
    if version is None:
        payload.pop("schema_version")
    else:
        payload["schema_version"] = version
    store.run_meta_path(REPO_ID, RUN_ID).write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(AgencyError) as excinfo:
        store.read_meta(REPO_ID, RUN_ID)
    assert excinfo.value.code == ErrorCode.STORE_CORRUPT


def test_update_meta_preserves_unknown_fields(data_dir: Path) -> None:
    store = Store(data_dir)
    store.ensure_run_dir(REPO_ID, RUN_ID)
    payload = _meta().model_dump(exclude_none=True)
    payload["future_field"] = {"nested": [1, 2]}
    payload["flags"] = {"needs_attention": True, "future_flag": "x"}
    store.run_meta_path(REPO_ID, RUN_ID).write_text(json.dumps(payload), encoding="utf-8")

    def mutate(meta: RunMeta) -> None:
        meta.ensure_flags().setup_failed = True
        meta.tmux_session_name = "agency_x"

    store.update_meta(REPO_ID, RUN_ID, mutate)

    saved = json.loads(store.run_meta_path(REPO_ID, RUN_ID).read_text(encoding="utf-8"))
    assert saved["future_field"] == {"nested": [1, 2]}
    assert saved["flags"]["future_flag"] == "x"
    assert saved["flags"]["needs_attention"] is True
    assert saved["flags"]["setup_failed"] is True
    assert saved["tmux_session_name"] == "agency_x"


def test_upsert_repo_record_keeps_created_at() -> None:
    desired = RepoRecord(
        repo_key="github:o/r",
        repo_id=REPO_ID,
        repo_root_last_seen="/work/r",
        agency_json_path="/work/r/agency.json",
    )
    first = upsert_repo_record(None, desired, now="2026-01-01T00:00:00Z")
    second = upsert_repo_record(first, desired, now="2026-02-01T00:00:00Z")

    assert first.created_at == "2026-01-01T00:00:00Z"
    assert second.created_at == "2026-01-01T00:00:00Z"
    assert second.updated_at == "2026-02-01T00:00:00Z"


def test_upsert_repo_index_moves_path_to_front() -> None:
    index = RepoIndex()
    index = upsert_repo_index(index, "github:o/r", REPO_ID, "/work/a", now="t1")
    index = upsert_repo_index(index, "github:o/r", REPO_ID, "/work/b", now="t2")
    index = upsert_repo_index(index, "github:o/r", REPO_ID, "/work/a/", now="t3")

    entry = index.repos["github:o/r"]
    assert entry.paths == ["/work/a", "/work/b"]
    assert entry.last_seen_at == "t3"


def test_repo_index_round_trip_and_missing(data_dir: Path) -> None:
    store = Store(data_dir)
    assert store.load_repo_index().repos == {}

    index = upsert_repo_index(RepoIndex(), "path:abc", REPO_ID, "/work/a", now="t1")
    store.save_repo_index(index)

    loaded = store.load_repo_index()
    assert loaded.repos["path:abc"].repo_id == REPO_ID


def test_repo_index_without_schema_is_corrupt(data_dir: Path) -> None:
    (data_dir / "repo_index.json").write_text('{"repos": {}}', encoding="utf-8")
    with pytest.raises(AgencyError) as excinfo:
        Store(data_dir).load_repo_index()
    assert excinfo.value.code == ErrorCode.STORE_CORRUPT


def test_scan_marks_broken_runs(data_dir: Path) -> None:
    store = Store(data_dir)
    store.ensure_run_dir(REPO_ID, RUN_ID)
    store.write_initial_meta(_meta())
    store.ensure_run_dir(REPO_ID, "20260110120000-dead")
    store.ensure_run_dir("fedcba9876543210", "20260109000000-0001")

    records = store.scan_all_runs()

    assert [(r.run_id, r.broken) for r in records] == [
        ("20260109000000-0001", True),
        ("20260110120000-a3f2", False),
        ("20260110120000-dead", True),
    ]
    assert [r.run_id for r in store.scan_runs_for_repo(REPO_ID)] == [
        "20260110120000-a3f2",
        "20260110120000-dead",
    ]
    assert records[1].to_ref().repo_id == REPO_ID


def test_upsert_repo_index_collapses_dot_segments() -> None:
    index = upsert_repo_index(RepoIndex(), "github:o/r", REPO_ID, "/work/x/repo", now="t1")
    index = upsert_repo_index(index, "github:o/r", REPO_ID, "/work/x/../x/./repo", now="t2")

    assert index.repos["github:o/r"].paths == ["/work/x/repo"]
