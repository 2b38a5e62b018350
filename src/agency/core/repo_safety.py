import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .config import config_path
from .errors import AgencyError, ErrorCode
from .git import Git
from .identity import RepoIdentity, derive_repo_identity
from .logging_utils import log_event
from .store import (
    RepoCapabilities,
    RepoRecord,
    Store,
    upsert_repo_index,
    upsert_repo_record,
)
from .utils import now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoContext:
    repo_root: Path
    repo_id: str
    repo_key: str
    origin_url: str
    data_dir: Path


def resolve_repo_identity(git: Git, cwd: Path) -> Tuple[Path, RepoIdentity]:
    repo_root = git.repo_root(cwd)
    origin_url = git.origin_url(repo_root)
    return repo_root, derive_repo_identity(str(repo_root), origin_url)


def persist_repo_identity(store: Store, repo_root: Path, identity: RepoIdentity) -> None:
    """Upsert ``repo.json`` and the repo index entry for this clone.

    These writes happen before any safety gate and are kept even when a gate
    later fails.
    """
    stamp = now_iso()
    try:
        existing = store.load_repo_record(identity.repo_id)
    except AgencyError as exc:
        raise AgencyError(ErrorCode.PERSIST_FAILED, "failed to load repo.json") from exc

    agency_json_path = str(config_path(repo_root))
    gh_authed = False
    if existing is not None:
        agency_json_path = existing.agency_json_path or agency_json_path
        gh_authed = existing.capabilities.gh_authed

    desired = RepoRecord(
        repo_key=identity.repo_key,
        repo_id=identity.repo_id,
        repo_root_last_seen=str(repo_root),
        agency_json_path=agency_json_path,
        origin_present=identity.origin.present,
        origin_url=identity.origin.url,
        origin_host=identity.origin.host,
        capabilities=RepoCapabilities(
            github_origin=identity.github_flow_available,
            origin_host=identity.origin.host,
            gh_authed=gh_authed,
        ),
    )
    record = upsert_repo_record(existing, desired, now=stamp)
    try:
        store.save_repo_record(record)
        index = upsert_repo_index(
            store.load_repo_index(),
            identity.repo_key,
            identity.repo_id,
            str(repo_root),
            now=stamp,
        )
        store.save_repo_index(index)
    except (OSError, AgencyError) as exc:
        raise AgencyError(
            ErrorCode.PERSIST_FAILED, f"failed to persist repo identity: {exc}"
        ) from exc
    log_event(
        logger,
        logging.DEBUG,
        "repo.persisted",
        repo_id=identity.repo_id,
        repo_key=identity.repo_key,
    )


def require_parent_branch(git: Git, repo_root: Path, branch: str) -> None:
    if not git.branch_exists(repo_root, branch):
        raise AgencyError(
            ErrorCode.PARENT_BRANCH_NOT_FOUND,
            f"local branch '{branch}' not found; checkout or fetch the parent locally",
            details={"branch": branch},
        )


def check_repo_safe(
    git: Git,
    store: Store,
    cwd: Path,
    *,
    parent_branch: Optional[str] = None,
) -> RepoContext:
    """Resolve the repo, persist its identity, then apply the run gates.

    Gates: at least one commit, clean working tree, and (when known) an
    existing local parent branch.
    """
    repo_root, identity = resolve_repo_identity(git, cwd)
    persist_repo_identity(store, repo_root, identity)

    if not git.has_commits(repo_root):
        raise AgencyError(
            ErrorCode.EMPTY_REPO,
            "repository has no commits; create an initial commit first",
        )
    if not git.is_clean(repo_root):
        raise AgencyError(
            ErrorCode.PARENT_DIRTY,
            "working tree has uncommitted changes; commit or stash them first",
        )
    if parent_branch:
        require_parent_branch(git, repo_root, parent_branch)

    return RepoContext(
        repo_root=repo_root,
        repo_id=identity.repo_id,
        repo_key=identity.repo_key,
        origin_url=identity.origin.url,
        data_dir=store.data_dir,
    )
