"""Repository identity.

The repo key is ``github:<owner>/<repo>`` for github.com remotes and
``path:<sha256(abs_repo_root)>`` otherwise. The repo id is the first 16 hex
characters of ``sha256(repo_key)``. Every on-disk record is namespaced by the
repo id, so these rules must never change.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional, Tuple

REPO_ID_LEN = 16

_NAME_RE = re.compile(r"[A-Za-z0-9_.\-]+")
_GITHUB_HTTPS_PREFIX = "https://github.com/"


@dataclass(frozen=True)
class OriginInfo:
    present: bool
    url: str
    host: str


@dataclass(frozen=True)
class RepoIdentity:
    repo_key: str
    repo_id: str
    github_flow_available: bool
    origin: OriginInfo


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def repo_id_for_key(repo_key: str) -> str:
    return sha256_hex(repo_key)[:REPO_ID_LEN]


def _parse_owner_repo(path: str) -> Optional[Tuple[str, str]]:
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = path.split("/")
    if len(parts) != 2:
        return None
    owner, repo = parts
    if not owner or not repo:
        return None
    if not _NAME_RE.fullmatch(owner) or not _NAME_RE.fullmatch(repo):
        return None
    return owner, repo


def _split_scp_like(raw: str) -> Optional[Tuple[str, str]]:
    if "@" not in raw or ":" not in raw or "://" in raw:
        return None
    at_idx = raw.index("@")
    colon_idx = raw.index(":")
    if colon_idx <= at_idx:
        return None
    return raw[at_idx + 1 : colon_idx], raw[colon_idx + 1 :]


def parse_github_owner_repo(raw: str) -> Optional[Tuple[str, str]]:
    """
    Returns (owner, repo) for a github.com remote, else None.
    Accepts:
      - "git@github.com:owner/repo.git"
      - "https://github.com/owner/repo.git"
    ssh:// URLs and other hosts (including GitHub Enterprise) are rejected.
    """
    raw = (raw or "").strip()
    if not raw:
        return None
    scp = _split_scp_like(raw)
    if scp is not None:
        host, path = scp
        if host != "github.com":
            return None
        return _parse_owner_repo(path)
    if raw.startswith(_GITHUB_HTTPS_PREFIX):
        return _parse_owner_repo(raw[len(_GITHUB_HTTPS_PREFIX) :])
    return None


def _is_valid_host(host: str) -> bool:
    return bool(host) and "." in host and not host.startswith(".") and not host.endswith(".")


def parse_origin_host(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    scp = _split_scp_like(raw)
    if scp is not None:
        host = scp[0]
        return host if _is_valid_host(host) else ""
    if "@" in raw and ":" in raw and "://" not in raw:
        return ""
    if raw.startswith("https://"):
        rest = raw[len("https://") :]
        slash_idx = rest.find("/")
        if slash_idx <= 0:
            return ""
        host = rest[:slash_idx].split(":", 1)[0]
        return host if _is_valid_host(host) else ""
    return ""


def derive_repo_identity(abs_repo_root: str, origin_url: str) -> RepoIdentity:
    origin_url = origin_url or ""
    origin = OriginInfo(
        present=bool(origin_url),
        url=origin_url,
        host=parse_origin_host(origin_url),
    )
    parsed = parse_github_owner_repo(origin_url)
    if parsed is not None:
        owner, repo = parsed
        repo_key = f"github:{owner}/{repo}"
        return RepoIdentity(
            repo_key=repo_key,
            repo_id=repo_id_for_key(repo_key),
            github_flow_available=True,
            origin=origin,
        )
    repo_key = f"path:{sha256_hex(abs_repo_root)}"
    return RepoIdentity(
        repo_key=repo_key,
        repo_id=repo_id_for_key(repo_key),
        github_flow_available=False,
        origin=origin,
    )
