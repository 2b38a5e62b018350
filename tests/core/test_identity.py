import hashlib
import re

import pytest

from agency.core.identity import (
    derive_repo_identity,
    parse_github_owner_repo,
    parse_origin_host,
    repo_id_for_key,
    sha256_hex,
)


def test_sha256_hex_known_vector() -> None:
    assert (
        sha256_hex("test")
        == "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"
    )


@pytest.mark.parametrize(
    "key",
    ["github:owner/repo", "path:abc", "", "github:Some.Org/my_repo-2"],
)
def test_repo_id_is_truncated_sha256_of_key(key: str) -> None:
    repo_id = repo_id_for_key(key)
    assert repo_id == hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    assert re.fullmatch(r"[0-9a-f]{16}", repo_id)
    assert repo_id_for_key(key) == repo_id


@pytest.mark.parametrize(
    "url,expected",
    [
        ("git@github.com:owner/repo.git", ("owner", "repo")),
        ("git@github.com:owner/repo", ("owner", "repo")),
        ("https://github.com/owner/repo.git", ("owner", "repo")),
        ("https://github.com/owner/repo", ("owner", "repo")),
        ("  https://github.com/Org.Name/my_repo-1.git\n", ("Org.Name", "my_repo-1")),
        ("ssh://git@github.com/owner/repo.git", None),
        ("git@gitlab.com:owner/repo.git", None),
        ("https://github.example.com/owner/repo.git", None),
        ("https://github.com/owner/repo/extra", None),
        ("https://github.com/owner", None),
        ("git@github.com:own er/repo.git", None),
        ("https://github.com/own\n/repo", None),
        ("git@github.com:owner/repo\n.git", None),
        ("", None),
    ],
)
def test_parse_github_owner_repo(url: str, expected) -> None:
    assert parse_github_owner_repo(url) == expected


@pytest.mark.parametrize(
    "url,host",
    [
        ("git@github.com:owner/repo.git", "github.com"),
        ("git@gitlab.example.org:team/repo.git", "gitlab.example.org"),
        ("https://github.com/owner/repo.git", "github.com"),
        ("https://git.example.com:8443/owner/repo.git", "git.example.com"),
        ("ssh://git@github.com/owner/repo.git", ""),
        ("git@localhost:owner/repo.git", ""),
        ("file:///tmp/repo", ""),
        ("", ""),
    ],
)
def test_parse_origin_host(url: str, host: str) -> None:
    assert parse_origin_host(url) == host


def test_github_origin_yields_github_key() -> None:
    identity = derive_repo_identity("/tmp/anything", "git@github.com:acme/widgets.git")
    assert identity.repo_key == "github:acme/widgets"
    assert identity.repo_id == repo_id_for_key("github:acme/widgets")
    assert identity.github_flow_available is True
    assert identity.origin.present is True
    assert identity.origin.host == "github.com"


def test_non_github_origin_falls_back_to_path_key() -> None:
    identity = derive_repo_identity("/work/repo", "git@gitlab.com:acme/widgets.git")
    assert identity.repo_key == f"path:{sha256_hex('/work/repo')}"
    assert len(identity.repo_key) == len("path:") + 64
    assert identity.github_flow_available is False
    assert identity.origin.host == "gitlab.com"


def test_distinct_paths_yield_distinct_keys() -> None:
    first = derive_repo_identity("/work/a", "")
    second = derive_repo_identity("/work/b", "")
    assert first.repo_key != second.repo_key
    assert first.repo_id != second.repo_id
    assert first.origin.present is False
