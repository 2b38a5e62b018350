from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from agency.core.commands import CommandTimeoutError, SubprocessRunner
from agency.core.errors import AgencyError, ErrorCode
from agency.core.git import Git
from agency.core.tmux import Tmux


def test_origin_url_reads_configured_value(recording_runner, tmp_path: Path) -> None:
    recording_runner.respond(
        "git", "config", "--get", "remote.origin.url", stdout="git@github.com:o/r.git\n"
    )
    assert Git(recording_runner).origin_url(tmp_path) == "git@github.com:o/r.git"
    assert recording_runner.commands() == [("git", "config", "--get", "remote.origin.url")]


def test_origin_url_missing_remote(recording_runner, tmp_path: Path) -> None:
    recording_runner.respond("git", "config", "--get", "remote.origin.url", exit_code=1)
    assert Git(recording_runner).origin_url(tmp_path) == ""


@pytest.mark.skipif(shutil.which("git") is None, reason="git not available")
def test_origin_url_ignores_insteadof_rewrites(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    for args in (
        ["init", "-q"],
        ["remote", "add", "origin", "gh:owner/repo"],
        ["config", "url.git@github.com:.insteadOf", "gh:"],
    ):
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)

    assert Git(SubprocessRunner()).origin_url(repo) == "gh:owner/repo"


def test_git_timeout_becomes_domain_error(recording_runner, tmp_path: Path) -> None:
    recording_runner.respond(
        "git", raises=CommandTimeoutError(["git", "rev-parse"], 30)
    )
    with pytest.raises(AgencyError) as excinfo:
        Git(recording_runner).repo_root(tmp_path)
    assert excinfo.value.code == ErrorCode.INTERNAL
    assert "timed out" in excinfo.value.message
    assert isinstance(excinfo.value.cause, CommandTimeoutError)


def test_git_permission_error_becomes_domain_error(recording_runner, tmp_path: Path) -> None:
    recording_runner.respond("git", raises=PermissionError("denied"))
    with pytest.raises(AgencyError) as excinfo:
        Git(recording_runner).has_commits(tmp_path)
    assert excinfo.value.code == ErrorCode.INTERNAL


def test_tmux_timeout_becomes_domain_error(recording_runner) -> None:
    recording_runner.respond("tmux", raises=CommandTimeoutError(["tmux", "ls"], 15))
    with pytest.raises(AgencyError) as excinfo:
        Tmux(recording_runner).list_sessions()
    assert excinfo.value.code == ErrorCode.TMUX_FAILED
