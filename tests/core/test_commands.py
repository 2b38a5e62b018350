from __future__ import annotations

import shutil
import threading
from pathlib import Path

import pytest

from agency.core.commands import (
    EXIT_CANCELED,
    EXIT_START_FAILED,
    EXIT_TIMEOUT,
    SubprocessRunner,
    run_script,
)

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")


@needs_sh
def test_subprocess_runner_captures_output(tmp_path: Path) -> None:
    result = SubprocessRunner().run(
        "sh", ["-c", "echo out; echo err >&2; exit 3"], cwd=tmp_path
    )
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 3
    assert not result.ok


def test_subprocess_runner_missing_binary_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        SubprocessRunner().run("agency-no-such-binary", [], cwd=tmp_path)


@needs_sh
def test_run_script_writes_output_and_env(tmp_path: Path) -> None:
    log_path = tmp_path / "setup.log"
    with open(log_path, "w", encoding="utf-8") as output:
        output.write("# header\n")
        result = run_script(
            ["sh", "-c", 'echo "run=$AGENCY_RUN_ID"; pwd; echo oops >&2'],
            cwd=tmp_path,
            env={"AGENCY_RUN_ID": "abc"},
            output=output,
            timeout_seconds=10,
        )
    assert result.exit_code == 0
    assert not result.failed
    assert result.duration_ms >= 0
    assert log_path.read_text(encoding="utf-8").splitlines() == [
        "# header",
        "run=abc",
        str(tmp_path),
        "oops",
    ]


@needs_sh
def test_run_script_stdin_is_closed(tmp_path: Path) -> None:
    with open(tmp_path / "log", "w", encoding="utf-8") as output:
        result = run_script(
            ["sh", "-c", "read line; exit 7"],
            cwd=tmp_path,
            env={},
            output=output,
            timeout_seconds=10,
        )
    # read hits EOF immediately instead of blocking on the terminal.
    assert result.exit_code == 7


@needs_sh
def test_run_script_timeout(tmp_path: Path) -> None:
    with open(tmp_path / "log", "w", encoding="utf-8") as output:
        result = run_script(
            ["sh", "-c", "sleep 30"],
            cwd=tmp_path,
            env={},
            output=output,
            timeout_seconds=0.3,
        )
    assert result.timed_out
    assert result.exit_code == EXIT_TIMEOUT
    assert result.failed
    assert result.duration_ms < 10_000


@needs_sh
def test_run_script_cancel(tmp_path: Path) -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        with open(tmp_path / "log", "w", encoding="utf-8") as output:
            result = run_script(
                ["sh", "-c", "sleep 30"],
                cwd=tmp_path,
                env={},
                output=output,
                timeout_seconds=20,
                cancel_event=cancel,
            )
    finally:
        timer.cancel()
    assert result.canceled
    assert not result.timed_out
    assert result.exit_code == EXIT_CANCELED


def test_run_script_start_failure(tmp_path: Path) -> None:
    with open(tmp_path / "log", "w", encoding="utf-8") as output:
        result = run_script(
            ["agency-no-such-binary"],
            cwd=tmp_path,
            env={},
            output=output,
            timeout_seconds=5,
        )
    assert result.exit_code == EXIT_START_FAILED
    assert result.start_error
    assert result.failed
