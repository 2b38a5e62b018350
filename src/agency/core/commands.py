import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Optional, Protocol, Sequence

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30

EXIT_TIMEOUT = 124
EXIT_CANCELED = 125
EXIT_START_FAILED = -1

_POLL_INTERVAL_SECONDS = 0.1


class CommandTimeoutError(Exception):
    def __init__(self, args: Sequence[str], timeout_seconds: float):
        super().__init__(f"Command timed out after {timeout_seconds}s: {' '.join(args)}")
        self.args_list = list(args)
        self.timeout_seconds = timeout_seconds


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Runs an external tool and returns its output.

    A non-zero exit status is a normal result. Failing to execute at all
    (missing binary, timeout) raises.
    """

    def run(
        self,
        name: str,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
    ) -> CommandResult: ...


def _merged_env(overlay: Optional[Mapping[str, str]]) -> Optional[dict]:
    if not overlay:
        return None
    env = dict(os.environ)
    env.update(overlay)
    return env


class SubprocessRunner:
    def run(
        self,
        name: str,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_seconds: Optional[float] = DEFAULT_TIMEOUT_SECONDS,
    ) -> CommandResult:
        argv = [name, *args]
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=_merged_env(env),
                text=True,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(argv, timeout_seconds or 0) from exc
        return CommandResult(
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            exit_code=proc.returncode,
        )


@dataclass
class ScriptResult:
    exit_code: int
    duration_ms: int
    timed_out: bool = False
    canceled: bool = False
    start_error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.exit_code != 0


def _kill_process_group(proc: "subprocess.Popen[bytes]") -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        _logger.warning("Process %s did not exit after SIGKILL", proc.pid)


def run_script(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    output: IO[str],
    timeout_seconds: Optional[float],
    cancel_event: Optional[threading.Event] = None,
) -> ScriptResult:
    """Run a long script with stdin closed and stdout/stderr sent to ``output``.

    The script runs in its own process group so a timeout or cancel kills
    everything it spawned. A deadline yields ``timed_out`` with exit code 124.
    A set ``cancel_event`` yields ``canceled`` with exit code 125. A
    KeyboardInterrupt kills the child and propagates.
    """
    start = time.monotonic()
    full_env = dict(os.environ)
    full_env.update(env)
    output.flush()
    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=str(cwd),
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        return ScriptResult(
            exit_code=EXIT_START_FAILED,
            duration_ms=int((time.monotonic() - start) * 1000),
            start_error=str(exc),
        )

    deadline = start + timeout_seconds if timeout_seconds else None
    try:
        while True:
            wait_for = _POLL_INTERVAL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    _kill_process_group(proc)
                    return ScriptResult(
                        exit_code=EXIT_TIMEOUT,
                        duration_ms=int((time.monotonic() - start) * 1000),
                        timed_out=True,
                    )
                wait_for = min(wait_for, remaining)
            if cancel_event is not None and cancel_event.is_set():
                _kill_process_group(proc)
                return ScriptResult(
                    exit_code=EXIT_CANCELED,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    canceled=True,
                )
            try:
                returncode = proc.wait(timeout=wait_for)
            except subprocess.TimeoutExpired:
                continue
            return ScriptResult(
                exit_code=returncode,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
    except KeyboardInterrupt:
        _kill_process_group(proc)
        raise
