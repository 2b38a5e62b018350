"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `agency` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@dataclass
class RecordedCall:
    name: str
    args: Tuple[str, ...]
    cwd: Optional[Path]


@dataclass
class RecordingRunner:
    """CommandRunner stub.

    Responses are keyed by (binary, leading args). The longest matching prefix
    wins; unmatched calls succeed with empty output. A response may be an
    exception instance, which is raised.
    """

    responses: Dict[Tuple[str, ...], object] = field(default_factory=dict)
    calls: List[RecordedCall] = field(default_factory=list)

    def respond(
        self,
        name: str,
        *args: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        raises: Optional[BaseException] = None,
    ) -> None:
        from agency.core.commands import CommandResult

        key = (name, *args)
        self.responses[key] = raises or CommandResult(
            stdout=stdout, stderr=stderr, exit_code=exit_code
        )

    def run(self, name, args, *, cwd=None, env=None, timeout_seconds=None):
        from agency.core.commands import CommandResult

        argv = (name, *args)
        self.calls.append(RecordedCall(name=name, args=tuple(args), cwd=cwd))
        best: Union[object, None] = None
        best_len = -1
        for key, response in self.responses.items():
            if argv[: len(key)] == key and len(key) > best_len:
                best, best_len = response, len(key)
        if isinstance(best, BaseException):
            raise best
        if best is None:
            return CommandResult(stdout="", stderr="", exit_code=0)
        return best

    def invoked(self, name: str, *args: str) -> bool:
        prefix = tuple(args)
        return any(
            call.name == name and call.args[: len(prefix)] == prefix for call in self.calls
        )

    def commands(self) -> List[Sequence[str]]:
        return [(call.name, *call.args) for call in self.calls]


@pytest.fixture()
def recording_runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture()
def settings(tmp_path: Path, data_dir: Path):
    from agency.core.paths import AgencyDirs, AgencySettings

    cwd = tmp_path / "repo"
    cwd.mkdir(exist_ok=True)
    return AgencySettings(
        cwd=cwd,
        dirs=AgencyDirs(
            data_dir=data_dir,
            config_dir=tmp_path / "config",
            cache_dir=tmp_path / "cache",
        ),
        setup_timeout_seconds=30,
    )
