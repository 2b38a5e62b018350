from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from agency.core.filesystem import RealFileSystem
from agency.core.utils import TEMP_PREFIX, atomic_write, atomic_write_json, read_json


class FailingRenameFileSystem(RealFileSystem):
    def rename(self, src: Path, dst: Path) -> None:
        raise OSError("rename refused")


def test_atomic_write_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "file.json"
    target.write_text("old", encoding="utf-8")

    atomic_write(target, "new", mode=0o600)

    assert target.read_text(encoding="utf-8") == "new"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert not [p for p in tmp_path.iterdir() if p.name.startswith(TEMP_PREFIX)]


def test_failed_rename_keeps_original_and_removes_temp(tmp_path: Path) -> None:
    target = tmp_path / "meta.json"
    target.write_text('{"before": true}\n', encoding="utf-8")

    with pytest.raises(OSError):
        atomic_write(target, '{"after": true}\n', fs=FailingRenameFileSystem())

    assert target.read_text(encoding="utf-8") == '{"before": true}\n'
    assert sorted(p.name for p in tmp_path.iterdir()) == ["meta.json"]


def test_atomic_write_json_is_pretty_with_trailing_newline(tmp_path: Path) -> None:
    target = tmp_path / "out.json"
    atomic_write_json(target, {"b": 1, "a": [1, 2]})

    text = target.read_text(encoding="utf-8")
    assert text.endswith("}\n")
    assert "\n  " in text
    assert json.loads(text) == {"b": 1, "a": [1, 2]}


def test_read_json_missing_returns_none(tmp_path: Path) -> None:
    assert read_json(tmp_path / "missing.json") is None
