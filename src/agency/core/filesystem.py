from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import IO, List, Protocol, Tuple


class FileSystem(Protocol):
    """Filesystem operations the store and run service depend on.

    Tests swap in subclasses of :class:`RealFileSystem` that fail specific
    calls (for example ``rename``) to exercise crash-safety paths.
    """

    def mkdirs(self, path: Path, mode: int = 0o755) -> None: ...

    def mkdir_exclusive(self, path: Path, mode: int = 0o700) -> None: ...

    def read_text(self, path: Path) -> str: ...

    def write_text(self, path: Path, content: str) -> None: ...

    def stat(self, path: Path) -> os.stat_result: ...

    def rename(self, src: Path, dst: Path) -> None: ...

    def remove(self, path: Path) -> None: ...

    def chmod(self, path: Path, mode: int) -> None: ...

    def list_dirs(self, path: Path) -> List[Path]: ...

    def create_temp(self, directory: Path, prefix: str) -> Tuple[Path, IO[str]]: ...


class RealFileSystem:
    def mkdirs(self, path: Path, mode: int = 0o755) -> None:
        path.mkdir(mode=mode, parents=True, exist_ok=True)

    def mkdir_exclusive(self, path: Path, mode: int = 0o700) -> None:
        # Raises FileExistsError when the directory is already there.
        path.mkdir(mode=mode)

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_text(self, path: Path, content: str) -> None:
        path.write_text(content, encoding="utf-8")

    def stat(self, path: Path) -> os.stat_result:
        return path.stat()

    def rename(self, src: Path, dst: Path) -> None:
        os.replace(src, dst)

    def remove(self, path: Path) -> None:
        path.unlink()

    def chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)

    def list_dirs(self, path: Path) -> List[Path]:
        try:
            entries = list(path.iterdir())
        except FileNotFoundError:
            return []
        return sorted(entry for entry in entries if entry.is_dir())

    def create_temp(self, directory: Path, prefix: str) -> Tuple[Path, IO[str]]:
        fd, name = tempfile.mkstemp(prefix=prefix, dir=str(directory))
        return Path(name), os.fdopen(fd, "w", encoding="utf-8")
