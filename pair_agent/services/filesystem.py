"""
Filesystem collaborator - the only way the core touches files

Paths are repo-relative; anything resolving outside the root is refused.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

from pair_agent.errors import FileSystemError


class FileSystem(Protocol):
    """Read/write/delete contract used by the assembler, the matcher and the gate"""

    def read(self, path: str) -> str:
        """Return file text; raises FileNotFoundError or FileSystemError"""
        ...

    def write(self, path: str, content: str) -> None:
        """Write text, creating parent directories; raises FileSystemError"""
        ...

    def delete(self, path: str) -> None:
        """Remove a file; raises FileSystemError"""
        ...

    def exists(self, path: str) -> bool:
        ...


class LocalFileSystem:
    """FileSystem rooted at a project directory"""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _safe_abs(self, path: str) -> Path:
        """Resolve a repo-relative path and reject escapes outside root"""
        candidate = Path(os.path.expanduser(path))
        abs_path = (candidate if candidate.is_absolute() else self.root / candidate).resolve()
        try:
            abs_path.relative_to(self.root)
        except ValueError:
            raise FileSystemError(path, "path escapes project root")
        return abs_path

    def read(self, path: str) -> str:
        abs_path = self._safe_abs(path)
        if not abs_path.is_file():
            raise FileNotFoundError(path)
        try:
            return abs_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise FileSystemError(path, "not a UTF-8 text file")
        except OSError as e:
            raise FileSystemError(path, str(e))

    def write(self, path: str, content: str) -> None:
        abs_path = self._safe_abs(path)
        try:
            abs_path.parent.mkdir(parents=True, exist_ok=True)
            with abs_path.open("w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise FileSystemError(path, str(e))

    def delete(self, path: str) -> None:
        abs_path = self._safe_abs(path)
        if not abs_path.is_file():
            raise FileSystemError(path, "no such file")
        try:
            abs_path.unlink()
        except OSError as e:
            raise FileSystemError(path, str(e))

    def exists(self, path: str) -> bool:
        try:
            return self._safe_abs(path).is_file()
        except FileSystemError:
            return False

    def list_files(self, subdir: str = ".", limit: int = 500) -> list[str]:
        """Walk the tree below `subdir`, skipping hidden and build directories"""
        base = self._safe_abs(subdir)
        skip = {"node_modules", "target", "__pycache__", "dist", "build", ".venv", "venv"}
        paths: list[str] = []
        for current, dirs, files in os.walk(base):
            dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in skip)
            for name in sorted(files):
                if name.startswith("."):
                    continue
                paths.append(Path(current, name).relative_to(self.root).as_posix())
                if len(paths) >= limit:
                    return paths
        return paths
