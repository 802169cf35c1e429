"""
Storage abstraction for stepflow.

The engine never touches the filesystem directly: state records, status
documents and rendered templates all go through a Storage. LocalStorage
is the filesystem implementation; tests and embedders can supply their own.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """Read/write/list/mkdir contract consumed by the engine."""

    def read_text(self, path: str | Path) -> str: ...

    def write_text(self, path: str | Path, content: str) -> None: ...

    def exists(self, path: str | Path) -> bool: ...

    def list(self, path: str | Path, pattern: str = "*") -> list[str]: ...

    def mkdir(self, path: str | Path) -> None: ...

    def delete(self, path: str | Path) -> bool: ...


class LocalStorage:
    """Filesystem-backed Storage.

    Relative paths are resolved against root. Writes go to a temp file in
    the target directory and are moved into place, so a crash mid-write
    leaves the previous content intact.
    """

    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root else Path.cwd()

    def _resolve(self, path: str | Path) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.root / path
        return path

    def read_text(self, path: str | Path) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write_text(self, path: str | Path, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def exists(self, path: str | Path) -> bool:
        return self._resolve(path).exists()

    def list(self, path: str | Path, pattern: str = "*") -> list[str]:
        directory = self._resolve(path)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.glob(pattern))

    def mkdir(self, path: str | Path) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def delete(self, path: str | Path) -> bool:
        """Delete a file. Returns False if it did not exist."""
        target = self._resolve(path)
        try:
            target.unlink()
            return True
        except FileNotFoundError:
            return False
