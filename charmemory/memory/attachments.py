"""Per-character attachment store backing the memory documents."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from charmemory.utils.helpers import atomic_write_text, ensure_dir, safe_filename


class AttachmentStore(Protocol):
    """Key-value store of named text attachments, scoped to one character."""

    def list(self) -> list[str]: ...
    def read(self, name: str) -> str | None: ...
    def write(self, name: str, content: str) -> None: ...
    def delete(self, name: str) -> bool: ...


class LocalAttachmentStore:
    """Attachments as files under ``<root>/<character>/``, written atomically."""

    def __init__(self, root: Path, character: str, *, encoding: str = "utf-8") -> None:
        self.directory = root / safe_filename(character)
        self.encoding = encoding

    def _path(self, name: str) -> Path:
        if "/" in name or "\\" in name or name in {"", ".", ".."}:
            raise ValueError(f"Invalid attachment name: {name!r}")
        return self.directory / name

    def list(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_file() and not p.name.startswith("."))

    def read(self, name: str) -> str | None:
        path = self._path(name)
        if not path.exists():
            return None
        return path.read_text(encoding=self.encoding)

    def write(self, name: str, content: str) -> None:
        ensure_dir(self.directory)
        atomic_write_text(self._path(name), content, encoding=self.encoding)

    def delete(self, name: str) -> bool:
        path = self._path(name)
        if not path.exists():
            return False
        path.unlink()
        return True


class InMemoryAttachmentStore:
    """Dict-backed store, handy for hosts that keep attachments elsewhere and for tests."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = dict(files or {})

    def list(self) -> list[str]:
        return sorted(self.files)

    def read(self, name: str) -> str | None:
        return self.files.get(name)

    def write(self, name: str, content: str) -> None:
        self.files[name] = content

    def delete(self, name: str) -> bool:
        return self.files.pop(name, None) is not None
