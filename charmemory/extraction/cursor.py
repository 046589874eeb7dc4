"""Extraction progress: per-chat cursor in chat metadata, batch cursors in a state file."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from charmemory.logging import get_logger
from charmemory.memory.blocks import CONSOLIDATED_SOURCE
from charmemory.memory.storage import MemoryStorage
from charmemory.utils.helpers import atomic_write_text

logger = get_logger(__name__)

CURSOR_METADATA_KEY = "char_memory"


@dataclass
class ExtractionCursor:
    """Position of the last extracted message; -1 means nothing extracted yet."""

    last_extracted_index: int = -1
    messages_since_extraction: int = 0

    def reset(self) -> None:
        self.last_extracted_index = -1
        self.messages_since_extraction = 0


def _as_int(value: Any, default: int, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        return default
    return value


def read_cursor(metadata: dict[str, Any]) -> ExtractionCursor:
    """Read the cursor from chat metadata, treating missing or invalid values as fresh."""
    raw = metadata.get(CURSOR_METADATA_KEY)
    if not isinstance(raw, dict):
        return ExtractionCursor()
    return ExtractionCursor(
        last_extracted_index=_as_int(raw.get("last_extracted_index"), -1, -1),
        messages_since_extraction=_as_int(raw.get("messages_since_extraction"), 0, 0),
    )


def write_cursor(metadata: dict[str, Any], cursor: ExtractionCursor) -> None:
    metadata[CURSOR_METADATA_KEY] = {
        "last_extracted_index": cursor.last_extracted_index,
        "messages_since_extraction": cursor.messages_since_extraction,
    }


def is_stale(cursor: ExtractionCursor, storage: MemoryStorage, chat_id: str) -> bool:
    """A cursor is stale when it claims progress but the store holds nothing from this chat.

    Consolidated blocks no longer carry their chat ids, so their presence
    means progress cannot be judged and the cursor is trusted.
    """
    if cursor.last_extracted_index < 0:
        return False
    blocks = storage.read_blocks()
    return not any(b.source_id in (chat_id, CONSOLIDATED_SOURCE) for b in blocks)


class BatchCursorStore:
    """``chat key -> last extracted index`` for background chats, kept in one JSON file.

    With no path the map lives in memory only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._cursors: dict[str, int] | None = None

    def _load(self) -> dict[str, int]:
        if self._cursors is not None:
            return self._cursors
        cursors: dict[str, int] = {}
        if self.path is not None and self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                raw = data.get("batch_cursors", {}) if isinstance(data, dict) else {}
                cursors = {str(k): _as_int(v, -1, -1) for k, v in raw.items()}
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load batch cursors, starting fresh", path=str(self.path), error=str(e))
        self._cursors = cursors
        return cursors

    def _save(self) -> None:
        if self.path is None:
            return
        atomic_write_text(
            self.path,
            json.dumps({"batch_cursors": self._load()}, indent=2, ensure_ascii=False) + "\n",
        )

    def get(self, key: str) -> int:
        return self._load().get(key, -1)

    def set(self, key: str, index: int) -> None:
        self._load()[key] = max(-1, index)
        self._save()

    def reset(self, key: str) -> None:
        if self._load().pop(key, None) is not None:
            self._save()

    def all(self) -> dict[str, int]:
        return dict(self._load())
