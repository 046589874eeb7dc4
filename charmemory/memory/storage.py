"""Memory storage strategies: one batched document, or one attachment per entry."""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from charmemory.logging import get_logger
from charmemory.memory.blocks import (
    MemoryBlock,
    count_memories,
    merge_blocks,
    migrate_legacy,
    needs_migration,
    parse_memories,
    serialize_block,
    serialize_memories,
)
from charmemory.utils.helpers import safe_filename

if TYPE_CHECKING:
    from charmemory.config.schema import StorageConfig
    from charmemory.memory.attachments import AttachmentStore

logger = get_logger(__name__)

DEFAULT_FILE_NAME = "char-memories.md"

# name -> raw content of every attachment owned by the store
StoreSnapshot = dict[str, str]


def resolve_memory_file_name(
    character: str | None,
    chat_id: str | None,
    *,
    file_name: str = "",
    per_chat: bool = False,
) -> str:
    """Name of the memory document for a character (and chat, in per-chat mode)."""
    if file_name and file_name != DEFAULT_FILE_NAME:
        return file_name
    if not character:
        return DEFAULT_FILE_NAME
    safe_name = safe_filename(character)
    if per_chat:
        return f"{safe_name}-chat{safe_filename(chat_id or 'default')}-memories.md"
    return f"{safe_name}-memories.md"


class MemoryStorage(ABC):
    """Read/write contract shared by every memory layout.

    Block and bullet indices refer to the order returned by :meth:`read_blocks`.
    """

    # Model responses without <memory> tags are rejected instead of kept whole.
    requires_tags: bool = False
    # Only "- " lines are memory content; otherwise every body line is.
    bullets_only: bool = True

    def __init__(self, attachments: AttachmentStore) -> None:
        self.attachments = attachments

    @abstractmethod
    def read_blocks(self) -> list[MemoryBlock]: ...

    @abstractmethod
    def append(self, blocks: list[MemoryBlock]) -> None: ...

    @abstractmethod
    def replace_all(self, blocks: list[MemoryBlock]) -> None: ...

    @abstractmethod
    def snapshot(self) -> StoreSnapshot: ...

    @abstractmethod
    def _owned_names(self) -> list[str]: ...

    def read_text(self) -> str:
        return serialize_memories(self.read_blocks())

    def count(self) -> int:
        return count_memories(self.read_blocks())

    def count_for_source(self, source_id: str) -> int:
        return count_memories([b for b in self.read_blocks() if b.source_id == source_id])

    def has_source(self, source_id: str) -> bool:
        return any(b.source_id == source_id for b in self.read_blocks())

    def replace_source(self, source_id: str, blocks: list[MemoryBlock]) -> None:
        """Swap one source's blocks for *blocks*, leaving other sources untouched.

        The replacement takes the position of the source's first block.
        """
        current = self.read_blocks()
        result: list[MemoryBlock] = []
        inserted = False
        for block in current:
            if block.source_id != source_id:
                result.append(block)
            elif not inserted:
                result.extend(blocks)
                inserted = True
        if not inserted:
            result.extend(blocks)
        self.replace_all(result)

    def merge_source(self, source_id: str) -> bool:
        """Coalesce *source_id*'s blocks into one; returns True when anything changed."""
        return False

    def restore(self, snapshot: StoreSnapshot) -> None:
        """Put the store back exactly as captured by :meth:`snapshot`."""
        for name in self._owned_names():
            if name not in snapshot:
                self.attachments.delete(name)
        for name, content in snapshot.items():
            self.attachments.write(name, content)

    def edit_bullet(self, block_index: int, bullet_index: int, text: str) -> bool:
        blocks = self.read_blocks()
        if not (0 <= block_index < len(blocks)) or not (0 <= bullet_index < len(blocks[block_index].bullets)):
            return False
        text = text.strip()
        if text:
            blocks[block_index].bullets[bullet_index] = text
        else:
            del blocks[block_index].bullets[bullet_index]
        self._write_edited(blocks, block_index)
        return True

    def delete_bullet(self, block_index: int, bullet_index: int) -> bool:
        return self.edit_bullet(block_index, bullet_index, "")

    def delete_block(self, block_index: int) -> bool:
        blocks = self.read_blocks()
        if not (0 <= block_index < len(blocks)):
            return False
        blocks[block_index].bullets = []
        self._write_edited(blocks, block_index)
        return True

    def _write_edited(self, blocks: list[MemoryBlock], block_index: int) -> None:
        self.replace_all([b for b in blocks if b.bullets])

    def clear(self) -> int:
        names = self._owned_names()
        for name in names:
            self.attachments.delete(name)
        return len(names)


class BlockFileStorage(MemoryStorage):
    """All blocks of a character (or chat) serialized into one tagged document."""

    def __init__(self, attachments: AttachmentStore, file_name: str) -> None:
        super().__init__(attachments)
        self.file_name = file_name

    def _read_raw(self) -> str:
        content = self.attachments.read(self.file_name) or ""
        if needs_migration(content):
            migrated = migrate_legacy(content)
            logger.info("Migrating memories to tagged block format", file=self.file_name)
            self.attachments.write(self.file_name, migrated)
            return migrated
        return content

    def read_blocks(self) -> list[MemoryBlock]:
        return parse_memories(self._read_raw())

    def append(self, blocks: list[MemoryBlock]) -> None:
        if not blocks:
            return
        self.replace_all(self.read_blocks() + blocks)

    def replace_all(self, blocks: list[MemoryBlock]) -> None:
        self.attachments.write(self.file_name, serialize_memories(blocks))

    def merge_source(self, source_id: str) -> bool:
        own = [b for b in self.read_blocks() if b.source_id == source_id]
        if len(own) < 2:
            return False
        self.replace_source(source_id, merge_blocks(own))
        return True

    def _owned_names(self) -> list[str]:
        return [self.file_name] if self.attachments.read(self.file_name) is not None else []

    def snapshot(self) -> StoreSnapshot:
        content = self.attachments.read(self.file_name)
        return {self.file_name: content} if content is not None else {}


class EntryFileStorage(MemoryStorage):
    """One attachment per extracted entry, named ``<character>-memory-<millis>.md``.

    Entries are never merged; each file holds a single tagged entry whose body
    is freeform structured text.
    """

    requires_tags = True
    bullets_only = False

    def __init__(self, attachments: AttachmentStore, character: str) -> None:
        super().__init__(attachments)
        self.prefix = f"{safe_filename(character)}-memory-"
        self._name_re = re.compile(rf"^{re.escape(self.prefix)}(\d+)\.md$")
        self._last_stamp = 0

    def _owned_names(self) -> list[str]:
        stamped = []
        for name in self.attachments.list():
            if m := self._name_re.match(name):
                stamped.append((int(m.group(1)), name))
        return [name for _, name in sorted(stamped)]

    def _next_name(self) -> str:
        existing = [int(m.group(1)) for n in self._owned_names() if (m := self._name_re.match(n))]
        stamp = max([int(time.time() * 1000), self._last_stamp + 1, *(s + 1 for s in existing)])
        self._last_stamp = stamp
        return f"{self.prefix}{stamp}.md"

    def _read_entries(self) -> list[tuple[str, MemoryBlock]]:
        entries = []
        for name in self._owned_names():
            parsed = parse_memories(self.attachments.read(name) or "", bullets_only=False)
            if parsed:
                entries.append((name, parsed[0]))
        return entries

    def read_blocks(self) -> list[MemoryBlock]:
        return [block for _, block in self._read_entries()]

    def append(self, blocks: list[MemoryBlock]) -> None:
        for block in blocks:
            if block.bullets:
                self.attachments.write(self._next_name(), serialize_block(block, bullet_marker=False))

    def replace_all(self, blocks: list[MemoryBlock]) -> None:
        for name in self._owned_names():
            self.attachments.delete(name)
        self.append(blocks)

    def _write_edited(self, blocks: list[MemoryBlock], block_index: int) -> None:
        name, _ = self._read_entries()[block_index]
        block = blocks[block_index]
        if block.bullets:
            self.attachments.write(name, serialize_block(block, bullet_marker=False))
        else:
            self.attachments.delete(name)

    def snapshot(self) -> StoreSnapshot:
        return {name: self.attachments.read(name) or "" for name in self._owned_names()}


def create_storage(
    config: StorageConfig,
    attachments: AttachmentStore,
    *,
    character: str,
    chat_id: str | None = None,
) -> MemoryStorage:
    """Build the storage strategy selected by configuration."""
    if config.mode == "files":
        return EntryFileStorage(attachments, character)
    file_name = resolve_memory_file_name(
        character,
        chat_id,
        file_name=config.file_name,
        per_chat=config.per_chat,
    )
    return BlockFileStorage(attachments, file_name)
