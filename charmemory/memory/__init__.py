"""Memory record model and persistence."""

from charmemory.memory.attachments import AttachmentStore, InMemoryAttachmentStore, LocalAttachmentStore
from charmemory.memory.blocks import (
    CONSOLIDATED_SOURCE,
    UNKNOWN_SOURCE,
    MemoryBlock,
    count_memories,
    merge_blocks,
    parse_memories,
    serialize_memories,
)
from charmemory.memory.storage import BlockFileStorage, EntryFileStorage, MemoryStorage, create_storage

__all__ = [
    "AttachmentStore",
    "BlockFileStorage",
    "CONSOLIDATED_SOURCE",
    "EntryFileStorage",
    "InMemoryAttachmentStore",
    "LocalAttachmentStore",
    "MemoryBlock",
    "MemoryStorage",
    "UNKNOWN_SOURCE",
    "count_memories",
    "create_storage",
    "merge_blocks",
    "parse_memories",
    "serialize_memories",
]
