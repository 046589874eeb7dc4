"""Tagged memory block format: parse, serialize, merge and legacy migration."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from charmemory.utils.helpers import memory_timestamp

BULLET_MARKER = "- "
UNKNOWN_SOURCE = "unknown"
CONSOLIDATED_SOURCE = "consolidated"

_MEMORY_TAG_RE = re.compile(r"<memory\b([^>]*)>([\s\S]*?)</memory>", re.IGNORECASE)
_MEMORY_OPEN_TAG_RE = re.compile(r"<memory\b[^>]*>", re.IGNORECASE)
_CHAT_ATTR_RE = re.compile(r'chat="([^"]*)"')
_DATE_ATTR_RE = re.compile(r'date="([^"]*)"')
_LEGACY_SECTION_RE = re.compile(r"^## Memory \d+\s*$", re.MULTILINE)
_LEGACY_EXTRACTED_RE = re.compile(r"^_Extracted:\s*(.+?)_\s*\n")


@dataclass
class MemoryBlock:
    """A group of memory lines sharing one conversation source and timestamp.

    In the batched-blocks layout every line is a bullet fact; in the
    one-file-per-entry layout the lines are the entry's freeform body.
    """

    source_id: str
    date: str
    bullets: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.bullets)


def _bullet_lines(body: str) -> list[str]:
    return [
        line[len(BULLET_MARKER):].strip()
        for line in (raw.strip() for raw in body.split("\n"))
        if line.startswith(BULLET_MARKER) and line[len(BULLET_MARKER):].strip()
    ]


def _body_lines(body: str) -> list[str]:
    lines = []
    for raw in body.split("\n"):
        line = raw.strip()
        if line.startswith(BULLET_MARKER):
            line = line[len(BULLET_MARKER):].strip()
        if line:
            lines.append(line)
    return lines


def parse_memories(content: str, *, bullets_only: bool = True) -> list[MemoryBlock]:
    """Scan *content* for ``<memory ...>`` tags and return the non-empty blocks.

    Missing attributes default to source ``unknown`` and an empty date. With
    ``bullets_only`` (the block layout) only ``- `` lines are kept; otherwise
    every non-blank line of the body is kept.
    """
    if not content or not content.strip():
        return []

    blocks: list[MemoryBlock] = []
    for match in _MEMORY_TAG_RE.finditer(content):
        attrs, body = match.group(1), match.group(2)
        chat_match = _CHAT_ATTR_RE.search(attrs)
        date_match = _DATE_ATTR_RE.search(attrs)
        lines = _bullet_lines(body) if bullets_only else _body_lines(body)
        if not lines:
            continue
        blocks.append(
            MemoryBlock(
                source_id=chat_match.group(1) if chat_match else UNKNOWN_SOURCE,
                date=date_match.group(1) if date_match else "",
                bullets=lines,
            )
        )
    return blocks


def serialize_block(block: MemoryBlock, *, bullet_marker: bool = True) -> str:
    prefix = BULLET_MARKER if bullet_marker else ""
    bullets_text = "\n".join(f"{prefix}{bullet}" for bullet in block.bullets)
    return f'<memory chat="{block.source_id}" date="{block.date}">\n{bullets_text}\n</memory>'


def serialize_memories(blocks: list[MemoryBlock]) -> str:
    """Inverse of :func:`parse_memories`: one tag per block, blocks separated by a blank line."""
    return "\n\n".join(serialize_block(b) for b in blocks if b.bullets)


def count_memories(blocks: list[MemoryBlock]) -> int:
    return sum(len(b.bullets) for b in blocks)


def merge_blocks(blocks: list[MemoryBlock]) -> list[MemoryBlock]:
    """Coalesce blocks sharing a source, in first-seen order, keeping the first date."""
    merged: dict[str, MemoryBlock] = {}
    for block in blocks:
        existing = merged.get(block.source_id)
        if existing is None:
            merged[block.source_id] = MemoryBlock(block.source_id, block.date, list(block.bullets))
        else:
            existing.bullets.extend(block.bullets)
    return list(merged.values())


def parse_response_entries(text: str, *, require_tags: bool = False) -> list[str]:
    """Return the raw bodies of ``<memory>`` entries in a model response.

    When no tags are present the whole response is one entry, unless
    ``require_tags`` is set, in which case nothing is returned.
    """
    entries = [m.group(2).strip() for m in _MEMORY_TAG_RE.finditer(text)]
    entries = [e for e in entries if e]
    if entries or require_tags:
        return entries
    stripped = text.strip()
    return [stripped] if stripped else []


def entry_to_block(entry: str, *, source_id: str, date: str, bullets_only: bool = True) -> MemoryBlock:
    """Turn one model entry into a block; bullet-less entries keep each line as a memory."""
    lines = _bullet_lines(entry) if bullets_only else []
    return MemoryBlock(source_id=source_id, date=date, bullets=lines or _body_lines(entry))


def text_to_bullets(text: str) -> list[str]:
    """Split user-supplied text into bullets, one per non-blank line."""
    return _body_lines(text)


def needs_migration(content: str) -> bool:
    return bool(content and content.strip()) and not _MEMORY_OPEN_TAG_RE.search(content)


def migrate_legacy(content: str, *, timestamp: str | None = None) -> str:
    """Convert numbered-section or flat-text memories into the tagged format.

    Content already in tagged format (or empty) is returned unchanged.
    """
    if not needs_migration(content):
        return content

    timestamp = timestamp or memory_timestamp()

    if _LEGACY_SECTION_RE.search(content):
        blocks: list[MemoryBlock] = []
        for part in _LEGACY_SECTION_RE.split(content)[1:]:
            part = part.strip()
            if not part:
                continue
            date, text = timestamp, part
            if m := _LEGACY_EXTRACTED_RE.match(part + "\n"):
                date = m.group(1).strip()
                text = (part + "\n")[m.end():].strip()
            bullets = _body_lines(text)
            if bullets:
                blocks.append(MemoryBlock(UNKNOWN_SOURCE, date, bullets))
        return serialize_memories(blocks)

    bullets = _body_lines(content)
    return serialize_memories([MemoryBlock(UNKNOWN_SOURCE, timestamp, bullets)])
