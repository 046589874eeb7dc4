"""Select and format the unprocessed slice of a chat for one extraction chunk."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Sequence

from charmemory.chat.manager import ChatMessage

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_DETAILS_RE = re.compile(r"<details\b[^>]*>[\s\S]*?</details>", re.IGNORECASE)
_TABLE_ROW_RE = re.compile(r"^[ \t]*\|.*\|[ \t]*$\n?", re.MULTILINE)
_HTML_TAG_RE = re.compile(r"<[^>]*>")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class WindowSlice:
    """Formatted text of one chunk plus the original indices it covers."""

    text: str
    start_index: int
    end_index: int  # last original index in the chunk, even if it contributed no text
    line_count: int


def clean_message_text(text: str) -> str:
    """Strip code blocks, collapsed details, tables and HTML; squeeze blank lines."""
    text = _CODE_BLOCK_RE.sub("", text or "")
    text = _DETAILS_RE.sub("", text)
    text = _TABLE_ROW_RE.sub("", text)
    text = _HTML_TAG_RE.sub("", text)
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def format_message(msg: ChatMessage) -> str | None:
    """``"<speaker>: <text>"``, or None when the message should not be sent."""
    if msg.is_system and not msg.speaker:
        return None
    text = clean_message_text(msg.text)
    if not text:
        return None
    return f"{msg.speaker or 'Unknown'}: {text}"


def resolve_end_index(message_count: int, end_index: int | None = None) -> int:
    """Inclusive upper bound of the window; -1 for an empty chat."""
    last = message_count - 1
    if end_index is None:
        return last
    return min(end_index, last)


def count_unprocessed(message_count: int, last_extracted_index: int, end_index: int | None = None) -> int:
    end = resolve_end_index(message_count, end_index)
    start = max(0, last_extracted_index + 1)
    return max(0, end - start + 1)


def plan_chunks(last_extracted_index: int, end_index: int, chunk_size: int) -> list[tuple[int, int]]:
    """Half-open ``[start, stop)`` index ranges the run will walk, in order."""
    start = max(0, last_extracted_index + 1)
    total = max(0, end_index - start + 1)
    return [
        (start + i * chunk_size, min(start + (i + 1) * chunk_size, end_index + 1))
        for i in range(math.ceil(total / chunk_size))
    ]


def select_window(
    messages: Sequence[ChatMessage],
    last_extracted_index: int,
    chunk_size: int,
    end_index: int | None = None,
) -> WindowSlice | None:
    """Format the next chunk after *last_extracted_index*; None when there is no work."""
    end = resolve_end_index(len(messages), end_index)
    start = max(0, last_extracted_index + 1)
    if start > end:
        return None

    stop = min(start + chunk_size, end + 1)
    lines = [line for line in (format_message(m) for m in messages[start:stop]) if line]
    return WindowSlice(
        text="\n\n".join(lines),
        start_index=start,
        end_index=stop - 1,
        line_count=len(lines),
    )
