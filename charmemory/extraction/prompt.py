"""Extraction and consolidation prompt assembly."""

from __future__ import annotations

import re
from typing import Callable

from charmemory.memory.blocks import BULLET_MARKER, MemoryBlock

NO_NEW_MEMORIES = "NO_NEW_MEMORIES"
TRUNCATION_MARKER = "\n[...truncated]"
EMPTY_MEMORIES_PLACEHOLDER = "(none yet)"
_MIN_AVAILABLE_CHARS = 1000
_REASONING_RE = re.compile(r"<(think|thinking|reasoning)>[\s\S]*?</\1>", re.IGNORECASE)
# reply whose opening reasoning tag was cut off upstream
_DANGLING_REASONING_RE = re.compile(r"^[\s\S]*?</(think|thinking|reasoning)>", re.IGNORECASE)

DEFAULT_EXTRACTION_SYSTEM_PROMPT = "You are a memory extraction assistant."
DEFAULT_CONSOLIDATION_SYSTEM_PROMPT = "You are a memory consolidation assistant."

DEFAULT_EXTRACTION_PROMPT = """You are a memory extraction assistant. Read the recent chat messages and extract important long-term memories about the character.

Character name: {{charName}}

CHARACTER DESCRIPTION:
{{charCard}}

EXISTING MEMORIES (do NOT repeat these):
{{existingMemories}}

RECENT CHAT MESSAGES:
{{recentMessages}}

INSTRUCTIONS:
1. Extract only NEW facts, events, relationships, emotional moments or significant details not already in existing memories.
2. Summarize in third person. Do not quote the chat verbatim.
3. Wrap each memory in <memory></memory> tags.
4. Inside each <memory> block, write a markdown bulleted list (lines starting with "- "), one concise fact per bullet.
5. If there is nothing genuinely new, respond with exactly: NO_NEW_MEMORIES

Output ONLY <memory> blocks (or NO_NEW_MEMORIES)."""

DEFAULT_ENTRY_EXTRACTION_PROMPT = """You are a memory extraction assistant. Read the recent chat messages and record significant events for {{charName}}.

CHARACTER DESCRIPTION:
{{charCard}}

EXISTING MEMORIES (do NOT repeat these):
{{existingMemories}}

RECENT CHAT MESSAGES:
{{recentMessages}}

Write one <memory></memory> block per significant event. Inside each block use these lines:
Date:
Time:
Event type:
Importance (1-10):
Summary:
Participants:
Impact:

If there is nothing genuinely new, respond with exactly: NO_NEW_MEMORIES"""

DEFAULT_CONSOLIDATION_PROMPT = """You are a memory consolidation assistant. Review the following character memories and consolidate them.

RULES:
1. Merge duplicate or near-duplicate memories into one.
2. Combine closely related facts about the same event or topic.
3. Preserve all unique information; do not discard distinct memories.
4. Summarize in third person.
5. Wrap each consolidated memory in <memory></memory> tags containing a markdown bulleted list (lines starting with "- ").

MEMORIES TO CONSOLIDATE:
{{memories}}

Output ONLY <memory> blocks."""


def truncate_text(text: str, max_chars: int) -> str:
    """Cut *text* to *max_chars*, backing up to the last newline when it is past the halfway point."""
    if not text or len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_newline = truncated.rfind("\n")
    if last_newline > max_chars * 0.5:
        truncated = truncated[:last_newline]
    return truncated + TRUNCATION_MARKER


def strip_reasoning(text: str | None) -> str:
    """Remove <think>-style reasoning blocks some models embed in content, then trim."""
    if not text:
        return ""
    text = _REASONING_RE.sub("", text)
    return _DANGLING_REASONING_RE.sub("", text, count=1).strip()


def build_messages(prompt: str, system_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": prompt},
    ]


def format_blocks_for_consolidation(blocks: list[MemoryBlock]) -> str:
    return "\n\n".join(
        f"[Block {i}]\n" + "\n".join(f"{BULLET_MARKER}{bullet}" for bullet in block.bullets)
        for i, block in enumerate(blocks, start=1)
    )


class PromptBuilder:
    """Fill prompt templates, truncating for backends with a small context window.

    Args:
        substitute: Host templating hook applied after the extraction-specific
            placeholders (``{{char}}``, ``{{user}}`` and the like).
        max_prompt_chars: Character budget for tight-context backends; None
            disables truncation.
    """

    def __init__(
        self,
        *,
        substitute: Callable[[str], str] | None = None,
        max_prompt_chars: int | None = None,
    ) -> None:
        self.substitute = substitute or (lambda text: text)
        self.max_prompt_chars = max_prompt_chars

    @classmethod
    def for_backend(
        cls,
        tight_context: bool,
        max_prompt_chars: int,
        substitute: Callable[[str], str] | None = None,
    ) -> PromptBuilder:
        return cls(substitute=substitute, max_prompt_chars=max_prompt_chars if tight_context else None)

    def _available(self, overhead: int) -> int:
        assert self.max_prompt_chars is not None
        return max(self.max_prompt_chars - overhead, _MIN_AVAILABLE_CHARS)

    def build(
        self,
        template: str,
        char_name: str,
        char_card: str,
        existing_memories: str,
        recent_messages: str,
    ) -> str:
        memories = existing_memories or EMPTY_MEMORIES_PLACEHOLDER
        messages = recent_messages

        prompt = template.replace("{{charName}}", char_name).replace("{{charCard}}", char_card or "")

        if self.max_prompt_chars is not None:
            overhead = len(prompt.replace("{{existingMemories}}", "").replace("{{recentMessages}}", ""))
            available = self._available(overhead)
            memories_budget = available // 3
            memories = truncate_text(memories, memories_budget)
            messages = truncate_text(messages, available - memories_budget)

        prompt = prompt.replace("{{existingMemories}}", memories)
        prompt = prompt.replace("{{recentMessages}}", messages)
        return self.substitute(prompt)

    def build_consolidation(self, template: str, blocks: list[MemoryBlock]) -> str:
        memories_text = format_blocks_for_consolidation(blocks)
        if self.max_prompt_chars is not None:
            memories_text = truncate_text(memories_text, self._available(len(template.replace("{{memories}}", ""))))
        return self.substitute(template.replace("{{memories}}", memories_text))
