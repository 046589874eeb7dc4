"""Consolidation engine: collapse duplicate memories through one model call."""

from __future__ import annotations

import textwrap
from dataclasses import dataclass, field
from enum import Enum
from itertools import zip_longest
from typing import Awaitable, Callable

from charmemory.extraction.coordinator import OperationCoordinator
from charmemory.extraction.prompt import (
    DEFAULT_CONSOLIDATION_PROMPT,
    DEFAULT_CONSOLIDATION_SYSTEM_PROMPT,
    PromptBuilder,
    build_messages,
    strip_reasoning,
)
from charmemory.logging import get_logger
from charmemory.memory.blocks import (
    CONSOLIDATED_SOURCE,
    MemoryBlock,
    count_memories,
    entry_to_block,
    parse_response_entries,
)
from charmemory.memory.storage import MemoryStorage, StoreSnapshot
from charmemory.providers.base import BackendUnavailableError, GenerationBackend
from charmemory.utils.helpers import memory_timestamp

logger = get_logger(__name__)


@dataclass
class ConsolidationPreview:
    """Store contents before and after a proposed consolidation."""

    before: list[MemoryBlock]
    after: list[MemoryBlock]

    @property
    def before_count(self) -> int:
        return count_memories(self.before)

    @property
    def after_count(self) -> int:
        return count_memories(self.after)

    def render(self, width: int = 100) -> str:
        """Two-column text view, before on the left and after on the right."""
        col = max(20, (width - 3) // 2)
        left = _preview_lines(self.before, col)
        right = _preview_lines(self.after, col)
        rows = [
            f"{f'Before ({self.before_count})':<{col}} | After ({self.after_count})",
            f"{'-' * col}-+-{'-' * col}",
        ]
        rows.extend(f"{l:<{col}} | {r}".rstrip() for l, r in zip_longest(left, right, fillvalue=""))
        return "\n".join(rows)


def _preview_lines(blocks: list[MemoryBlock], width: int) -> list[str]:
    lines: list[str] = []
    for i, block in enumerate(blocks, start=1):
        if lines:
            lines.append("")
        lines.append(f"[{i}] {block.source_id} {block.date}".rstrip()[:width])
        for bullet in block.bullets:
            lines.extend(textwrap.wrap(bullet, width=width, initial_indent="- ", subsequent_indent="  ") or ["-"])
    return lines


PreviewCallback = Callable[[ConsolidationPreview], Awaitable[bool]]


class ConsolidationStatus(str, Enum):
    CONSOLIDATED = "consolidated"
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class ConsolidationResult:
    status: ConsolidationStatus
    before_count: int = 0
    after_count: int = 0
    message: str = ""


@dataclass
class _Backup:
    storage: MemoryStorage
    snapshot: StoreSnapshot = field(default_factory=dict)


class ConsolidationEngine:
    """
    Merge duplicate and related memories.

    Manual consolidation shows a preview and keeps a one-level undo backup;
    scoped consolidation (used after long extraction runs) rewrites a single
    source's blocks without a preview.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        *,
        coordinator: OperationCoordinator,
        builder: PromptBuilder | None = None,
        response_length: int = 500,
        prompt_template: str = "",
        system_prompt: str = "",
    ) -> None:
        self.backend = backend
        self.coordinator = coordinator
        self.builder = builder or PromptBuilder()
        self.response_length = response_length
        self.prompt_template = prompt_template or DEFAULT_CONSOLIDATION_PROMPT
        self.system_prompt = system_prompt or DEFAULT_CONSOLIDATION_SYSTEM_PROMPT
        self._backup: _Backup | None = None

    @property
    def can_undo(self) -> bool:
        return self._backup is not None

    async def _generate(self, storage: MemoryStorage, blocks: list[MemoryBlock], source_id: str) -> list[MemoryBlock]:
        prompt = self.builder.build_consolidation(self.prompt_template, blocks)
        response = await self.backend.generate(
            build_messages(prompt, self.system_prompt),
            max_tokens=self.response_length * 2,
        )
        text = strip_reasoning(response)
        if not text:
            return []
        date = memory_timestamp()
        entries = parse_response_entries(text, require_tags=storage.requires_tags)
        return [
            block
            for block in (
                entry_to_block(entry, source_id=source_id, date=date, bullets_only=storage.bullets_only)
                for entry in entries
            )
            if block.bullets
        ]

    async def consolidate(self, storage: MemoryStorage, confirm: PreviewCallback) -> ConsolidationResult:
        """Consolidate the whole store after *confirm* accepts the preview."""
        if self.coordinator.is_busy:
            return ConsolidationResult(ConsolidationStatus.SKIPPED, message="Another memory operation is in progress.")
        result = await self.coordinator.run_exclusive("consolidation", lambda: self._consolidate(storage, confirm))
        if result is None:
            return ConsolidationResult(ConsolidationStatus.SKIPPED, message="Another memory operation is in progress.")
        return result

    async def _consolidate(self, storage: MemoryStorage, confirm: PreviewCallback) -> ConsolidationResult:
        blocks = storage.read_blocks()
        before_count = count_memories(blocks)
        if len(blocks) < 2:
            return ConsolidationResult(
                ConsolidationStatus.SKIPPED,
                before_count=before_count,
                after_count=before_count,
                message="Need at least two memory blocks to consolidate.",
            )

        try:
            consolidated = await self._generate(storage, blocks, CONSOLIDATED_SOURCE)
        except BackendUnavailableError as e:
            logger.warning("Consolidation backend unavailable", backend=self.backend.name, error=str(e))
            return ConsolidationResult(ConsolidationStatus.UNAVAILABLE, before_count=before_count, message=str(e))
        except Exception:
            logger.exception("Consolidation failed", backend=self.backend.name)
            return ConsolidationResult(
                ConsolidationStatus.FAILED,
                before_count=before_count,
                message="Memory consolidation failed. Check the logs for details.",
            )

        if not consolidated:
            logger.info("Consolidation returned nothing; store left unchanged", blocks=len(blocks))
            return ConsolidationResult(
                ConsolidationStatus.UNCHANGED,
                before_count=before_count,
                after_count=before_count,
                message="Consolidation produced no memories; nothing changed.",
            )

        preview = ConsolidationPreview(before=blocks, after=consolidated)
        if not await confirm(preview):
            return ConsolidationResult(
                ConsolidationStatus.CANCELLED,
                before_count=before_count,
                after_count=before_count,
                message="Consolidation cancelled.",
            )

        self._backup = _Backup(storage=storage, snapshot=storage.snapshot())
        storage.replace_all(consolidated)
        logger.info(
            "Memories consolidated",
            blocks_before=len(blocks),
            blocks_after=len(consolidated),
            memories_before=before_count,
            memories_after=preview.after_count,
        )
        return ConsolidationResult(
            ConsolidationStatus.CONSOLIDATED,
            before_count=before_count,
            after_count=preview.after_count,
            message=f"Consolidated {before_count} memories into {preview.after_count}.",
        )

    async def consolidate_source(self, storage: MemoryStorage, source_id: str) -> bool:
        """Consolidate only *source_id*'s blocks, keeping that source id.

        Runs inside an operation the caller already holds, so it does not go
        through the coordinator. Returns True when the store was rewritten.
        """
        blocks = [b for b in storage.read_blocks() if b.source_id == source_id]
        if count_memories(blocks) < 2:
            return False
        consolidated = await self._generate(storage, blocks, source_id)
        if not consolidated:
            return False
        storage.replace_source(source_id, consolidated)
        logger.info(
            "Source memories consolidated",
            source_id=source_id,
            memories_before=count_memories(blocks),
            memories_after=count_memories(consolidated),
        )
        return True

    def undo(self) -> bool:
        """Restore the store captured before the last consolidation; one level only."""
        if self._backup is None or self.coordinator.is_busy:
            return False
        backup, self._backup = self._backup, None
        backup.storage.restore(backup.snapshot)
        logger.info("Consolidation undone", attachments=len(backup.snapshot))
        return True
