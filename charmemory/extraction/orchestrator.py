"""Extraction orchestrator: walk unprocessed chat history in chunks and persist memories."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from charmemory.chat.manager import ChatContext, ChatMessage
from charmemory.config.schema import ExtractionConfig
from charmemory.extraction.cooldown import CancellationToken, CooldownGate
from charmemory.extraction.coordinator import OperationCoordinator
from charmemory.extraction.cursor import BatchCursorStore, ExtractionCursor, is_stale, read_cursor, write_cursor
from charmemory.extraction.prompt import (
    DEFAULT_ENTRY_EXTRACTION_PROMPT,
    DEFAULT_EXTRACTION_PROMPT,
    DEFAULT_EXTRACTION_SYSTEM_PROMPT,
    NO_NEW_MEMORIES,
    PromptBuilder,
    build_messages,
    strip_reasoning,
)
from charmemory.extraction.types import (
    BatchChat,
    ConfirmCallback,
    ExtractionResult,
    ExtractionStatus,
    LogNotifier,
    Notifier,
    ProgressCallback,
    RunState,
)
from charmemory.extraction.window import count_unprocessed, plan_chunks, resolve_end_index, select_window
from charmemory.logging import bound_chat_context, get_logger
from charmemory.memory.blocks import MemoryBlock, count_memories, entry_to_block, parse_response_entries, text_to_bullets
from charmemory.memory.consolidation import ConsolidationEngine
from charmemory.memory.storage import MemoryStorage
from charmemory.providers.base import BackendUnavailableError, GenerationBackend
from charmemory.utils.helpers import memory_timestamp

logger = get_logger(__name__)

# (character name, chat id) -> storage for that character's memories
StorageFactory = Callable[[str, str | None], MemoryStorage]
ContextProvider = Callable[[], ChatContext | None]


@dataclass
class _Target:
    """The chat a run reads from and where its progress is recorded."""

    character: str
    card: str
    chat_id: str
    messages: list[ChatMessage]
    storage: MemoryStorage
    live: ChatContext | None = None
    batch_cursors: BatchCursorStore | None = None

    @property
    def last_index(self) -> int:
        if self.live is not None:
            return read_cursor(self.live.metadata).last_extracted_index
        assert self.batch_cursors is not None
        return self.batch_cursors.get(self.chat_id)

    def advance(self, index: int) -> None:
        if self.live is not None:
            cursor = read_cursor(self.live.metadata)
            cursor.last_extracted_index = index
            write_cursor(self.live.metadata, cursor)
            self.live.save_metadata()
        elif self.batch_cursors is not None:
            self.batch_cursors.set(self.chat_id, index)

    def clear_message_count(self) -> None:
        if self.live is not None:
            cursor = read_cursor(self.live.metadata)
            cursor.messages_since_extraction = 0
            write_cursor(self.live.metadata, cursor)
            self.live.save_metadata()


class MemoryExtractor:
    """
    Drive chunked memory extraction for the live chat or a background chat.

    One run walks every unprocessed message up to ``end_index`` in chunks of
    ``chunk_size``, persisting memories and advancing the cursor after each
    chunk so a failed run never loses completed work.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        *,
        storage_factory: StorageFactory,
        context_provider: ContextProvider | None = None,
        config: ExtractionConfig | None = None,
        coordinator: OperationCoordinator | None = None,
        consolidation: ConsolidationEngine | None = None,
        cooldown: CooldownGate | None = None,
        batch_cursors: BatchCursorStore | None = None,
        builder: PromptBuilder | None = None,
        system_prompt: str = "",
        notifier: Notifier | None = None,
    ) -> None:
        self.backend = backend
        self.storage_factory = storage_factory
        self.context_provider = context_provider or (lambda: None)
        self.config = config or ExtractionConfig()
        self.coordinator = coordinator or OperationCoordinator()
        self.consolidation = consolidation
        self.cooldown = cooldown or CooldownGate(self.config.cooldown_seconds)
        self.batch_cursors = batch_cursors or BatchCursorStore()
        self.builder = builder or PromptBuilder()
        self.system_prompt = system_prompt or DEFAULT_EXTRACTION_SYSTEM_PROMPT
        self.notifier = notifier or LogNotifier()
        self.state = RunState.IDLE
        self.last_state = RunState.IDLE

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    def _live_context(self) -> ChatContext | None:
        ctx = self.context_provider()
        if ctx is None or not ctx.character_name or not ctx.chat_id:
            return None
        return ctx

    def _live_target(self, ctx: ChatContext) -> _Target:
        assert ctx.character_name and ctx.chat_id
        return _Target(
            character=ctx.character_name,
            card=ctx.character_card,
            chat_id=ctx.chat_id,
            messages=ctx.messages,
            storage=self.storage_factory(ctx.character_name, ctx.chat_id),
            live=ctx,
        )

    def _batch_target(self, chat: BatchChat) -> _Target:
        return _Target(
            character=chat.character_name,
            card=chat.character_card,
            chat_id=chat.key,
            messages=chat.messages,
            storage=self.storage_factory(chat.character_name, chat.key),
            batch_cursors=self.batch_cursors,
        )

    def _template(self, storage: MemoryStorage) -> str:
        if self.config.extraction_prompt:
            return self.config.extraction_prompt
        return DEFAULT_ENTRY_EXTRACTION_PROMPT if storage.requires_tags else DEFAULT_EXTRACTION_PROMPT

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _skipped(self, message: str, last_index: int = -1) -> ExtractionResult:
        logger.debug("extraction_skipped", reason=message)
        return ExtractionResult(ExtractionStatus.SKIPPED, last_extracted_index=last_index, message=message)

    async def extract(
        self,
        *,
        force: bool = False,
        end_index: int | None = None,
        batch_chat: BatchChat | None = None,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> ExtractionResult:
        """
        Extract memories from unprocessed messages.

        Args:
            force: Manual run; bypasses the enabled switch and the cooldown.
            end_index: Inclusive last message index to process (default: last message).
            batch_chat: Process this background chat instead of the live one.
            cancel: Cooperative cancel token; also marks the run as headless.
            on_progress: Awaited after every chunk.
            confirm: Asked before forced runs that span many chunks.

        Returns:
            The run outcome. Never raises.
        """
        if self.coordinator.is_busy:
            return self._skipped("A memory operation is already in progress.")
        if not force and batch_chat is None and not self.config.enabled:
            return self._skipped("Memory extraction is disabled.")

        automatic = not force and batch_chat is None
        if automatic and not self.cooldown.is_allowed():
            wait = self.cooldown.remaining()
            return self._skipped(f"Extraction cooldown active; {wait:.0f}s remaining.")

        if batch_chat is not None:
            target = self._batch_target(batch_chat)
        else:
            ctx = self._live_context()
            if ctx is None:
                return self._skipped("No active character chat.")
            if ctx.is_streaming:
                return self._skipped("Generation in progress; extraction deferred.")
            target = self._live_target(ctx)

        end = resolve_end_index(len(target.messages), end_index)
        pending = count_unprocessed(len(target.messages), target.last_index, end)
        if pending == 0:
            message = "No new messages to extract." if force else "No unprocessed messages."
            if force:
                self.notifier.info(message)
            return self._skipped(message, target.last_index)

        chunks = plan_chunks(target.last_index, end, self.config.chunk_size)
        headless = cancel is not None or confirm is None
        if force and len(chunks) > self.config.confirm_chunk_threshold and not headless:
            assert confirm is not None
            question = (
                f"{pending} unprocessed messages will be sent in {len(chunks)} chunks "
                f"of {self.config.chunk_size}. Continue?"
            )
            if not await confirm(question):
                return self._skipped("Extraction cancelled by user.", target.last_index)

        result = await self.coordinator.run_exclusive(
            "extraction",
            lambda: self._run(target, end, len(chunks), cancel, on_progress),
        )
        if result is None:
            return self._skipped("A memory operation is already in progress.", target.last_index)
        return result

    async def _run(
        self,
        target: _Target,
        end_index: int,
        total_chunks: int,
        cancel: CancellationToken | None,
        on_progress: ProgressCallback | None,
    ) -> ExtractionResult:
        self.state = RunState.RUNNING
        self.cooldown.mark_started()
        status = ExtractionStatus.COMPLETED
        message = ""
        chunks_processed = 0
        total_memories = 0
        auto_consolidated = False

        with bound_chat_context(character=target.character, chat_id=target.chat_id):
            logger.info(
                "Extraction started",
                backend=self.backend.name,
                start_index=target.last_index + 1,
                end_index=end_index,
                chunks=total_chunks,
            )
            try:
                while True:
                    if cancel is not None and cancel.cancelled:
                        status = ExtractionStatus.ABORTED
                        message = "Extraction cancelled."
                        break

                    window = select_window(target.messages, target.last_index, self.config.chunk_size, end_index)
                    if window is None:
                        break
                    if not window.text:
                        logger.info("Chunk has no usable text; stopping", start_index=window.start_index)
                        break

                    storage = target.storage
                    prompt = self.builder.build(
                        self._template(storage),
                        target.character,
                        target.card,
                        storage.read_text(),
                        window.text,
                    )
                    response = await self.backend.generate(
                        build_messages(prompt, self.system_prompt),
                        max_tokens=self.config.response_length,
                    )

                    if target.live is not None and self._chat_switched(target):
                        logger.warning("Chat changed during extraction; discarding chunk", chunk=chunks_processed + 1)
                        status = ExtractionStatus.ABORTED
                        message = "Chat changed during extraction."
                        break

                    added = self._save_response(storage, target.chat_id, strip_reasoning(response))
                    total_memories += added
                    target.advance(window.end_index)
                    chunks_processed += 1
                    logger.debug(
                        "Chunk extracted",
                        chunk=chunks_processed,
                        total_chunks=total_chunks,
                        memories=added,
                        last_extracted_index=window.end_index,
                    )
                    if on_progress is not None:
                        await on_progress(chunks_processed, total_chunks, total_memories)

                if chunks_processed > 1 and total_memories > 0:
                    target.storage.merge_source(target.chat_id)
                if status is ExtractionStatus.COMPLETED and chunks_processed > 1:
                    auto_consolidated = await self._auto_consolidate(target)
                if status is ExtractionStatus.COMPLETED:
                    target.clear_message_count()
            except BackendUnavailableError as e:
                status = ExtractionStatus.UNAVAILABLE
                message = str(e)
                logger.warning("Extraction backend unavailable", backend=self.backend.name, error=message)
                self.notifier.error(message)
            except Exception:
                status = ExtractionStatus.FAILED
                message = "Memory extraction failed. Check the logs for details."
                logger.exception("Extraction failed", chunks_processed=chunks_processed)
                self.notifier.error(message)

            self.last_state = {
                ExtractionStatus.COMPLETED: RunState.COMPLETED,
                ExtractionStatus.FAILED: RunState.FAILED,
            }.get(status, RunState.ABORTED)
            self.state = RunState.IDLE

            if status in (ExtractionStatus.COMPLETED, ExtractionStatus.ABORTED):
                message = message or self._summary(total_memories, chunks_processed)
                if status is ExtractionStatus.COMPLETED and total_memories > 0:
                    self.notifier.success(message)
                else:
                    self.notifier.info(message)
            logger.info(
                "Extraction finished",
                status=status.value,
                chunks_processed=chunks_processed,
                total_memories=total_memories,
                last_extracted_index=target.last_index,
                auto_consolidated=auto_consolidated,
            )

        return ExtractionResult(
            status=status,
            total_memories=total_memories,
            chunks_processed=chunks_processed,
            last_extracted_index=target.last_index,
            auto_consolidated=auto_consolidated,
            message=message,
        )

    def _chat_switched(self, target: _Target) -> bool:
        ctx = self._live_context()
        return ctx is None or ctx.chat_id != target.chat_id

    def _save_response(self, storage: MemoryStorage, source_id: str, text: str) -> int:
        if not text or text == NO_NEW_MEMORIES:
            return 0
        entries = parse_response_entries(text, require_tags=storage.requires_tags)
        if not entries:
            if storage.requires_tags:
                logger.warning("No <memory> tags found in response", response_chars=len(text))
            return 0
        date = memory_timestamp()
        blocks = [
            entry_to_block(entry, source_id=source_id, date=date, bullets_only=storage.bullets_only)
            for entry in entries
        ]
        storage.append(blocks)
        return count_memories(blocks)

    async def _auto_consolidate(self, target: _Target) -> bool:
        if self.consolidation is None:
            return False
        count = target.storage.count_for_source(target.chat_id)
        if count <= self.config.auto_consolidate_threshold:
            return False
        try:
            done = await self.consolidation.consolidate_source(target.storage, target.chat_id)
        except Exception:
            logger.exception("Auto-consolidation failed; keeping extracted memories", memories=count)
            return False
        if done:
            self.notifier.info(f"Auto-consolidated {count} memories from this chat.")
        return done

    @staticmethod
    def _summary(total_memories: int, chunks_processed: int) -> str:
        if total_memories == 0:
            return f"No new memories found ({chunks_processed} chunk(s) processed)."
        noun = "memory" if total_memories == 1 else "memories"
        return f"Extracted {total_memories} {noun} from {chunks_processed} chunk(s)."

    async def extract_batch(
        self,
        chats: list[BatchChat],
        *,
        cancel: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[ExtractionResult]:
        """Extract from background chats one after another, checking *cancel* between chats."""
        results: list[ExtractionResult] = []
        for chat in chats:
            if cancel is not None and cancel.cancelled:
                logger.info("Batch extraction cancelled", remaining=len(chats) - len(results))
                break
            results.append(await self.extract(force=True, batch_chat=chat, cancel=cancel, on_progress=on_progress))
        return results

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_message_rendered(self) -> ExtractionResult | None:
        """Count a new character message; run automatic extraction once the interval is reached."""
        if not self.config.enabled:
            return None
        ctx = self._live_context()
        if ctx is None:
            return None
        cursor = read_cursor(ctx.metadata)
        cursor.messages_since_extraction += 1
        write_cursor(ctx.metadata, cursor)
        ctx.save_metadata()
        if cursor.messages_since_extraction >= self.config.interval:
            return await self.extract()
        return None

    def on_chat_changed(self) -> ExtractionCursor | None:
        """Validate the new chat's cursor and seed the message counter with the unextracted backlog."""
        ctx = self._live_context()
        if ctx is None:
            return None
        assert ctx.character_name and ctx.chat_id
        cursor = read_cursor(ctx.metadata)

        with bound_chat_context(character=ctx.character_name, chat_id=ctx.chat_id):
            if self.config.stale_cursor_reset:
                storage = self.storage_factory(ctx.character_name, ctx.chat_id)
                if is_stale(cursor, storage, ctx.chat_id):
                    logger.warning("Stale extraction cursor reset", last_extracted_index=cursor.last_extracted_index)
                    self.notifier.warning(
                        "No memories from this chat were found; extraction progress was reset."
                    )
                    cursor.reset()

            message_count = len(ctx.messages)
            unextracted = message_count - 1 - cursor.last_extracted_index if message_count > 0 else 0
            if unextracted > 0 and cursor.messages_since_extraction < unextracted:
                cursor.messages_since_extraction = unextracted
            logger.debug(
                "Chat changed",
                messages=message_count,
                last_extracted_index=cursor.last_extracted_index,
                messages_since_extraction=cursor.messages_since_extraction,
            )

        write_cursor(ctx.metadata, cursor)
        ctx.save_metadata()
        return cursor

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def pin_memory(self, text: str) -> int:
        """Save user-selected text as a memory block of the live chat; returns bullets saved."""
        ctx = self._live_context()
        if ctx is None:
            return 0
        assert ctx.character_name and ctx.chat_id
        bullets = text_to_bullets(text)
        if not bullets:
            return 0
        storage = self.storage_factory(ctx.character_name, ctx.chat_id)
        storage.append([MemoryBlock(source_id=ctx.chat_id, date=memory_timestamp(), bullets=bullets)])
        logger.info("Memory pinned", character=ctx.character_name, chat_id=ctx.chat_id, bullets=len(bullets))
        return len(bullets)

    def reset_cursor(self, batch_key: str | None = None) -> bool:
        """Forget extraction progress for the live chat (or one background chat)."""
        if batch_key is not None:
            self.batch_cursors.reset(batch_key)
            return True
        ctx = self._live_context()
        if ctx is None:
            return False
        cursor = read_cursor(ctx.metadata)
        cursor.reset()
        write_cursor(ctx.metadata, cursor)
        ctx.save_metadata()
        logger.info("Extraction cursor reset", chat_id=ctx.chat_id)
        return True

    def clear_memories(self) -> int:
        """Delete the live character's memories and reset the live chat's progress."""
        ctx = self._live_context()
        if ctx is None:
            return 0
        assert ctx.character_name
        removed = self.storage_factory(ctx.character_name, ctx.chat_id).clear()
        self.reset_cursor()
        logger.info("Memories cleared", character=ctx.character_name, attachments=removed)
        return removed
