import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import ScriptedBackend, make_chat, memory

from charmemory.config.schema import ExtractionConfig
from charmemory.extraction.cooldown import CancellationToken, CooldownGate
from charmemory.extraction.coordinator import OperationCoordinator
from charmemory.extraction.cursor import BatchCursorStore, ExtractionCursor, read_cursor, write_cursor
from charmemory.extraction.orchestrator import MemoryExtractor
from charmemory.extraction.prompt import PromptBuilder
from charmemory.extraction.types import BatchChat, ExtractionStatus, RunState
from charmemory.memory.blocks import MemoryBlock
from charmemory.memory.consolidation import ConsolidationEngine
from charmemory.memory.storage import EntryFileStorage
from charmemory.providers.base import BackendUnavailableError, GenerationError


def _extractor(backend, chat, storage, *, live=True, notifier=None, **config):
    config.setdefault("chunk_size", 10)
    coordinator = OperationCoordinator()
    return MemoryExtractor(
        backend,
        storage_factory=lambda character, chat_id: storage,
        context_provider=(lambda: chat) if live else None,
        config=ExtractionConfig(**config),
        coordinator=coordinator,
        consolidation=ConsolidationEngine(backend, coordinator=coordinator),
        notifier=notifier or MagicMock(),
    )


class TestChunkLoop:
    @pytest.mark.asyncio
    async def test_25_messages_in_chunks_of_10(self, storage) -> None:
        chat = make_chat(count=25)
        backend = ScriptedBackend([memory("fact 1"), memory("fact 2"), memory("fact 3")])
        extractor = _extractor(backend, chat, storage)

        result = await extractor.extract(force=True)

        assert result.status is ExtractionStatus.COMPLETED
        assert result.chunks_processed == 3
        assert result.total_memories == 3
        assert result.last_extracted_index == 24
        assert len(backend.calls) == 3
        assert read_cursor(chat.metadata) == ExtractionCursor(24, 0)
        # multi-chunk runs merge the chat's blocks
        blocks = storage.read_blocks()
        assert len(blocks) == 1
        assert blocks[0].source_id == "chat7"
        assert blocks[0].bullets == ["fact 1", "fact 2", "fact 3"]
        assert extractor.state is RunState.IDLE
        assert extractor.last_state is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_multi_chunk_merge_leaves_other_chats_alone(self, storage) -> None:
        storage.append([
            MemoryBlock("chat1", "2026-10-01 10:00", ["c1 early"]),
            MemoryBlock("chat1", "2026-10-05 10:00", ["c1 late"]),
        ])
        chat = make_chat(count=20)
        backend = ScriptedBackend([memory("fact 1"), memory("fact 2")])

        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.chunks_processed == 2
        blocks = storage.read_blocks()
        assert [(b.source_id, b.date, b.bullets) for b in blocks[:2]] == [
            ("chat1", "2026-10-01 10:00", ["c1 early"]),
            ("chat1", "2026-10-05 10:00", ["c1 late"]),
        ]
        assert [(b.source_id, b.bullets) for b in blocks[2:]] == [("chat7", ["fact 1", "fact 2"])]

    @pytest.mark.asyncio
    async def test_chunk_prompt_carries_messages_and_existing_memories(self, storage) -> None:
        storage.append([MemoryBlock("chat1", "2026-10-01 10:00", ["Alice hates rain."])])
        chat = make_chat(count=3)
        backend = ScriptedBackend([memory("new")])
        extractor = _extractor(backend, chat, storage, response_length=321)

        await extractor.extract(force=True)

        system, user = backend.calls[0]
        assert system == {"role": "system", "content": "You are a memory extraction assistant."}
        assert "Character name: Alice" in user["content"]
        assert "A curious librarian." in user["content"]
        assert "- Alice hates rain." in user["content"]
        assert "Bob: message 0\n\nAlice: reply 1\n\nBob: message 2" in user["content"]
        assert backend.max_tokens == [321]

    @pytest.mark.asyncio
    async def test_chat7_response_becomes_one_block(self, storage) -> None:
        chat = make_chat(count=4)
        backend = ScriptedBackend(["<think>plan</think>\n<memory>\n- Alice met Bob\n- They argued\n</memory>"])
        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.total_memories == 2
        (block,) = storage.read_blocks()
        assert block.source_id == "chat7"
        assert block.bullets == ["Alice met Bob", "They argued"]
        assert len(block.date) == len("2026-10-19 14:05")

    @pytest.mark.asyncio
    async def test_no_new_memories_still_advances(self, storage, attachments) -> None:
        chat = make_chat(count=5)
        backend = ScriptedBackend(["NO_NEW_MEMORIES"])

        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.status is ExtractionStatus.COMPLETED
        assert result.total_memories == 0
        assert read_cursor(chat.metadata).last_extracted_index == 4
        assert attachments.list() == []

    @pytest.mark.asyncio
    async def test_second_run_is_a_noop(self, storage) -> None:
        chat = make_chat(count=5)
        backend = ScriptedBackend([memory("fact")])
        extractor = _extractor(backend, chat, storage)
        await extractor.extract(force=True)
        before = storage.read_text()

        result = await extractor.extract(force=True)

        assert result.status is ExtractionStatus.SKIPPED
        assert result.message == "No new messages to extract."
        assert result.last_extracted_index == 4
        assert len(backend.calls) == 1
        assert storage.read_text() == before

    @pytest.mark.asyncio
    async def test_automatic_noop_message_differs(self, storage) -> None:
        chat = make_chat(count=0)
        result = await _extractor(ScriptedBackend(), chat, storage).extract()
        assert result.status is ExtractionStatus.SKIPPED
        assert result.message == "No unprocessed messages."

    @pytest.mark.asyncio
    async def test_end_index_limits_the_run(self, storage) -> None:
        chat = make_chat(count=30)
        backend = ScriptedBackend()
        result = await _extractor(backend, chat, storage).extract(force=True, end_index=14)

        assert result.last_extracted_index == 14
        assert result.chunks_processed == 2

    @pytest.mark.asyncio
    async def test_chunk_without_usable_text_stops_the_run(self, storage) -> None:
        chat = make_chat(count=0)
        chat.add_message("Alice", "```code only```")
        chat.add_message("Bob", "hi")
        backend = ScriptedBackend()

        result = await _extractor(backend, chat, storage, chunk_size=1).extract(force=True)

        assert result.status is ExtractionStatus.COMPLETED
        assert result.chunks_processed == 0
        assert backend.calls == []
        assert read_cursor(chat.metadata).last_extracted_index == -1

    @pytest.mark.asyncio
    async def test_tight_context_backend_gets_truncated_prompt(self, storage) -> None:
        chat = make_chat(count=0)
        for i in range(20):
            chat.add_message("Bob", f"long message {i} " + "word " * 100)
        backend = ScriptedBackend(tight_context=True)
        extractor = _extractor(backend, chat, storage, chunk_size=20)
        extractor.builder = PromptBuilder.for_backend(backend.tight_context, 1000)

        await extractor.extract(force=True)

        assert "[...truncated]" in backend.calls[0][1]["content"]


class TestEntryFiles:
    @pytest.mark.asyncio
    async def test_each_entry_becomes_a_file(self, attachments) -> None:
        storage = EntryFileStorage(attachments, "Alice")
        chat = make_chat(count=3)
        backend = ScriptedBackend([
            "<memory>\nEvent type: meeting\nSummary: Alice met Bob\n</memory>\n"
            "<memory>\nEvent type: quarrel\n</memory>"
        ])

        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.total_memories == 3
        assert len(attachments.list()) == 2
        assert "Event type:" in backend.calls[0][1]["content"]
        assert [b.bullets for b in storage.read_blocks()] == [
            ["Event type: meeting", "Summary: Alice met Bob"],
            ["Event type: quarrel"],
        ]

    @pytest.mark.asyncio
    async def test_untagged_response_saves_nothing(self, attachments) -> None:
        storage = EntryFileStorage(attachments, "Alice")
        chat = make_chat(count=3)
        backend = ScriptedBackend(["Alice met Bob."])

        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.status is ExtractionStatus.COMPLETED
        assert result.total_memories == 0
        assert attachments.list() == []
        assert read_cursor(chat.metadata).last_extracted_index == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_keeps_completed_chunks(self, storage) -> None:
        chat = make_chat(count=25)
        notifier = MagicMock()
        backend = ScriptedBackend([memory("kept"), GenerationError("HTTP 500")])

        result = await _extractor(backend, chat, storage, notifier=notifier).extract(force=True)

        assert result.status is ExtractionStatus.FAILED
        assert result.chunks_processed == 1
        assert result.last_extracted_index == 9
        assert result.message == "Memory extraction failed. Check the logs for details."
        assert [b.bullets for b in storage.read_blocks()] == [["kept"]]
        notifier.error.assert_called_once_with(result.message)

        # the next run resumes after the committed chunk
        backend.responses = []
        retry = await _extractor(backend, chat, storage).extract(force=True)
        assert retry.status is ExtractionStatus.COMPLETED
        assert retry.last_extracted_index == 24

    @pytest.mark.asyncio
    async def test_backend_unavailable_aborts_with_specific_message(self, storage) -> None:
        chat = make_chat(count=5)
        backend = ScriptedBackend([BackendUnavailableError("Local model server is not reachable")])

        result = await _extractor(backend, chat, storage).extract(force=True)

        assert result.status is ExtractionStatus.UNAVAILABLE
        assert result.message == "Local model server is not reachable"
        assert read_cursor(chat.metadata).last_extracted_index == -1

    @pytest.mark.asyncio
    async def test_chat_switch_during_call_discards_chunk(self, storage) -> None:
        chat = make_chat(count=5)
        other = make_chat("chat8", count=5)
        current = {"chat": chat}

        def _switch(messages):
            current["chat"] = other
            return memory("from the old chat")

        backend = ScriptedBackend([_switch])
        extractor = _extractor(backend, chat, storage)
        extractor.context_provider = lambda: current["chat"]

        result = await extractor.extract(force=True)

        assert result.status is ExtractionStatus.ABORTED
        assert result.message == "Chat changed during extraction."
        assert storage.read_blocks() == []
        assert read_cursor(chat.metadata).last_extracted_index == -1


class TestGuards:
    @pytest.mark.asyncio
    async def test_single_flight(self, storage) -> None:
        chat = make_chat(count=5)
        backend = ScriptedBackend([memory("fact")])
        backend.gate = asyncio.Event()
        extractor = _extractor(backend, chat, storage)

        first = asyncio.create_task(extractor.extract(force=True))
        await backend.started.wait()
        assert extractor.state is RunState.RUNNING

        second = await extractor.extract(force=True)
        assert second.status is ExtractionStatus.SKIPPED
        assert second.message == "A memory operation is already in progress."

        backend.gate.set()
        assert (await first).status is ExtractionStatus.COMPLETED
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_blocks_automatic_only(self, storage) -> None:
        chat = make_chat(count=5)
        extractor = _extractor(ScriptedBackend(), chat, storage, enabled=False)

        assert (await extractor.extract()).message == "Memory extraction is disabled."
        assert (await extractor.extract(force=True)).status is ExtractionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cooldown_applies_to_automatic_runs(self, storage) -> None:
        chat = make_chat(count=5)
        backend = ScriptedBackend()
        extractor = _extractor(backend, chat, storage)
        now = [1000.0]
        extractor.cooldown = CooldownGate(60, clock=lambda: now[0])

        assert (await extractor.extract()).status is ExtractionStatus.COMPLETED
        for i in range(5):
            chat.add_message("Bob", f"more {i}")
        now[0] += 20

        skipped = await extractor.extract()
        assert skipped.status is ExtractionStatus.SKIPPED
        assert "40s remaining" in skipped.message

        assert (await extractor.extract(force=True)).status is ExtractionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_live_chat(self, storage) -> None:
        extractor = _extractor(ScriptedBackend(), make_chat(count=5), storage, live=False)
        result = await extractor.extract(force=True)
        assert result.message == "No active character chat."

    @pytest.mark.asyncio
    async def test_streaming_defers_extraction(self, storage) -> None:
        chat = make_chat(count=5)
        chat.is_streaming = True
        backend = ScriptedBackend()
        result = await _extractor(backend, chat, storage).extract(force=True)
        assert result.status is ExtractionStatus.SKIPPED
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_long_forced_run_asks_for_confirmation(self, storage) -> None:
        chat = make_chat(count=45)
        backend = ScriptedBackend()
        asked: list[str] = []

        async def _decline(question: str) -> bool:
            asked.append(question)
            return False

        extractor = _extractor(backend, chat, storage)
        result = await extractor.extract(force=True, confirm=_decline)

        assert result.status is ExtractionStatus.SKIPPED
        assert asked == ["45 unprocessed messages will be sent in 5 chunks of 10. Continue?"]
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_cancel_token_makes_run_headless(self, storage) -> None:
        chat = make_chat(count=45)
        confirm = MagicMock()

        result = await _extractor(ScriptedBackend(), chat, storage).extract(
            force=True, cancel=CancellationToken(), confirm=confirm
        )

        assert result.chunks_processed == 5
        confirm.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self, storage) -> None:
        chat = make_chat(count=25)
        token = CancellationToken()
        progress: list[tuple[int, int, int]] = []

        async def _on_progress(chunk: int, total: int, memories: int) -> None:
            progress.append((chunk, total, memories))
            token.cancel()

        result = await _extractor(ScriptedBackend([memory("a")]), chat, storage).extract(
            force=True, cancel=token, on_progress=_on_progress
        )

        assert result.status is ExtractionStatus.ABORTED
        assert progress == [(1, 3, 1)]
        assert result.last_extracted_index == 9


class TestAutoConsolidation:
    @pytest.mark.asyncio
    async def test_large_multi_chunk_run_consolidates_its_source(self, storage) -> None:
        storage.append([MemoryBlock("chat1", "2026-10-01 10:00", ["other chat"])])
        chat = make_chat(count=20)
        backend = ScriptedBackend([
            memory("a", "b"),
            memory("c", "d"),
            memory("a+b", "c+d"),
        ])

        result = await _extractor(backend, chat, storage, auto_consolidate_threshold=3).extract(force=True)

        assert result.auto_consolidated is True
        assert backend.max_tokens[-1] == 1000
        blocks = storage.read_blocks()
        assert [(b.source_id, b.bullets) for b in blocks] == [
            ("chat1", ["other chat"]),
            ("chat7", ["a+b", "c+d"]),
        ]

    @pytest.mark.asyncio
    async def test_auto_consolidation_failure_is_not_fatal(self, storage) -> None:
        chat = make_chat(count=20)
        backend = ScriptedBackend([memory("a", "b"), memory("c", "d"), GenerationError("down")])

        result = await _extractor(backend, chat, storage, auto_consolidate_threshold=3).extract(force=True)

        assert result.status is ExtractionStatus.COMPLETED
        assert result.auto_consolidated is False
        assert storage.count_for_source("chat7") == 4


class TestHostEvents:
    @pytest.mark.asyncio
    async def test_rendered_messages_trigger_at_interval(self, storage) -> None:
        chat = make_chat(count=4)
        backend = ScriptedBackend([memory("fact")])
        extractor = _extractor(backend, chat, storage, interval=2)

        assert await extractor.on_message_rendered() is None
        assert read_cursor(chat.metadata).messages_since_extraction == 1

        result = await extractor.on_message_rendered()
        assert result is not None
        assert result.status is ExtractionStatus.COMPLETED
        assert read_cursor(chat.metadata) == ExtractionCursor(3, 0)

    def test_chat_change_resets_stale_cursor_and_seeds_counter(self, storage) -> None:
        chat = make_chat(count=12)
        write_cursor(chat.metadata, ExtractionCursor(last_extracted_index=9, messages_since_extraction=0))
        notifier = MagicMock()
        extractor = _extractor(ScriptedBackend(), chat, storage, notifier=notifier)

        cursor = extractor.on_chat_changed()

        assert cursor == ExtractionCursor(-1, 12)
        assert read_cursor(chat.metadata) == ExtractionCursor(-1, 12)
        notifier.warning.assert_called_once()

    def test_chat_change_keeps_valid_cursor(self, storage) -> None:
        storage.append([MemoryBlock("chat7", "d", ["fact"])])
        chat = make_chat(count=12)
        write_cursor(chat.metadata, ExtractionCursor(last_extracted_index=9, messages_since_extraction=0))
        extractor = _extractor(ScriptedBackend(), chat, storage)

        assert extractor.on_chat_changed() == ExtractionCursor(9, 2)

    def test_pin_memory(self, storage) -> None:
        chat = make_chat(count=2)
        extractor = _extractor(ScriptedBackend(), chat, storage)

        assert extractor.pin_memory("- Alice keeps a diary\n\nIt is blue") == 2
        assert extractor.pin_memory("   ") == 0
        (block,) = storage.read_blocks()
        assert block.source_id == "chat7"
        assert block.bullets == ["Alice keeps a diary", "It is blue"]

    def test_reset_and_clear(self, storage, attachments) -> None:
        chat = make_chat(count=2)
        write_cursor(chat.metadata, ExtractionCursor(last_extracted_index=1, messages_since_extraction=4))
        storage.append([MemoryBlock("chat7", "d", ["fact"])])
        extractor = _extractor(ScriptedBackend(), chat, storage)

        assert extractor.reset_cursor()
        assert read_cursor(chat.metadata) == ExtractionCursor(-1, 0)

        write_cursor(chat.metadata, ExtractionCursor(last_extracted_index=1))
        assert extractor.clear_memories() == 1
        assert attachments.list() == []
        assert read_cursor(chat.metadata) == ExtractionCursor(-1, 0)


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_uses_its_own_cursors(self, storage, tmp_path) -> None:
        live = make_chat(count=3)
        backend = ScriptedBackend([memory("from chat1"), memory("from chat2")])
        extractor = _extractor(backend, live, storage)
        extractor.batch_cursors = BatchCursorStore(tmp_path / "state.json")
        chats = [
            BatchChat(key="chat1", character_name="Alice", messages=make_chat("chat1", 4).messages),
            BatchChat(key="chat2", character_name="Alice", messages=make_chat("chat2", 6).messages),
        ]

        results = await extractor.extract_batch(chats)

        assert [r.last_extracted_index for r in results] == [3, 5]
        assert BatchCursorStore(tmp_path / "state.json").all() == {"chat1": 3, "chat2": 5}
        assert [b.source_id for b in storage.read_blocks()] == ["chat1", "chat2"]
        assert read_cursor(live.metadata) == ExtractionCursor(-1, 0)

    @pytest.mark.asyncio
    async def test_batch_stops_when_cancelled(self, storage) -> None:
        token = CancellationToken()
        backend = ScriptedBackend()
        extractor = _extractor(backend, None, storage, live=False)

        async def _stop(*_args) -> None:
            token.cancel()

        chats = [
            BatchChat(key="chat1", character_name="Alice", messages=make_chat("chat1", 4).messages),
            BatchChat(key="chat2", character_name="Alice", messages=make_chat("chat2", 4).messages),
        ]
        results = await extractor.extract_batch(chats, cancel=token, on_progress=_stop)

        assert len(results) == 1
        assert len(backend.calls) == 1
