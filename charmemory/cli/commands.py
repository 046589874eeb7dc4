"""charmemory command-line interface."""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import typer

from charmemory import __version__
from charmemory.chat.manager import ChatManager, ChatSession
from charmemory.config.loader import load_config
from charmemory.config.schema import Config
from charmemory.extraction.coordinator import OperationCoordinator
from charmemory.extraction.cursor import BatchCursorStore, read_cursor
from charmemory.extraction.orchestrator import MemoryExtractor
from charmemory.extraction.prompt import PromptBuilder
from charmemory.extraction.types import BatchChat, ExtractionResult, ExtractionStatus
from charmemory.extraction.window import count_unprocessed
from charmemory.logging import setup_logging
from charmemory.memory.attachments import LocalAttachmentStore
from charmemory.memory.consolidation import ConsolidationEngine, ConsolidationPreview, ConsolidationStatus
from charmemory.memory.storage import MemoryStorage, create_storage
from charmemory.providers.factory import create_backend

app = typer.Typer(
    name="charmemory",
    help="Long-term character memories extracted from chat history.",
    no_args_is_help=True,
)


class EchoNotifier:
    """Notices printed to the terminal."""

    def info(self, message: str) -> None:
        typer.echo(message)

    def success(self, message: str) -> None:
        typer.secho(message, fg=typer.colors.GREEN)

    def warning(self, message: str) -> None:
        typer.secho(message, fg=typer.colors.YELLOW, err=True)

    def error(self, message: str) -> None:
        typer.secho(message, fg=typer.colors.RED, err=True)


@dataclass
class _Services:
    config: Config
    chats: ChatManager
    consolidation: ConsolidationEngine
    extractor: MemoryExtractor = field(init=False)
    # chat treated as the open chat by the extractor
    live: ChatSession | None = None

    def storage(self, character: str, chat_id: str | None = None) -> MemoryStorage:
        return self.extractor.storage_factory(character, chat_id)


def _services() -> _Services:
    config = load_config()
    setup_logging(json_output=config.logging.json_output, level=config.logging.level)
    workspace = config.workspace_path
    memories_root = workspace / "memories"

    def storage_factory(character: str, chat_id: str | None) -> MemoryStorage:
        return create_storage(
            config.storage,
            LocalAttachmentStore(memories_root, character),
            character=character,
            chat_id=chat_id,
        )

    backend = create_backend(config.backend)
    provider = config.backend.get_provider()
    builder = PromptBuilder.for_backend(backend.tight_context, config.backend.max_prompt_chars)
    coordinator = OperationCoordinator()
    consolidation = ConsolidationEngine(
        backend,
        coordinator=coordinator,
        builder=builder,
        response_length=config.extraction.response_length,
        prompt_template=config.extraction.consolidation_prompt,
    )
    services = _Services(config=config, chats=ChatManager(workspace), consolidation=consolidation)
    services.extractor = MemoryExtractor(
        backend,
        storage_factory=storage_factory,
        context_provider=lambda: services.live,
        config=config.extraction,
        coordinator=coordinator,
        consolidation=consolidation,
        batch_cursors=BatchCursorStore(workspace / "state.json"),
        builder=builder,
        system_prompt=provider.system_prompt,
        notifier=EchoNotifier(),
    )
    return services


def _require_chat(chats: ChatManager, key: str) -> ChatSession:
    session = chats.get(key)
    if session is None:
        typer.secho(f"Chat not found: {key}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if not session.character_name:
        typer.secho(f"Chat {key} has no character.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return session


def _open_chat(services: _Services, key: str) -> ChatSession:
    """Make *key* the live chat and run the chat-opened checks on it."""
    session = _require_chat(services.chats, key)
    services.live = session
    services.extractor.on_chat_changed()
    return session


def _exit_for(result: ExtractionResult) -> None:
    if result.status in (ExtractionStatus.FAILED, ExtractionStatus.UNAVAILABLE):
        raise typer.Exit(1)


async def _print_progress(chunk: int, total: int, memories: int) -> None:
    typer.echo(f"Chunk {chunk}/{total}: {memories} memories so far")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"charmemory {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """charmemory: character memory extraction."""


@app.command()
def extract(
    chat: str = typer.Argument(..., help="Chat key"),
    force: bool = typer.Option(False, "--force", "-f", help="Run even when disabled or cooling down"),
    end_index: Optional[int] = typer.Option(None, "--end-index", help="Last message index to include"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask before long runs"),
) -> None:
    """Extract memories from the chat's unprocessed messages."""
    services = _services()
    _open_chat(services, chat)

    async def _confirm(question: str) -> bool:
        return typer.confirm(question, default=True)

    result = asyncio.run(
        services.extractor.extract(
            force=force,
            end_index=end_index,
            on_progress=_print_progress,
            confirm=None if yes else _confirm,
        )
    )
    if result.status is ExtractionStatus.SKIPPED:
        typer.echo(result.message)
    typer.echo(f"Last extracted index: {result.last_extracted_index}")
    _exit_for(result)


@app.command()
def batch(
    chats: list[str] = typer.Argument(..., help="Chat keys to process as background chats"),
) -> None:
    """Extract from stored chats without touching their live extraction state."""
    services = _services()
    batch_chats = []
    for key in chats:
        session = _require_chat(services.chats, key)
        assert session.character_name
        batch_chats.append(
            BatchChat(
                key=session.key,
                character_name=session.character_name,
                messages=session.messages,
                character_card=session.character_card,
            )
        )

    results = asyncio.run(services.extractor.extract_batch(batch_chats, on_progress=_print_progress))
    for chat, result in zip(batch_chats, results):
        typer.echo(f"{chat.key}: {result.status.value}, {result.total_memories} memories, "
                   f"last index {result.last_extracted_index}")
    if any(r.status in (ExtractionStatus.FAILED, ExtractionStatus.UNAVAILABLE) for r in results):
        raise typer.Exit(1)


@app.command()
def consolidate(
    character: str = typer.Argument(..., help="Character name"),
    chat: Optional[str] = typer.Option(None, "--chat", help="Chat key (per-chat storage)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply without confirmation"),
) -> None:
    """Merge duplicate and related memories after previewing the result."""
    services = _services()
    storage = services.storage(character, chat)

    async def _confirm(preview: ConsolidationPreview) -> bool:
        typer.echo(preview.render())
        if yes:
            return True
        return typer.confirm("Apply consolidation?", default=False)

    result = asyncio.run(services.consolidation.consolidate(storage, _confirm))
    typer.echo(result.message)
    if result.status in (ConsolidationStatus.FAILED, ConsolidationStatus.UNAVAILABLE):
        raise typer.Exit(1)


@app.command("list")
def list_memories(
    character: str = typer.Argument(..., help="Character name"),
    chat: Optional[str] = typer.Option(None, "--chat", help="Chat key (per-chat storage)"),
) -> None:
    """Show stored memories with their block and bullet numbers."""
    storage = _services().storage(character, chat)
    blocks = storage.read_blocks()
    if not blocks:
        typer.echo("No memories.")
        return
    for i, block in enumerate(blocks, start=1):
        typer.secho(f"[{i}] chat={block.source_id} date={block.date}", bold=True)
        for j, bullet in enumerate(block.bullets, start=1):
            typer.echo(f"  {j}. {bullet}")
    typer.echo(f"{storage.count()} memories in {len(blocks)} blocks")


@app.command()
def pin(
    chat: str = typer.Argument(..., help="Chat key"),
    text: str = typer.Argument(..., help="Memory text; one bullet per line"),
) -> None:
    """Save text as a memory of the chat's character."""
    services = _services()
    services.live = _require_chat(services.chats, chat)
    saved = services.extractor.pin_memory(text)
    if not saved:
        typer.secho("Nothing to pin.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(1)
    typer.echo(f"{saved} {'memory' if saved == 1 else 'memories'} pinned")


@app.command()
def edit(
    character: str = typer.Argument(..., help="Character name"),
    block: int = typer.Argument(..., help="Block number"),
    bullet: int = typer.Argument(..., help="Bullet number"),
    text: str = typer.Argument(..., help="New text; empty deletes the bullet"),
    chat: Optional[str] = typer.Option(None, "--chat", help="Chat key (per-chat storage)"),
) -> None:
    """Replace one memory bullet."""
    storage = _services().storage(character, chat)
    if not storage.edit_bullet(block - 1, bullet - 1, text):
        typer.secho("No such memory.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.echo("Memory updated")


@app.command()
def delete(
    character: str = typer.Argument(..., help="Character name"),
    block: int = typer.Argument(..., help="Block number"),
    bullet: Optional[int] = typer.Argument(None, help="Bullet number; omit to delete the whole block"),
    chat: Optional[str] = typer.Option(None, "--chat", help="Chat key (per-chat storage)"),
) -> None:
    """Delete one bullet, or a whole block."""
    storage = _services().storage(character, chat)
    if bullet is None:
        ok = storage.delete_block(block - 1)
    else:
        ok = storage.delete_bullet(block - 1, bullet - 1)
    if not ok:
        typer.secho("No such memory.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.echo("Memory deleted")


@app.command("add-message")
def add_message(
    chat: str = typer.Argument(..., help="Chat key"),
    speaker: str = typer.Argument(..., help="Speaker name"),
    text: str = typer.Argument(..., help="Message text"),
    user: bool = typer.Option(False, "--user", help="Message is from the user"),
    character: Optional[str] = typer.Option(None, "--character", "-c", help="Character for a new chat"),
) -> None:
    """Append a message; character messages count toward automatic extraction."""
    services = _services()
    session = services.chats.get_or_create(chat, character_name=character)
    if not session.character_name:
        typer.secho("A new chat needs --character.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    services.live = session
    services.extractor.on_chat_changed()
    session.add_message(speaker, text, is_user=user)
    services.chats.save(session)
    if user:
        return
    result = asyncio.run(services.extractor.on_message_rendered())
    if result is not None:
        _exit_for(result)


@app.command()
def reset(chat: str = typer.Argument(..., help="Chat key")) -> None:
    """Forget extraction progress so the next run re-reads the whole chat."""
    services = _services()
    services.live = _require_chat(services.chats, chat)
    services.extractor.reset_cursor()
    typer.echo("Extraction state reset")


@app.command()
def clear(
    chat: str = typer.Argument(..., help="Chat key"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete the character's memories and reset the chat's extraction progress."""
    services = _services()
    session = _require_chat(services.chats, chat)
    if not yes and not typer.confirm(f"Delete all memories of {session.character_name}?", default=False):
        raise typer.Exit(1)
    services.live = session
    removed = services.extractor.clear_memories()
    typer.echo(f"Memories cleared ({removed} file(s) removed)")


@app.command()
def status(chat: str = typer.Argument(..., help="Chat key")) -> None:
    """Show extraction progress for a chat."""
    services = _services()
    session = _require_chat(services.chats, chat)
    assert session.character_name
    cursor = read_cursor(session.metadata)
    storage = services.storage(session.character_name, session.key)
    typer.echo(f"Character: {session.character_name}")
    typer.echo(f"Messages: {len(session.messages)}")
    typer.echo(f"Last extracted index: {cursor.last_extracted_index}")
    typer.echo(f"Messages since extraction: {cursor.messages_since_extraction}")
    typer.echo(f"Unprocessed: {count_unprocessed(len(session.messages), cursor.last_extracted_index)}")
    typer.echo(f"Memories: {storage.count()} ({storage.count_for_source(session.key)} from this chat)")
    typer.echo(f"Backend: {services.config.backend.source}")
