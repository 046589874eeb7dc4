"""Chat transcripts and chat-scoped metadata, stored as JSONL files."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from charmemory.logging import get_logger
from charmemory.utils.helpers import ensure_dir, safe_filename

logger = get_logger(__name__)


@dataclass
class ChatMessage:
    """One rendered chat message as seen by the extractor."""

    speaker: str
    text: str
    is_system: bool = False
    is_user: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "speaker": self.speaker,
            "text": self.text,
            "is_system": self.is_system,
            "is_user": self.is_user,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls(
            speaker=str(data.get("speaker") or ""),
            text=str(data.get("text") or ""),
            is_system=bool(data.get("is_system", False)),
            is_user=bool(data.get("is_user", False)),
        )


class ChatContext(Protocol):
    """What the extractor needs from the host's live chat."""

    character_name: str | None
    character_card: str
    chat_id: str | None
    messages: list[ChatMessage]
    is_streaming: bool
    metadata: dict[str, Any]

    def save_metadata(self) -> None: ...


@dataclass
class ChatSession:
    """
    A conversation with one character.

    The transcript is append-only; extraction progress lives in ``metadata``.
    """

    key: str
    character_name: str | None = None
    character_card: str = ""
    user_name: str = "User"
    messages: list[ChatMessage] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    is_streaming: bool = False
    on_save: Callable[["ChatSession"], None] | None = field(default=None, repr=False, compare=False)

    @property
    def chat_id(self) -> str:
        return self.key

    def add_message(self, speaker: str, text: str, *, is_user: bool = False, is_system: bool = False) -> None:
        self.messages.append(ChatMessage(speaker=speaker, text=text, is_user=is_user, is_system=is_system))
        self.updated_at = datetime.now()

    def save_metadata(self) -> None:
        self.updated_at = datetime.now()
        if self.on_save is not None:
            self.on_save(self)


class ChatManager:
    """
    Manages chat sessions.

    Chats are stored as JSONL files in the ``chats`` directory: a metadata
    line followed by one line per message.
    """

    def __init__(self, workspace: Path):
        self.workspace = workspace
        self.chats_dir = ensure_dir(self.workspace / "chats")
        self._cache: dict[str, ChatSession] = {}
        self._persisted_signatures: dict[str, str] = {}
        self._save_writes = 0
        self._save_skips = 0

    def _get_chat_path(self, key: str) -> Path:
        return self.chats_dir / f"{safe_filename(key)}.jsonl"

    def get_or_create(self, key: str, *, character_name: str | None = None) -> ChatSession:
        """
        Get an existing chat or create a new one.

        Args:
            key: Chat identifier.
            character_name: Character for a newly created chat.

        Returns:
            The chat session.
        """
        if key in self._cache:
            return self._cache[key]

        loaded = self._load(key)
        session = loaded or ChatSession(key=key, character_name=character_name)
        session.on_save = self.save

        self._cache[key] = session
        if loaded is not None:
            self._persisted_signatures[key] = self._persist_signature(session)
        return session

    def get(self, key: str) -> ChatSession | None:
        if key in self._cache:
            return self._cache[key]
        loaded = self._load(key)
        if loaded is None:
            return None
        loaded.on_save = self.save
        self._cache[key] = loaded
        self._persisted_signatures[key] = self._persist_signature(loaded)
        return loaded

    def _load(self, key: str) -> ChatSession | None:
        """Load a chat from disk."""
        path = self._get_chat_path(key)
        if not path.exists():
            return None

        try:
            messages: list[ChatMessage] = []
            header: dict[str, Any] = {}

            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue

                    data = json.loads(line)

                    if data.get("_type") == "metadata":
                        header = data
                    else:
                        messages.append(ChatMessage.from_dict(data))

            created_at = header.get("created_at")
            updated_at = header.get("updated_at")
            return ChatSession(
                key=key,
                character_name=header.get("character_name"),
                character_card=header.get("character_card", ""),
                user_name=header.get("user_name", "User"),
                messages=messages,
                metadata=header.get("metadata", {}),
                created_at=datetime.fromisoformat(created_at) if created_at else datetime.now(),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else datetime.now(),
            )
        except Exception as e:
            logger.warning("Failed to load chat", chat_id=key, error=str(e))
            return None

    @staticmethod
    def _persist_signature(session: ChatSession) -> str:
        """Compute a compact signature for persisted chat content."""
        metadata_json = json.dumps(session.metadata, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        last_msg_json = (
            json.dumps(session.messages[-1].to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
            if session.messages else ""
        )
        return "|".join((
            session.key,
            str(session.character_name),
            str(len(session.messages)),
            metadata_json,
            last_msg_json,
        ))

    @staticmethod
    def _write_chat_file(path: Path, session: ChatSession) -> None:
        with open(path, "w", encoding="utf-8") as f:
            metadata_line = {
                "_type": "metadata",
                "key": session.key,
                "character_name": session.character_name,
                "character_card": session.character_card,
                "user_name": session.user_name,
                "created_at": session.created_at.isoformat(),
                "updated_at": session.updated_at.isoformat(),
                "metadata": session.metadata,
            }
            f.write(json.dumps(metadata_line, ensure_ascii=False) + "\n")
            for msg in session.messages:
                f.write(json.dumps(msg.to_dict(), ensure_ascii=False) + "\n")

    def save(self, session: ChatSession) -> None:
        """Save a chat to disk, skipping the write when nothing persisted has changed."""
        path = self._get_chat_path(session.key)
        started = time.perf_counter()
        signature = self._persist_signature(session)
        if path.exists() and self._persisted_signatures.get(session.key) == signature:
            self._save_skips += 1
            logger.debug(
                "chat_save_skipped",
                chat_id=session.key,
                message_count=len(session.messages),
                save_skips=self._save_skips,
            )
            self._cache[session.key] = session
            return

        self._write_chat_file(path, session)
        self._save_writes += 1
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        self._cache[session.key] = session
        self._persisted_signatures[session.key] = signature
        logger.debug(
            "chat_save_written",
            chat_id=session.key,
            message_count=len(session.messages),
            elapsed_ms=elapsed_ms,
            save_writes=self._save_writes,
        )
