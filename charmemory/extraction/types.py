"""Shared types/protocols for the extraction and consolidation modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Protocol, TypeAlias

from charmemory.chat.manager import ChatMessage
from charmemory.logging import get_logger

logger = get_logger(__name__)

# (chunk number, total chunks, memories saved so far)
ProgressCallback: TypeAlias = Callable[[int, int, int], Awaitable[None]]
ConfirmCallback: TypeAlias = Callable[[str], Awaitable[bool]]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class ExtractionStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class ExtractionResult:
    """Outcome of one extraction run. Never raised, always returned."""

    status: ExtractionStatus
    total_memories: int = 0
    chunks_processed: int = 0
    last_extracted_index: int = -1
    auto_consolidated: bool = False
    message: str = ""


@dataclass
class BatchChat:
    """A non-active chat history handed to extraction in batch mode."""

    key: str
    character_name: str
    messages: list[ChatMessage] = field(default_factory=list)
    character_card: str = ""


class Notifier(Protocol):
    """User-facing notices (toasts in a UI, lines on a terminal)."""

    def info(self, message: str) -> None: ...
    def success(self, message: str) -> None: ...
    def warning(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...


class LogNotifier:
    """Default notifier for headless use: notices go to the log."""

    def info(self, message: str) -> None:
        logger.info(message)

    def success(self, message: str) -> None:
        logger.info(message, outcome="success")

    def warning(self, message: str) -> None:
        logger.warning(message)

    def error(self, message: str) -> None:
        logger.error(message)
