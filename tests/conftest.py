import os

# Use litellm's bundled model cost map; the remote fetch (and its background
# retry thread) races module import when the network is unavailable.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import asyncio
from typing import Any

import pytest

from charmemory.chat.manager import ChatMessage, ChatSession
from charmemory.memory.attachments import InMemoryAttachmentStore
from charmemory.memory.storage import BlockFileStorage
from charmemory.providers.base import GenerationBackend


class ScriptedBackend(GenerationBackend):
    """Returns queued responses in order; exceptions in the queue are raised."""

    name = "scripted"

    def __init__(self, responses: list[Any] | None = None, *, tight_context: bool = False) -> None:
        self.responses = list(responses or [])
        self.tight_context = tight_context
        self.calls: list[list[dict[str, Any]]] = []
        self.max_tokens: list[int] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def generate(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        self.calls.append(messages)
        self.max_tokens.append(max_tokens)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            return "NO_NEW_MEMORIES"
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(messages)
        return response


def make_chat(key: str = "chat7", count: int = 0, *, character: str = "Alice") -> ChatSession:
    chat = ChatSession(key=key, character_name=character, character_card="A curious librarian.")
    for i in range(count):
        if i % 2:
            chat.messages.append(ChatMessage(speaker=character, text=f"reply {i}"))
        else:
            chat.messages.append(ChatMessage(speaker="Bob", text=f"message {i}", is_user=True))
    return chat


def memory(*bullets: str) -> str:
    body = "\n".join(f"- {b}" for b in bullets)
    return f"<memory>\n{body}\n</memory>"


@pytest.fixture
def attachments() -> InMemoryAttachmentStore:
    return InMemoryAttachmentStore()


@pytest.fixture
def storage(attachments: InMemoryAttachmentStore) -> BlockFileStorage:
    return BlockFileStorage(attachments, "Alice-memories.md")
