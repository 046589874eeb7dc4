"""Chat transcripts consumed by the extractor."""

from charmemory.chat.manager import ChatContext, ChatManager, ChatMessage, ChatSession

__all__ = ["ChatContext", "ChatManager", "ChatMessage", "ChatSession"]
