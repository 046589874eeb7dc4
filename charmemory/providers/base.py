"""Base interface for generation backends."""

from abc import ABC, abstractmethod
from typing import Any


class GenerationError(Exception):
    """Transport or API failure while generating text."""


class BackendUnavailableError(GenerationError):
    """The selected backend cannot be used in this environment at all."""


class GenerationBackend(ABC):
    """
    One call in, raw text out.

    Backends make a single attempt per call; retries and timeouts are not the
    pipeline's concern.
    """

    name: str = "backend"
    # Small-context backends get prompts truncated to ``max_prompt_chars``.
    tight_context: bool = False

    @abstractmethod
    async def generate(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        """
        Generate a completion.

        Args:
            messages: Chat messages as ``{"role", "content"}`` dicts.
            max_tokens: Maximum tokens in the response.

        Returns:
            The raw response text (possibly empty).

        Raises:
            BackendUnavailableError: The backend cannot run here.
            GenerationError: Any other failure.
        """
