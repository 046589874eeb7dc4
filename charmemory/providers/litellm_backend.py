"""LiteLLM backends: the main model and a local small-context model server."""

import logging
from typing import Any

import httpx
import litellm
from litellm import acompletion

from charmemory.logging import get_logger, mask_secret
from charmemory.providers.base import BackendUnavailableError, GenerationBackend, GenerationError

logger = get_logger("charmemory.providers.litellm")


# Standard OpenAI chat-completion message keys; extras are stripped for strict providers.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "name"})


class LiteLLMBackend(GenerationBackend):
    """
    Generation through LiteLLM, so any provider it knows (OpenAI, Anthropic,
    OpenRouter, Gemini, ...) can serve extraction with a ``provider/model`` id.
    """

    name = "main"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.3,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature

        if api_key:
            logger.info("backend_initialized", backend=self.name, model=model, api_key=mask_secret(api_key))

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Keep only standard keys and replace empty content, which some providers reject."""
        sanitized = []
        for msg in messages:
            clean = {k: v for k, v in msg.items() if k in _ALLOWED_MSG_KEYS}
            if not clean.get("content"):
                clean["content"] = "(empty)"
            sanitized.append(clean)
        return sanitized

    def _build_kwargs(self, messages: list[dict[str, Any]], max_tokens: int) -> dict[str, Any]:
        # Clamp max_tokens to at least 1; LiteLLM rejects zero or negative values.
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._sanitize_messages(messages),
            "max_tokens": max(1, max_tokens),
            "temperature": self.temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def generate(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        kwargs = self._build_kwargs(messages, max_tokens)

        if logging.getLogger("charmemory").isEnabledFor(logging.DEBUG):
            prompt_chars = sum(len(str(m.get("content", ""))) for m in kwargs["messages"])
            logger.debug("litellm_request", backend=self.name, model=self.model, prompt_chars=prompt_chars)

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            error_msg = str(e)
            # Mask any API keys that may appear in exception messages
            if self.api_key and self.api_key in error_msg:
                error_msg = error_msg.replace(self.api_key, mask_secret(self.api_key))
            logger.error("llm_call_failed", backend=self.name, model=self.model, error=error_msg)
            raise GenerationError(f"Error calling LLM: {error_msg}") from e

        return self._parse_response(response)

    @staticmethod
    def _parse_response(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return choices[0].message.content or ""


class LocalModelBackend(LiteLLMBackend):
    """
    A small model served locally (Ollama, llama.cpp server, ...).

    Its context window is small, so prompts are truncated, and a server that
    cannot be reached makes the backend unavailable rather than failing a call.
    """

    name = "local"
    tight_context = True

    def __init__(self, model: str, api_base: str, temperature: float = 0.3):
        super().__init__(model=model, api_base=api_base, temperature=temperature)

    async def _check_available(self) -> None:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                await client.get(self.api_base or "")
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                f"Local model server at {self.api_base} is not reachable: {e}"
            ) from e

    async def generate(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        await self._check_available()
        return await super().generate(messages, max_tokens)

