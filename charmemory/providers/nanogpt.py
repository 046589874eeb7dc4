"""NanoGPT backend (OpenAI-compatible chat completions over HTTPS)."""

from typing import Any

import httpx

from charmemory.logging import get_logger, mask_secret
from charmemory.providers.base import GenerationBackend, GenerationError

logger = get_logger("charmemory.providers.nanogpt")

DEFAULT_API_BASE = "https://nano-gpt.com/api/v1"


class NanoGPTBackend(GenerationBackend):
    """Calls ``<api_base>/chat/completions`` with a bearer key."""

    name = "nanogpt"

    def __init__(
        self,
        api_key: str,
        model: str,
        api_base: str | None = None,
        temperature: float = 0.3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self.temperature = temperature
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def generate(self, messages: list[dict[str, Any]], max_tokens: int) -> str:
        if not self.api_key:
            raise GenerationError("NanoGPT API key is not set.")
        if not self.model:
            raise GenerationError("NanoGPT model is not selected.")

        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max(1, max_tokens),
            "temperature": self.temperature,
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
                response = await client.post(f"{self.api_base}/chat/completions", json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("nanogpt_request_failed", model=self.model, error=str(e))
            raise GenerationError(f"NanoGPT request failed: {e}") from e

        if response.status_code >= 400:
            error_msg = f"NanoGPT API error: {response.status_code}"
            try:
                body = response.json()
                detail = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
                error_msg += f" - {detail or body}"
            except ValueError:
                pass
            logger.error("nanogpt_api_error", model=self.model, status=response.status_code, api_key=mask_secret(self.api_key))
            raise GenerationError(error_msg)

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""
