"""Pick the generation backend named by configuration."""

from charmemory.config.schema import BackendConfig
from charmemory.providers.base import GenerationBackend
from charmemory.providers.litellm_backend import LiteLLMBackend, LocalModelBackend
from charmemory.providers.nanogpt import NanoGPTBackend


def create_backend(config: BackendConfig) -> GenerationBackend:
    provider = config.get_provider()
    if config.source == "nanogpt":
        return NanoGPTBackend(
            api_key=provider.resolved_api_key,
            model=provider.model,
            api_base=provider.api_base,
            temperature=provider.temperature,
        )
    if config.source == "local":
        return LocalModelBackend(
            model=provider.model,
            api_base=provider.api_base or "http://localhost:11434",
            temperature=provider.temperature,
        )
    return LiteLLMBackend(
        model=provider.model,
        api_key=provider.resolved_api_key or None,
        api_base=provider.api_base,
        temperature=provider.temperature,
    )
