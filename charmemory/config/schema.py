"""Configuration schema using Pydantic."""

import os
import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_ENV_REF_RE = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unresolvable references are returned unchanged."""
    if not value:
        return value
    m = _ENV_REF_RE.match(value.strip())
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractionConfig(Base):
    """Extraction / consolidation policy."""

    enabled: bool = True
    interval: int = Field(default=10, ge=1)  # character messages between automatic runs
    chunk_size: int = Field(default=20, ge=1)
    response_length: int = Field(default=500, ge=1)
    cooldown_seconds: float = Field(default=60.0, ge=0)
    auto_consolidate_threshold: int = Field(default=30, ge=1)
    confirm_chunk_threshold: int = Field(default=3, ge=1)
    stale_cursor_reset: bool = True
    extraction_prompt: str = ""  # empty -> built-in template
    consolidation_prompt: str = ""


class StorageConfig(Base):
    """Where and how memories are persisted."""

    mode: Literal["blocks", "files"] = "blocks"
    file_name: str = ""  # empty -> derived from the character (and chat when per_chat)
    per_chat: bool = False


class ProviderConfig(Base):
    """Credentials and model for one generation backend."""

    model: str = ""
    api_key: str = ""
    api_base: str | None = None
    system_prompt: str = ""
    temperature: float = 0.3

    @property
    def resolved_api_key(self) -> str:
        return _resolve_env(self.api_key)


class BackendConfig(Base):
    """Generation backend selection."""

    source: Literal["main", "nanogpt", "local"] = "main"
    main: ProviderConfig = Field(default_factory=lambda: ProviderConfig(model="openai/gpt-4o-mini"))
    nanogpt: ProviderConfig = Field(default_factory=lambda: ProviderConfig(api_base="https://nano-gpt.com/api/v1"))
    local: ProviderConfig = Field(
        default_factory=lambda: ProviderConfig(model="ollama/llama3.2", api_base="http://localhost:11434")
    )
    max_prompt_chars: int = Field(default=6000, ge=1000)

    def get_provider(self, source: str | None = None) -> ProviderConfig:
        return getattr(self, source or self.source)


class LoggingConfig(Base):
    json_output: bool = False
    level: str = "INFO"


class Config(Base):
    """Root configuration for charmemory."""

    workspace: str = "~/.charmemory/workspace"
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()
