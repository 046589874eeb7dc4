"""Generation backends."""

from charmemory.providers.base import BackendUnavailableError, GenerationBackend, GenerationError

__all__ = ["BackendUnavailableError", "GenerationBackend", "GenerationError"]
