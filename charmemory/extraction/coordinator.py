"""Single-flight coordination of extraction and consolidation work."""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from charmemory.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class OperationCoordinator:
    """Allows one memory operation at a time across the whole process.

    A second operation requested while one is running is dropped, never
    queued. Shared by the extractor and the consolidation engine.
    """

    def __init__(self) -> None:
        self.current: str | None = None
        self.dropped = 0

    @property
    def is_busy(self) -> bool:
        return self.current is not None

    async def run_exclusive(
        self,
        name: str,
        work: Callable[[], Awaitable[T]],
    ) -> T | None:
        """Run *work* as the current operation; returns None without running it when busy."""
        if self.current is not None:
            self.dropped += 1
            logger.debug("operation_dropped", requested=name, running=self.current, dropped=self.dropped)
            return None
        self.current = name
        try:
            return await work()
        finally:
            self.current = None
