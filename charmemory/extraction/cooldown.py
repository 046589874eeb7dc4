"""Cooldown between automatic extractions, and cooperative cancellation."""

from __future__ import annotations

import asyncio
import time
from typing import Callable


class CooldownGate:
    """Minimum interval between the starts of two extractions.

    Process-local: the last start time is not persisted.

    Args:
        cooldown_seconds: Minimum seconds between two starts.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, cooldown_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_start: float | None = None

    def remaining(self) -> float:
        """Seconds left before another start is allowed (0 when allowed)."""
        if self._last_start is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._last_start))

    def is_allowed(self) -> bool:
        return self.remaining() <= 0

    def mark_started(self) -> None:
        self._last_start = self._clock()


class CancellationToken:
    """Cooperative cancel flag checked between chunks and between batch chats."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()
