"""
Shared cancellation signal.

The orchestrator owns the signal and is the only component that fires it;
actors only observe it, checking at least once per loop iteration.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class RunSignal:
    """Broadcast "done" flag with the reason it fired."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def fire(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early if the signal fires.

        Returns:
            True if the signal fired
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.is_set()
