"""Cooperative cancellation threaded through every dispatch suspension point."""

from __future__ import annotations

import asyncio

from llm_orchestrator.gateway.errors import RequestCancelledError


class CancellationToken:
    """Caller-owned flag checked at stream reads and backoff sleeps.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(manager.generate(request, cancel_token=token))
        ...
        token.cancel("user pressed ctrl-c")
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self.reason or "request cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
