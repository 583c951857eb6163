"""Per-turn cooperative cancellation shared by both model stages."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from trace_copilot.errors import TurnCancelled

T = TypeVar("T")


class CancellationToken:
    """One-way flag set when the client disconnects.

    `cancel()` is idempotent. `run()` races an outbound call against the flag
    and cancels the call's task when the flag wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "client disconnected") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelled(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
        """Await `awaitable` unless the token fires first.

        Raises `TurnCancelled` when cancelled and `asyncio.TimeoutError` when
        `timeout` elapses; in both cases the outbound call is cancelled. A
        coroutine refused because the token already fired is closed unawaited.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        call = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, watcher},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            call.cancel()
            raise
        finally:
            watcher.cancel()

        if call in done:
            return call.result()

        call.cancel()
        if watcher in done:
            raise TurnCancelled(self.reason or "cancelled")
        raise asyncio.TimeoutError(f"model call exceeded {timeout}s")
