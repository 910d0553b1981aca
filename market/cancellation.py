"""
Cancellation Tokens
-------------------

Explicit abort tokens passed into every asynchronous fetch. A token is
cancelled when the request that owns it is superseded; holders check it
after every await and before committing any buffer mutation.
"""

import asyncio
from typing import Callable, List, Optional


class FetchCancelled(Exception):
    """Raised by `CancellationToken.raise_if_cancelled` for a superseded request."""


class CancellationToken:
    def __init__(self, reason: str = ""):
        self._cancelled = False
        self._reason = reason
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "superseded") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Registers a callback; runs immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FetchCancelled(self._reason)

    def bind_task(self, task: "asyncio.Future") -> None:
        """Cancels an asyncio task when this token is cancelled."""
        self.on_cancel(lambda: task.done() or task.cancel())


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled
