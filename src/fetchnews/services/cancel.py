"""Cooperative cancellation for in-flight network calls."""
from __future__ import annotations

import asyncio
import itertools

from fetchnews.errors import FetchCancelled

_token_ids = itertools.count(1)


class CancelToken:
    """One token per fetch attempt.

    Cancelling is one-way. Services check the token before publishing any
    progress or result; ``wait()`` lets an implementation race its I/O against
    cancellation instead of polling.
    """

    __slots__ = ("token_id", "_cancelled", "_event")

    def __init__(self) -> None:
        self.token_id = next(_token_ids)
        self._cancelled = False
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FetchCancelled(f"token {self.token_id} cancelled")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancelToken(id={self.token_id}, cancelled={self._cancelled})"
