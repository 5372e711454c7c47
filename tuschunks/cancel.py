"""Cooperative cancellation of client operations."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Signal that aborts all current and future exchanges of a client.

    Once triggered, the token stays triggered. Create a new client (or pass a
    new token) to start over.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Trigger the token."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True if the token was triggered."""
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until the token is triggered."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise 'asyncio.CancelledError' if the token was triggered."""
        if self._event.is_set():
            msg = "Operation cancelled."
            raise asyncio.CancelledError(msg)
