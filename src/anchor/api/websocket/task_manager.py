"""
Cancellation token for cooperative turn cancellation.

A turn is cancelled by signalling its token; the streaming loop and the
completion engine both observe the same token and stop at the next fragment.
"""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative cancellation token for one conversation turn.

    Usage:
        token = CancellationToken()

        # In the protocol handler:
        token.cancel(reason="Client cancel")

        # In the streaming loop:
        async for chunk in stream:
            if token.is_cancelled:
                break
    """

    __slots__ = ("_cancel_reason", "_cancelled")

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._cancel_reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        """Get the reason for cancellation, if any."""
        return self._cancel_reason

    def cancel(self, reason: str | None = None) -> bool:
        """Request cancellation.

        Returns:
            True if this call cancelled the token, False if it was already cancelled.
        """
        if self._cancelled.is_set():
            return False
        self._cancel_reason = reason
        self._cancelled.set()
        return True


__all__ = ["CancellationToken"]
