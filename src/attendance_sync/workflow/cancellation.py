"""Cooperative cancellation."""

import asyncio
import logging

from ..errors import SyncCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag passed through long-running calls and checked at phase and chunk boundaries.

    Cancelling a token also cancels every child created from it.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._children: list["CancellationToken"] = []
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        token = CancellationToken()
        if self.is_cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise SyncCancelledError(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
