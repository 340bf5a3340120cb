"""Cooperative cancellation handle for an in-flight stream."""

import asyncio
import uuid
from typing import Optional

from chatstream.utils.logger import logger


class CancellationHandle:
    """
    Signal used to abort one in-flight request.

    Created unset; ``cancel()`` sets it once and wakes every ``wait()``.
    Transports receive the handle in ``stop_streaming`` and may also watch it
    to abort their own network read.
    """

    def __init__(self, message_id: Optional[str] = None):
        """
        Initialize the handle.

        Args:
            message_id: Assistant message the guarded stream writes into
        """
        self.id = f"h-{uuid.uuid4().hex[:8]}"
        self.message_id = message_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "stopped") -> None:
        """Signal cancellation. Later calls are ignored."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug(f"Cancellation handle {self.id} fired ({reason})")

    async def wait(self) -> None:
        """Block until the handle is cancelled."""
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationHandle(id={self.id!r}, message_id={self.message_id!r}, cancelled={self.cancelled})"
