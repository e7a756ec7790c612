"""Activity-based timeout for streaming calls.

Unlike a hard timeout, the deadline moves forward every time the stream
produces something (including keepalive pings), so a slow but steady stream
never times out while a stalled one does.
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType

from conduit.errors import InactivityTimeoutError

logger = logging.getLogger(__name__)


class InactivityTimer:
    """Async context manager cancelling its body after `window` idle seconds.

    Built on asyncio.timeout: expiry cancels the enclosing task, which unwinds
    the transport's own `async with` stream context. The cancellation is then
    re-labelled InactivityTimeoutError so it is distinguishable from a user
    abort. A None or non-positive window disables the timer.

    Usage:
        async with InactivityTimer(30.0) as timer:
            async for line in response.aiter_lines():
                timer.touch()
                ...
    """

    def __init__(self, window: float | None) -> None:
        self.window = window if window is not None and window > 0 else None
        self._timeout: asyncio.Timeout | None = None

    def _deadline(self) -> float | None:
        if self.window is None:
            return None
        return asyncio.get_running_loop().time() + self.window

    def touch(self) -> None:
        """Push the deadline out to now + window."""
        if self._timeout is not None and self.window is not None:
            self._timeout.reschedule(self._deadline())

    def expired(self) -> bool:
        return self._timeout is not None and self._timeout.expired()

    async def __aenter__(self) -> InactivityTimer:
        self._timeout = asyncio.timeout(self._deadline())
        await self._timeout.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        timeout = self._timeout
        self._timeout = None
        if timeout is None:
            return
        try:
            await timeout.__aexit__(exc_type, exc, tb)
        except TimeoutError as e:
            logger.warning("Stream stalled for %.1fs, cancelling request", self.window)
            raise InactivityTimeoutError(self.window or 0.0) from e
