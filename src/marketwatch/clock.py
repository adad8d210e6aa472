"""Injectable time source.

Everything that reads the wall clock, sleeps or bounds work by a deadline
(rate windows, cache TTLs, dedup windows, cycle scheduling) goes through a
Clock so tests can drive time deterministically instead of patching
``time.time``.
"""

import asyncio
import time
from contextlib import AbstractAsyncContextManager


class Clock:
    """Wall clock backed by time.time() and asyncio.sleep()."""

    def now(self) -> float:
        """Return the current Unix timestamp in seconds."""
        return time.time()

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        if seconds > 0:
            await asyncio.sleep(seconds)

    def timeout(self, seconds: float) -> AbstractAsyncContextManager:
        """Context manager cancelling its body after ``seconds``; raises TimeoutError."""
        return asyncio.timeout(seconds)
