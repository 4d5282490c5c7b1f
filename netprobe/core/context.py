"""
Per-scan deadline handling
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from netprobe.core.status import ScanTimeoutError

T = TypeVar("T")


class ScanContext:
    """Deadline shared by every blocking step of one scan.

    Cancellation of the surrounding task propagates as usual; the deadline
    turns any await that outlives it into a timeout-classified error.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout else None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    async def run(self, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Await `aw`, bounded by the deadline and an optional tighter timeout"""
        limit = self.remaining()
        if timeout is not None:
            limit = timeout if limit is None else min(limit, timeout)
        if self.expired:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise ScanTimeoutError("scan deadline exceeded")
        try:
            return await asyncio.wait_for(aw, timeout=limit)
        except asyncio.TimeoutError as e:
            raise ScanTimeoutError(f"operation timed out after {limit:.2f}s") from e
