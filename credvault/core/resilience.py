# =====================================================
# FILE: credvault/core/resilience.py
# Deadlines, cancellation, retry policy and in-flight gauges
# =====================================================
"""
Every external call (object store, ledger RPC) receives a CallContext.
The context carries the request deadline and a cancellation flag, so a
single value flows from the router down to the HTTP/RPC clients.
Retries live in one RetryPolicy object instead of per call site.
"""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from credvault.core.exceptions import Busy, Cancelled, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CallContext:
    """Deadline + cooperative cancellation for one logical request"""

    def __init__(self, timeout: Optional[float] = None, deadline: Optional[float] = None):
        if deadline is None and timeout is not None:
            deadline = time.monotonic() + timeout
        self.deadline = deadline
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None

    @classmethod
    def background(cls, timeout: Optional[float] = None) -> "CallContext":
        """Fresh context for work that outlives the originating request"""
        return cls(timeout=timeout)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait_cancelled(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def check(self, stage: str = "") -> None:
        """Raise Cancelled if the caller gave up"""
        if self._cancelled:
            raise Cancelled(f"Cancelled before {stage}" if stage else None)

    def child(self, timeout: Optional[float] = None) -> "CallContext":
        """Narrower deadline, same cancellation source"""
        deadline = self.deadline
        if timeout is not None:
            candidate = time.monotonic() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        ctx = CallContext(deadline=deadline)
        ctx._cancelled = self._cancelled
        return ctx

    async def run(self, awaitable: Awaitable[T], on_timeout: Callable[[], Exception]) -> T:
        """Await with the remaining budget; convert the timeout into a domain error"""
        remaining = self.remaining()
        try:
            if remaining is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise on_timeout()


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with jitter"""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.2

    def delay_for(self, attempt: int) -> float:
        base = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            base += random.uniform(0, base * self.jitter)
        return base

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        ctx: CallContext,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
        description: str = "operation",
    ) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {str(e)}")
                    raise
                delay = self.delay_for(attempt)
                remaining = ctx.remaining()
                if remaining is not None and delay >= remaining:
                    logger.error(f"{description} out of time budget after {attempt} attempts")
                    raise
                logger.info(
                    f"Retrying {description} in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts}): {str(e)}"
                )
                await asyncio.sleep(delay)
                attempt += 1


class InFlightGauge:
    """Counts concurrent calls into an external client; saturation means Busy"""

    def __init__(self, name: str, limit: int):
        self.name = name
        self.limit = limit
        self.current = 0

    @property
    def saturated(self) -> bool:
        return self.limit > 0 and self.current >= self.limit

    def ensure_capacity(self) -> None:
        if self.saturated:
            raise Busy(f"{self.name} has {self.current} calls in flight (limit {self.limit})")

    @asynccontextmanager
    async def track(self):
        self.current += 1
        try:
            yield
        finally:
            self.current -= 1
