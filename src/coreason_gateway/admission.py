# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import asyncio
import threading
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict

from coreason_gateway.config import AdmissionConfig, AdmissionMode
from coreason_gateway.errors import BackpressureError
from coreason_gateway.utils.logger import logger


class AdmissionController:
    """
    Caps in-flight requests to one provider.

    Over the cap a request either waits in a bounded FIFO queue (QUEUE mode) or is
    rejected with BackpressureError (REJECT mode). A released slot is handed
    directly to the oldest live waiter, so queued requests cannot be overtaken.
    """

    def __init__(self, provider: str, config: AdmissionConfig, max_concurrent: int) -> None:
        self.provider = provider
        self.config = config
        self.max_concurrent = max_concurrent
        self._lock = threading.Lock()
        self._active = 0
        self._waiters: Deque["asyncio.Future[bool]"] = deque()
        self.rejected = 0

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def queued(self) -> int:
        with self._lock:
            return sum(1 for w in self._waiters if not w.done())

    def has_capacity(self) -> bool:
        if not self.config.enabled:
            return True
        with self._lock:
            return self._active < self.max_concurrent

    async def acquire(self) -> None:
        if not self.config.enabled:
            return

        with self._lock:
            if self._active < self.max_concurrent and not self._waiters:
                self._active += 1
                return

            if self.config.mode == AdmissionMode.REJECT or len(self._waiters) >= self.config.queue_size:
                self.rejected += 1
                raise BackpressureError(
                    f"Provider {self.provider} at capacity ({self._active}/{self.max_concurrent} active, "
                    f"{len(self._waiters)} queued)",
                    provider=self.provider,
                )

            waiter: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            logger.debug(f"Queued request for {self.provider} (queue depth {len(self._waiters)})")

        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self.config.queue_timeout)
        except asyncio.TimeoutError:
            if self._abandon(waiter):
                # The slot arrived as the timer fired; keep it.
                return
            with self._lock:
                self.rejected += 1
            raise BackpressureError(
                f"Timed out after {self.config.queue_timeout}s waiting for {self.provider}",
                provider=self.provider,
            ) from None
        except asyncio.CancelledError:
            if self._abandon(waiter):
                self.release()
            raise

    def release(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    # Slot passes straight to the waiter; active count is unchanged.
                    waiter.set_result(True)
                    return
            self._active = max(self._active - 1, 0)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "active": self._active,
                "queued": sum(1 for w in self._waiters if not w.done()),
                "max_concurrent": self.max_concurrent,
                "rejected": self.rejected,
            }

    def _abandon(self, waiter: "asyncio.Future[bool]") -> bool:
        """
        Withdraws a waiter. Returns True if a slot had already been handed to it,
        in which case the caller owns that slot and must release it.
        """
        with self._lock:
            if waiter.done() and not waiter.cancelled():
                return True
            waiter.cancel()
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
            return False
