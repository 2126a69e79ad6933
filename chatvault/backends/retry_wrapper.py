"""
Retry wrapper for backends with exponential backoff.

A failed call is retried only while nothing has been streamed yet, and only
for transient failures:
- 0: connection error / timeout (no HTTP status)
- 429: rate limited
- 500, 502, 503, 504, 529: server errors / overloaded

Auth and request errors (400, 401, 403, ...) fail immediately. Once the
first fragment has been handed on, a failure ends the turn: the caller has
already shown part of the answer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from chatvault.backends.base import BaseBackend
from chatvault.errors import UpstreamFault

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({0, 429, 500, 502, 503, 504, 529})


class RetryableBackendWrapper(BaseBackend):
    """Adds pre-stream retries to another backend's stream()."""

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 2,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
    ):
        super().__init__(backend.name, backend.url, backend.timeout)
        self.backend = backend
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    def delay_for(self, retry: int) -> float:
        """Seconds to wait before retry number `retry` (1-based): 1x, 2x, 4x ..."""
        return min(self.initial_delay * 2 ** (retry - 1), self.max_delay)

    async def stream(self, messages: list[dict], system_prompt: str = "") -> AsyncIterator[str]:
        retry = 0
        while True:
            streamed = False
            try:
                async for fragment in self.backend.stream(messages, system_prompt):
                    streamed = True
                    yield fragment
                return
            except UpstreamFault as fault:
                if streamed or fault.status_code not in RETRYABLE_STATUS:
                    raise
                if retry >= self.max_retries:
                    logger.error("Backend '%s' gave up after %d retries: %s", self.name, retry, fault)
                    raise
                retry += 1
                delay = self.delay_for(retry)
                logger.warning(
                    "Backend '%s' unavailable (%s), retry %d/%d in %.1fs",
                    self.name, fault, retry, self.max_retries, delay,
                )
            await asyncio.sleep(delay)
