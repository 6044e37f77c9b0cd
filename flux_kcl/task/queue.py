"""Keyed work queue with per-key deduplication and rate limiting.

A key is present at most once in the queue. A key that is re-added while a
worker processes it is marked dirty and handed out again only after the worker
calls `done`, so two workers never hold the same key at the same time.
"""

import asyncio
from collections.abc import Hashable
import logging
from typing import Generic, TypeVar

__all__ = ["KeyedWorkQueue", "QueueShutDown"]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 300.0

_SHUTDOWN = object()


class QueueShutDown(Exception):
    """Raised by `get` once the queue has been shut down."""


class KeyedWorkQueue(Generic[T]):
    """A work queue of keys processed by a pool of workers."""

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        """Initialize the queue.

        Args:
            base_delay: Delay in seconds of the first rate limited requeue
            max_delay: Upper bound of the rate limited requeue delay
        """
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._dirty: set[T] = set()
        self._processing: set[T] = set()
        self._failures: dict[T, int] = {}
        self._delayed: dict[T, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def add(self, key: T) -> None:
        """Add a key, coalescing with a pending entry for the same key."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            _LOGGER.debug("Key %s is being processed, marked dirty", key)
            return
        self._queue.put_nowait(key)

    def add_after(self, key: T, delay: float) -> None:
        """Add a key once `delay` seconds have passed.

        An earlier pending deadline for the same key wins over a later one.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        if (existing := self._delayed.get(key)) is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()
        handle = loop.call_later(delay, self._add_delayed, key)
        self._delayed[key] = (deadline, handle)

    def add_rate_limited(self, key: T) -> float:
        """Add a key after an exponential per-key backoff, returning the delay."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        _LOGGER.debug("Requeue %s after %.1fs (attempt %d)", key, delay, failures + 1)
        self.add_after(key, delay)
        return delay

    def forget(self, key: T) -> None:
        """Reset the backoff of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: T) -> int:
        """Return the number of rate limited requeues since the last `forget`."""
        return self._failures.get(key, 0)

    def scheduled(self, key: T) -> float | None:
        """Return the seconds until a delayed add of the key, if one is pending."""
        if (existing := self._delayed.get(key)) is None:
            return None
        return max(existing[0] - asyncio.get_running_loop().time(), 0.0)

    async def get(self) -> T:
        """Wait for the next key and mark it as being processed.

        Raises QueueShutDown once the queue was shut down.
        """
        item = await self._queue.get()
        if item is _SHUTDOWN:
            # Wake the next waiting worker as well
            self._queue.put_nowait(_SHUTDOWN)
            raise QueueShutDown()
        key: T = item  # type: ignore[assignment]
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: T) -> None:
        """Mark a key as processed, requeueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending delayed adds."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for _, handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._queue.put_nowait(_SHUTDOWN)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def idle(self) -> bool:
        """Return True if no key is queued or being processed.

        Keys waiting on a delayed add are not counted.
        """
        return not self._dirty and not self._processing

    def __len__(self) -> int:
        """Return the number of keys waiting to be processed."""
        return len(self._dirty)

    def _add_delayed(self, key: T) -> None:
        self._delayed.pop(key, None)
        self.add(key)
