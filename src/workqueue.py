"""
Work Queue - per-identity single-flight scheduling.

A key is queued at most once, with the earliest not-before time requested
for it. A key handed out by ``get()`` is owned by that worker until
``done()``; re-adding it meanwhile marks it dirty and it is queued again
when the worker finishes, so the same identity is never processed twice
concurrently.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Dict, Hashable, List, Set, Tuple

logger = logging.getLogger(__name__)


class QueueShutdown(Exception):
    """Raised by ``get()`` once the queue has been shut down."""


class WorkQueue:
    """Delaying, de-duplicating work queue for asyncio workers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._not_before: Dict[Hashable, float] = {}
        self._heap: List[Tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._processing: Set[Hashable] = set()
        self._dirty: Dict[Hashable, float] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._not_before)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._not_before

    def is_processing(self, key: Hashable) -> bool:
        return key in self._processing

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable, delay: float = 0.0) -> None:
        """
        Queue ``key`` to become ready after ``delay`` seconds.

        If the key is already queued the earlier of the two times wins.
        """
        if self._shutting_down:
            return
        self._schedule(key, self._clock() + max(delay, 0.0))

    def _schedule(self, key: Hashable, when: float) -> None:
        if key in self._processing:
            previous = self._dirty.get(key)
            self._dirty[key] = when if previous is None else min(previous, when)
            return

        previous = self._not_before.get(key)
        if previous is not None and previous <= when:
            return

        self._not_before[key] = when
        heapq.heappush(self._heap, (when, next(self._seq), key))
        self._wakeup.set()

    async def get(self) -> Hashable:
        """
        Wait for the next ready key and take ownership of it.

        Raises:
            QueueShutdown: If the queue is shut down while waiting.
        """
        while True:
            if self._shutting_down:
                raise QueueShutdown()

            now = self._clock()
            timeout = None
            while self._heap:
                when, _, key = self._heap[0]
                if self._not_before.get(key) != when:
                    # Superseded by an earlier add
                    heapq.heappop(self._heap)
                    continue
                if when <= now:
                    heapq.heappop(self._heap)
                    del self._not_before[key]
                    self._processing.add(key)
                    return key
                timeout = when - now
                break

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def done(self, key: Hashable) -> None:
        """Release ownership of ``key``, re-queuing it if it was re-added."""
        self._processing.discard(key)
        when = self._dirty.pop(key, None)
        if when is not None and not self._shutting_down:
            self._schedule(key, when)

    def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        self._shutting_down = True
        self._wakeup.set()
        logger.debug(
            f"Work queue shut down with {len(self._not_before)} pending key(s)"
        )
