# src/gazer/control_plane/queue_manager.py
import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, Hashable, Optional, Set


class QueueManager:
    """
    Work queue of site keys with delayed requeue.

    A key is queued at most once and handed to at most one worker at a time.
    Enqueueing a key that is being processed marks it dirty; it is queued
    again as soon as the in-flight cycle reports done.
    """

    def __init__(self):
        self._ready: Deque[Hashable] = deque()
        self._queued: Set[Hashable] = set()
        self._in_flight: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._delayed: Dict[Hashable, float] = {}
        self._wakeup = asyncio.Event()

    def enqueue(self, key: Hashable) -> None:
        """Queue a key for immediate processing."""
        self._delayed.pop(key, None)
        if key in self._in_flight:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._ready.append(key)
        self._queued.add(key)
        self._wakeup.set()

    def requeue(self, key: Hashable, delay_seconds: float = 0) -> None:
        """Queue a key after a delay. An earlier pending schedule wins."""
        if delay_seconds <= 0:
            self.enqueue(key)
            return
        if key in self._queued:
            return
        due = time.monotonic() + delay_seconds
        current = self._delayed.get(key)
        if current is None or due < current:
            self._delayed[key] = due
            self._wakeup.set()

    async def dequeue(self, timeout: float = 5.0) -> Optional[Hashable]:
        """Get the next ready key, waiting up to `timeout` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            self._promote_due()
            if self._ready:
                key = self._ready.popleft()
                self._queued.discard(key)
                self._in_flight.add(key)
                return key

            now = time.monotonic()
            if now >= deadline:
                return None
            wait = deadline - now
            if self._delayed:
                wait = min(wait, max(0.0, min(self._delayed.values()) - now))

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    def done(self, key: Hashable, requeue_after: Optional[float] = None) -> None:
        """
        Release a key taken by `dequeue`.

        Args:
            key: The key that was processed
            requeue_after: Seconds until the key should be processed again
        """
        self._in_flight.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)
        elif requeue_after is not None:
            self.requeue(key, requeue_after)

    def remove(self, key: Hashable) -> bool:
        """Forget a key (its site was deleted)."""
        found = key in self._queued or key in self._delayed or key in self._dirty
        if key in self._queued:
            self._queued.discard(key)
            self._ready.remove(key)
        self._delayed.pop(key, None)
        self._dirty.discard(key)
        return found

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    def get_depth(self) -> int:
        """Get number of keys waiting (ready or delayed)."""
        return len(self._ready) + len(self._delayed)

    def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        return {
            "ready": len(self._ready),
            "delayed": len(self._delayed),
            "in_flight": len(self._in_flight),
            "dirty": len(self._dirty),
        }

    def _promote_due(self) -> None:
        now = time.monotonic()
        due = [key for key, at in self._delayed.items() if at <= now]
        for key in due:
            del self._delayed[key]
            if key in self._in_flight:
                self._dirty.add(key)
            elif key not in self._queued:
                self._ready.append(key)
                self._queued.add(key)
