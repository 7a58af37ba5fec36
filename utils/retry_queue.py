"""Delayed-retry queue with cancellation."""
import heapq
import itertools
import threading
import time


class DelayedQueue:
    """Holds items until their due time.

    ``pop_due()`` returns every item whose time has come; ``cancel()`` drops
    scheduled items matching a predicate (e.g. all retries for a deleted
    channel). Cancelled entries are tombstoned and skipped lazily.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._heap = []
        self._counter = itertools.count()
        self._cancelled = set()
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)

    def schedule(self, item, delay):
        with self._lock:
            entry_id = next(self._counter)
            heapq.heappush(self._heap, (self._clock() + max(0.0, delay), entry_id, item))
            self._wakeup.notify()
            return entry_id

    def pop_due(self):
        due = []
        with self._lock:
            now = self._clock()
            while self._heap and self._heap[0][0] <= now:
                _, entry_id, item = heapq.heappop(self._heap)
                if entry_id in self._cancelled:
                    self._cancelled.discard(entry_id)
                    continue
                due.append(item)
        return due

    def next_due_in(self):
        """Seconds until the next live item is due, or None when empty."""
        with self._lock:
            while self._heap and self._heap[0][1] in self._cancelled:
                self._cancelled.discard(heapq.heappop(self._heap)[1])
            if not self._heap:
                return None
            return max(0.0, self._heap[0][0] - self._clock())

    def wait(self, timeout):
        """Block until something is scheduled or the timeout passes."""
        with self._wakeup:
            self._wakeup.wait(timeout)

    def cancel(self, predicate):
        """Cancel scheduled items for which predicate(item) is true. Returns the cancelled items."""
        cancelled = []
        with self._lock:
            for _, entry_id, item in self._heap:
                if entry_id not in self._cancelled and predicate(item):
                    self._cancelled.add(entry_id)
                    cancelled.append(item)
        return cancelled

    def __len__(self):
        with self._lock:
            return len(self._heap) - len(self._cancelled)
