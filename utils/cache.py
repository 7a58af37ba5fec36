"""TTL cache for read-mostly config lookups."""
import time
import threading

_MISSING = object()


class TTLCache:
    """Thread-safe key-value cache with per-key TTL.

    ``None`` is a cacheable value (an agent with no group), so lookups use
    ``get(key, default)`` with a sentinel to tell a miss from a cached None.
    """

    def __init__(self, default_ttl=30, clock=time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store = {}
        self._lock = threading.Lock()

    def get(self, key, default=None):
        """Get value if present and not expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            if self._clock() > entry["expires"]:
                del self._store[key]
                return default
            return entry["value"]

    def set(self, key, value, ttl=None):
        with self._lock:
            self._store[key] = {
                "value": value,
                "expires": self._clock() + (self.default_ttl if ttl is None else ttl),
            }

    def get_or_load(self, key, loader, ttl=None):
        """Return the cached value, calling loader() on a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value, ttl)
        return value

    def invalidate(self, key):
        with self._lock:
            self._store.pop(key, None)

    def clear(self):
        with self._lock:
            self._store.clear()
