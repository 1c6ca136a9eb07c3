import threading
import time

MISSING = object()


class LTRUCache:
    """LRU with per-entry TTL. Stores None results too (negative cache)."""

    def __init__(self, capacity=100, default_ttl=300):
        self.capacity = capacity
        self.default_ttl = default_ttl
        self.cache = {}  # Key -> (Value, ExpiryTime)
        self.order = []  # LRU order
        self._lock = threading.Lock()

    def get(self, key, default=MISSING):
        with self._lock:
            if key in self.cache:
                value, expiry = self.cache[key]
                if time.time() > expiry:
                    self._remove(key)
                    return default
                # Refresh LRU
                self.order.remove(key)
                self.order.append(key)
                return value
            return default

    def set(self, key, value, ttl=None):
        ttl = ttl or self.default_ttl
        with self._lock:
            self.cache[key] = (value, time.time() + ttl)
            if key in self.order:
                self.order.remove(key)
            self.order.append(key)

            if len(self.order) > self.capacity:
                lru = self.order.pop(0)
                del self.cache[lru]

    def _remove(self, key):
        if key in self.cache:
            del self.cache[key]
        if key in self.order:
            self.order.remove(key)
