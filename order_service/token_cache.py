import threading
import time
from collections import OrderedDict


class TokenCache:
    def __init__(self, capacity, clock=time.time):
        if capacity <= 0:
            raise ValueError("cache capacity must be positive")
        self.capacity = capacity
        self.clock = clock
        self._entries = OrderedDict()  # key -> (value, expires_at)
        self._size = 0
        self._lock = threading.Lock()

    @staticmethod
    def entry_size(key, value):
        return len(key.encode("utf-8")) + len(value)

    @property
    def size(self):
        with self._lock:
            return self._size

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def put(self, key, value, ttl):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        size = self.entry_size(key, value)
        if size > self.capacity:
            raise ValueError(f"entry of {size} bytes exceeds cache capacity of {self.capacity}")

        with self._lock:
            self._remove(key)
            self._make_room(size)
            self._entries[key] = (value, self.clock() + ttl)
            self._size += size

    def get(self, key):
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry[0]

    def pop(self, key):
        """Remove and return the value; of two racing callers only one gets it."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._remove(key)
            return entry[0]

    def delete(self, key):
        with self._lock:
            return self._remove(key)

    def ttl(self, key):
        """Seconds left for a live entry, ``None`` if absent."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return entry[1] - self.clock()

    # callers below hold the lock

    def _live(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock():
            self._remove(key)
            return None
        return entry

    def _remove(self, key):
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._size -= self.entry_size(key, entry[0])
        return True

    def _make_room(self, size):
        if self._size + size <= self.capacity:
            return
        now = self.clock()
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            self._remove(key)
        while self._size + size > self.capacity:
            key = next(iter(self._entries))
            self._remove(key)
