import threading
from collections import defaultdict
from contextlib import contextmanager


class KeyedLock:
    """One lock per key; locks are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}
        self._users: defaultdict = defaultdict(int)

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
