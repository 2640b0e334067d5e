import logging
import threading
import weakref
from contextlib import contextmanager

from .errors import Busy

logger = logging.getLogger(__name__)


def book_key(book_id):
    return ("book", book_id)


def user_key(user_id):
    return ("user", user_id)


class _KeyLock:
    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self, timeout):
        return self._lock.acquire(timeout=timeout)

    def release(self):
        self._lock.release()


class KeyedLocks:
    """
    One exclusive lock per key, created on first use and dropped once no
    thread holds or waits on it.

    Keys are acquired in sorted order so two operations that need the same
    pair of keys can never wait on each other in a cycle.
    """

    def __init__(self, timeout=5.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        # holders and waiters keep the lock alive through their own references
        self._locks = weakref.WeakValueDictionary()

    def __len__(self):
        return len(self._locks)

    def _lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _KeyLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys):
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout):
                    logger.warning("Timed out after %.1fs waiting for %s", self.timeout, key)
                    raise Busy(f"{key[0]} {key[1]} is busy, retry later")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
