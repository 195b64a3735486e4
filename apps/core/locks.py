"""
Keyed locks: at most one holder per key, unrelated keys never contend
"""

import threading
from contextlib import contextmanager
from typing import Dict


class _KeyLock:
    __slots__ = ('lock', 'holders')

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    """
    One re-entrant lock per key (case id, session id)
    The registry lock is only held while looking up / counting a key's holders.
    An entry lives only while someone holds or waits on it, so the registry
    stays as small as the set of keys currently in use.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, _KeyLock] = {}

    def _acquire_entry(self, key: str) -> _KeyLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _release_entry(self, key: str, entry: _KeyLock) -> None:
        with self._registry_lock:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str):
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self):
        return len(self._locks)
