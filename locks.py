import threading
from contextlib import contextmanager
from functools import lru_cache
from typing import Hashable, Iterator


class _KeyEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """One lock per key, created on demand.

    Holders of the same key are serialised; different keys proceed in
    parallel. A key's lock is dropped once no thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._meta_lock = threading.Lock()
        self._locks: dict[Hashable, _KeyEntry] = {}

    def _acquire_entry(self, key: Hashable) -> _KeyEntry:
        with self._meta_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyEntry()
            entry.users += 1
            return entry

    def _release_entry(self, key: Hashable, entry: _KeyEntry) -> None:
        with self._meta_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        with self._meta_lock:
            return len(self._locks)


@lru_cache(maxsize=1)
def get_rollup_locks() -> KeyedLock:
    return KeyedLock()
