"""
Reader/writer locking and a keyed table built on it.

Every shared map in incident-hub (fingerprint index, batch buckets,
scheduled entries, the in-memory store tables) sits behind a LockedTable
so no raw dict reference escapes to other threads.
"""
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

K = TypeVar('K')
V = TypeVar('V')


class ReadWriteLock:
    """
    Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers block
    so a steady read load cannot starve updates.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class LockedTable(Generic[K, V]):
    """
    Dict-like table whose operations each run inside a single lock section.

    Mutating helpers (mutate, pop_where) give atomic read-modify-write per
    key. Callers must not perform network I/O inside the callbacks.

    Example:
        >>> table = LockedTable()
        >>> table.put("a", 1)
        >>> table.mutate("a", lambda v: v + 1)
        2
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._data: Dict[K, V] = {}

    def get(self, key: K) -> Optional[V]:
        with self._lock.read():
            return self._data.get(key)

    def contains(self, key: K) -> bool:
        with self._lock.read():
            return key in self._data

    def put(self, key: K, value: V) -> None:
        with self._lock.write():
            self._data[key] = value

    def put_if_absent(self, key: K, value: V) -> bool:
        """Insert only when the key is new. Returns True on insert."""
        with self._lock.write():
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def replace(self, key: K, value: V) -> bool:
        """Overwrite an existing key. Returns False when the key is absent."""
        with self._lock.write():
            if key not in self._data:
                return False
            self._data[key] = value
            return True

    def pop(self, key: K) -> Optional[V]:
        with self._lock.write():
            return self._data.pop(key, None)

    def values(self) -> List[V]:
        with self._lock.read():
            return list(self._data.values())

    def items(self) -> List[tuple]:
        with self._lock.read():
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._data)

    def mutate(
        self,
        key: K,
        fn: Callable[[Optional[V]], V],
    ) -> V:
        """
        Replace the value under `key` with fn(current) atomically.

        `current` is None when the key is absent.
        """
        with self._lock.write():
            updated = fn(self._data.get(key))
            self._data[key] = updated
            return updated

    def pop_where(self, predicate: Callable[[K, V], bool]) -> List[V]:
        """Remove and return every entry matching predicate, atomically."""
        with self._lock.write():
            matched = [k for k, v in self._data.items() if predicate(k, v)]
            return [self._data.pop(k) for k in matched]

    def clear(self) -> List[V]:
        with self._lock.write():
            drained = list(self._data.values())
            self._data.clear()
            return drained
