from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


_GLOBAL_LOCK = threading.Lock()
# key -> [lock, holders + waiters]; an entry is dropped when its count returns to zero.
_LOCKS: dict[Hashable, list] = {}


def _acquire_entry(key: Hashable) -> threading.Lock:
    with _GLOBAL_LOCK:
        entry = _LOCKS.get(key)
        if entry is None:
            entry = [threading.Lock(), 0]
            _LOCKS[key] = entry
        entry[1] += 1
        return entry[0]


def _release_entry(key: Hashable) -> None:
    with _GLOBAL_LOCK:
        entry = _LOCKS[key]
        entry[1] -= 1
        if entry[1] == 0:
            del _LOCKS[key]


@contextmanager
def keyed_lock(key: Hashable) -> Iterator[None]:
    """
    Serialize work per key within this process (e.g. one (portfolio, asset) ledger).
    """
    lock = _acquire_entry(key)
    try:
        with lock:
            yield
    finally:
        _release_entry(key)
