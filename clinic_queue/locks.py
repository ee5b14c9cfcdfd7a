"""Per-key in-process locks (one lock per slot or per doctor-day)."""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List, Tuple


class KeyedLock:
    """
    Lazily created mutex per key.

    A key's lock exists only while someone holds or waits for it, so the
    registry stays as small as the number of keys in use.

    Only serializes callers inside one process; cross-process safety comes
    from the conditional UPDATEs in the ledger and queue engine.
    """

    def __init__(self):
        # key -> [lock, holders and waiters]
        self._entries: Dict[Tuple[Hashable, ...], List] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, *key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1

        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
