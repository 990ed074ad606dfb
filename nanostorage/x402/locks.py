# nanostorage/x402/locks.py
"""
Per-key mutual exclusion.

Used to serialize settlement work on the same wallet or the same nonce while
letting different keys proceed concurrently. Entries are dropped once no
thread holds or waits on them.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator


@dataclass
class _KeyedLockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLock:
    """A lock per key, created on demand."""

    def __init__(self):
        self._entries: Dict[str, _KeyedLockEntry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _KeyedLockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
