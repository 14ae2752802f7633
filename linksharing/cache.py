from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from linksharing.access import Access


@dataclass(frozen=True)
class CacheEntry:
    access: Access
    root: str
    resolved_at: float


@dataclass
class TxtRecordCache:
    """Hostname to (grant, root) mapping for hosted domains.

    Entries are valid for ``ttl`` seconds after they were resolved. Stale
    entries are reported as missing but stay in the mapping until the next
    ``put`` for the same hostname replaces them.
    """

    ttl: float
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, CacheEntry] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def get(self, hostname: str) -> tuple[CacheEntry | None, bool]:
        with self._lock:
            entry = self._entries.get(hostname)
        if entry is None:
            return None, False
        return entry, self.clock() < entry.resolved_at + self.ttl

    def put(self, hostname: str, access: Access, root: str) -> None:
        entry = CacheEntry(access=access, root=root, resolved_at=self.clock())
        with self._lock:
            self._entries[hostname] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
