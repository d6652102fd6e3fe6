"""In-process critical sections keyed by booth or visitor.

Operations on one booth's queue and occupancy are serialized by that booth's
lock. The per-visitor concurrent-wait cap is serialized by the visitor's lock.
When both are needed the visitor lock is taken first.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLock:
    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        # holders plus waiters per key; the lock is dropped when this hits zero
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def reset(self) -> None:
        # asyncio locks bind to the loop that first waits on them
        self._locks.clear()
        self._users.clear()


booth_locks = KeyedLock()
visitor_locks = KeyedLock()
