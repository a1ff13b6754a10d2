"""
Per-key asyncio locks

Locks are kept per running event loop, so Celery tasks that each call
asyncio.run() never share a lock bound to a closed loop.
"""
import asyncio
import weakref
from typing import Dict, Hashable


class KeyedLocks:
    """Lazily created asyncio.Lock per key"""

    def __init__(self):
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[Hashable, asyncio.Lock]]" = (
            weakref.WeakKeyDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock
