import asyncio
from typing import Dict, List


class NameLocks:
    """One asyncio.Lock per plugin name, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def held(self) -> List[str]:
        return sorted(name for name, lock in self._locks.items() if lock.locked())
