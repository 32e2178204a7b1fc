import asyncio
from contextlib import asynccontextmanager
from threading import Lock
from typing import AsyncIterator


class UserLockRegistry:
    """One ``asyncio.Lock`` per user id, dropped when nobody holds or waits on it.

    Messages from the same user run one at a time; different users never block
    each other.
    """

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._guard = Lock()

    def _acquire_ref(self, user_id: str) -> asyncio.Lock:
        with self._guard:
            lock, refs = self._locks.get(user_id, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            self._locks[user_id] = (lock, refs + 1)
            return lock

    def _release_ref(self, user_id: str) -> None:
        with self._guard:
            lock, refs = self._locks[user_id]
            if refs <= 1:
                del self._locks[user_id]
            else:
                self._locks[user_id] = (lock, refs - 1)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._acquire_ref(user_id)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(user_id)

    def active_users(self) -> int:
        with self._guard:
            return len(self._locks)


user_locks = UserLockRegistry()
