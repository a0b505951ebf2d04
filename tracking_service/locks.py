import asyncio
import weakref
from contextlib import asynccontextmanager


class DeliveryLocks:
    """
    One asyncio.Lock per delivery id, so location writes and status changes
    on the same delivery never interleave inside a read-modify-write.
    Locks disappear once nobody holds or waits on them.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, delivery_id: str) -> asyncio.Lock:
        lock = self._locks.get(delivery_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[delivery_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, delivery_id: str):
        lock = self.lock_for(delivery_id)
        async with lock:
            yield
