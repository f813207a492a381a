"""
房间级互斥锁

同一进程内对同一房间的状态迁移串行执行；跨进程的正确性仍由数据库条件更新保证。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class RoomLockRegistry:
    """按房间ID分配 asyncio.Lock"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, room_id: str):
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        self._holders[room_id] = self._holders.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[room_id] -= 1
            # 没有等待者时回收锁，避免字典无限增长
            if self._holders[room_id] == 0:
                del self._holders[room_id]
                self._locks.pop(room_id, None)

    def __len__(self) -> int:
        return len(self._locks)


room_locks = RoomLockRegistry()
