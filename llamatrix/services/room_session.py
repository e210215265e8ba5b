"""
llamatrix.services.room_session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间会话领域模型 —— 把一个已加入的房间和它的中继循环任务绑定在一起。

每个 ``RoomSession`` 拥有独立的中继循环，房间之间互不干扰。
"""
from __future__ import annotations

import asyncio
import contextlib

from llamatrix.core.logging import get_logger
from llamatrix.schemas.chat import Room, RoomState
from llamatrix.schemas.room_status import RoomInfoData
from llamatrix.services.context_store import ContextStore
from llamatrix.services.relay import RelayLoop

logger = get_logger(__name__)


class RoomSession:
    """一个已加入房间的会话。

    Attributes:
        room: 房间信息。
        relay: 本房间的中继循环。
        store: 共享的上下文存储（只访问本房间的条目）。
    """

    def __init__(self, room: Room, relay: RelayLoop, store: ContextStore) -> None:
        self.room = room
        self.relay = relay
        self.store = store
        self._task: asyncio.Task[None] | None = None

    @property
    def room_id(self) -> str:
        return self.room.room_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """启动中继循环任务。"""
        if self.running:
            return
        self.room.state = RoomState.JOINED
        self._task = asyncio.create_task(
            self.relay.run(), name=f"relay:{self.room_id}",
        )

    async def close(self) -> None:
        """取消中继循环（包括正在进行的生成流）并清理上下文。

        返回时生成流的 HTTP 连接已经释放。
        """
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.room.state = RoomState.LEFT
        await self.store.drop(self.room_id)
        logger.info("房间会话已关闭 | room=%s", self.room_id)

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            kind=self.room.kind,
            state=self.room.state,
            relay_state=self.relay.state.value,
            pending=self.relay.pending,
            turns=self.store.count(self.room_id),
        )
