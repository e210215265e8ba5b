"""
llamatrix.services.supervisor
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间会话管理器 —— 管理所有房间会话的生命周期。

- 每个已加入的房间恰好对应一个 ``RoomSession``（及其中继循环任务）。
- 邀请一律接受；加入失败则离开该房间。
- 从聊天客户端的事件流中读取事件，经 Prompt Gate 过滤后投递到对应房间的中继循环。

已登录的聊天客户端由调用方创建并在构造时传入，本类不持有任何全局状态。
"""
from __future__ import annotations

import asyncio

from llamatrix.chat.base import ChatNetworkClient
from llamatrix.core.config import settings
from llamatrix.core.logging import get_logger
from llamatrix.llm.ollama_client import OllamaClient
from llamatrix.schemas.chat import ChatEvent, EventKind, Room, RoomState
from llamatrix.schemas.room_status import RoomInfoData
from llamatrix.services.context_store import ContextStore, trim_policy_from_limit
from llamatrix.services.prompt_gate import PromptGate
from llamatrix.services.relay import RelayLoop
from llamatrix.services.room_session import RoomSession

logger = get_logger(__name__)


class RoomSessionSupervisor:
    """房间会话管理器。

    - ``on_invite(room)``  → 接受邀请并创建会话
    - ``on_leave(room_id)`` → 关闭会话（取消进行中的生成）
    - ``dispatch(event)``  → 过滤事件并投递到房间的中继循环
    - ``run()``            → 持续消费邀请流和事件流

    Attributes:
        chat: 已登录的聊天客户端。
        inference: 共享的 LLM 客户端。
        store: 共享的上下文存储。
        gate: Prompt 过滤器。
    """

    def __init__(
        self,
        chat: ChatNetworkClient,
        inference: OllamaClient,
        store: ContextStore | None = None,
        gate: PromptGate | None = None,
        *,
        model: str | None = None,
        queue_depth: int | None = None,
        edit_interval: float | None = None,
        typing_interval: float | None = None,
    ) -> None:
        self.chat = chat
        self.inference = inference
        self.store: ContextStore = store or ContextStore(
            trim_policy_from_limit(settings.CONTEXT_MAX_TURNS),
        )
        self.gate: PromptGate = gate or PromptGate(chat.user_id)
        self._relay_options = {
            "model": model,
            "queue_depth": queue_depth,
            "edit_interval": edit_interval,
            "typing_interval": typing_interval,
        }
        self._sessions: dict[str, RoomSession] = {}

    def _open(self, room: Room) -> RoomSession:
        session = self._sessions.get(room.room_id)
        if session is not None:
            return session
        relay = RelayLoop(
            room.room_id, self.chat, self.inference, self.store, **self._relay_options,
        )
        session = RoomSession(room, relay, self.store)
        self._sessions[room.room_id] = session
        session.start()
        logger.info("房间会话已创建 | room=%s | kind=%s", room.room_id, room.kind.value)
        return session

    def adopt(self, rooms: list[Room]) -> None:
        """为启动时已经加入的房间创建会话。"""
        for room in rooms:
            self._open(room)

    async def on_invite(self, room: Room) -> bool:
        """接受邀请。

        Returns:
            是否成功加入房间。
        """
        existing = self._sessions.get(room.room_id)
        if existing is not None and room.state != RoomState.PENDING:
            return True
        # 已有会话时仍要重新加入：机器人可能被踢出后再次被邀请
        if not await self.chat.join(room.room_id):
            logger.warning("加入房间失败，放弃邀请 | room=%s", room.room_id)
            room.state = RoomState.LEFT
            await self.on_leave(room.room_id)
            try:
                await self.chat.leave(room.room_id)
            except Exception as e:
                logger.warning("离开房间失败 | room=%s | %s", room.room_id, e)
            return False
        room.kind = self.chat.room_kind(room.room_id)
        if existing is not None:
            existing.room.kind = room.kind
            room.state = RoomState.JOINED
            logger.info("重新加入房间，沿用现有会话 | room=%s", room.room_id)
            return True
        self._open(room)
        return True

    async def on_leave(self, room_id: str) -> None:
        """关闭房间会话，取消进行中的生成流。"""
        session = self._sessions.pop(room_id, None)
        if session is None:
            return
        await session.close()

    async def dispatch(self, event: ChatEvent) -> None:
        """把事件路由到对应房间的中继循环。未知房间的事件直接忽略。"""
        if event.kind == EventKind.LEAVE:
            await self.on_leave(event.room_id)
            return

        session = self._sessions.get(event.room_id)
        if session is None:
            logger.debug("忽略未知房间的事件 | room=%s", event.room_id)
            return

        kind = self.chat.room_kind(event.room_id)
        session.room.kind = kind
        request = self.gate.evaluate(event, kind)
        if not request.eligible:
            return
        session.relay.submit(request)

    async def run(self) -> None:
        """并发消费邀请流和事件流，直到被取消。"""
        await asyncio.gather(self._consume_invites(), self._consume_events())

    async def _consume_invites(self) -> None:
        async for room in self.chat.invites():
            try:
                await self.on_invite(room)
            except Exception as e:
                logger.error("处理邀请异常 | room=%s | %s", room.room_id, e, exc_info=True)

    async def _consume_events(self) -> None:
        async for event in self.chat.events():
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error("分发事件异常 | room=%s | %s", event.room_id, e, exc_info=True)

    async def shutdown(self) -> None:
        """关闭所有房间会话。"""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.close() for session in sessions))
        logger.info("已关闭 %d 个房间会话", len(sessions))

    def get_session(self, room_id: str) -> RoomSession | None:
        return self._sessions.get(room_id)

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [session.info() for session in self._sessions.values()]
