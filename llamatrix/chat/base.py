"""
llamatrix.chat.base
~~~~~~~~~~~~~~~~~~~

聊天网络客户端接口 —— 核心引擎只通过这个窄接口与聊天网络交互。

登录、会话管理等细节由具体实现（``MatrixChatClient``）负责，
测试中可以用内存实现替换。
"""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from llamatrix.schemas.chat import ChatEvent, MessageHandle, Room, RoomKind


class ChatNetworkClient(Protocol):
    """聊天网络客户端需要提供的能力。"""

    # 机器人自己的账号 ID
    user_id: str

    # 收到的房间邀请（已过滤为发给机器人的邀请）
    def invites(self) -> AsyncIterator[Room]: ...

    # 已加入房间内的聊天事件（含机器人自身的离开事件）
    def events(self) -> AsyncIterator[ChatEvent]: ...

    # 发送新消息，失败时抛出 ChatPublishFailure
    async def publish(self, room_id: str, text: str) -> MessageHandle: ...

    # 原地编辑已发送的消息，失败时抛出 ChatPublishFailure
    async def edit(self, handle: MessageHandle, text: str) -> None: ...

    def joined_rooms(self) -> list[Room]: ...

    def room_kind(self, room_id: str) -> RoomKind: ...

    async def join(self, room_id: str) -> bool: ...

    async def leave(self, room_id: str) -> None: ...

    async def set_typing(self, room_id: str, typing: bool) -> None: ...
