"""
llamatrix.schemas.chat
~~~~~~~~~~~~~~~~~~~~~~

聊天桥接的领域模型：房间、聊天事件、对话轮次与 Prompt 请求。

这些模型与具体的聊天协议无关，Matrix 适配层负责把 nio 事件转换成
``ChatEvent``，核心引擎只认识这里定义的类型。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RoomKind(str, Enum):
    """房间类型：一对一私聊或多人群聊。"""

    DIRECT = "direct"
    GROUP = "group"


class RoomState(str, Enum):
    """机器人在房间中的成员状态。"""

    PENDING = "pending"
    JOINED = "joined"
    LEFT = "left"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class EventKind(str, Enum):
    """聊天事件类型。``LEAVE`` 表示机器人自己离开或被踢出房间。"""

    TEXT = "text"
    OTHER = "other"
    LEAVE = "leave"


class PromptCommand(str, Enum):
    PROMPT = "prompt"
    CLEAR_CONTEXT = "clear_context"


class Room(BaseModel):
    """一个聊天房间。收到邀请时创建，离开或被踢出时销毁。"""

    room_id: str = Field(..., description="房间唯一标识")
    kind: RoomKind = Field(default=RoomKind.GROUP, description="房间类型")
    state: RoomState = Field(default=RoomState.PENDING, description="成员状态")


class ChatEvent(BaseModel):
    """聊天网络推送的一条事件。"""

    model_config = ConfigDict(frozen=True)

    room_id: str = Field(..., description="所属房间")
    sender: str = Field(..., description="发送者 ID")
    kind: EventKind = Field(default=EventKind.TEXT, description="事件类型")
    body: str = Field(default="", description="文本内容（非文本事件为空）")
    event_id: str = Field(default="", description="事件 ID")


class ConversationTurn(BaseModel):
    """一轮对话（用户的 Prompt 或助手的完整回复），创建后不可变。"""

    model_config = ConfigDict(frozen=True)

    role: Role = Field(..., description="角色：user / assistant")
    text: str = Field(..., description="文本内容")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="创建时间（UTC）",
    )


class PromptRequest(BaseModel):
    """Prompt Gate 对一条事件的判定结果，只存在于一次中继周期内。"""

    model_config = ConfigDict(frozen=True)

    room_id: str = Field(..., description="所属房间")
    sender: str = Field(..., description="发送者 ID")
    text: str = Field(default="", description="去掉命令前缀后的 Prompt 文本")
    eligible: bool = Field(default=False, description="是否需要交给中继循环处理")
    command: PromptCommand = Field(default=PromptCommand.PROMPT, description="请求类型")


class MessageHandle(BaseModel):
    """已发送消息的句柄，用于后续原地编辑。"""

    model_config = ConfigDict(frozen=True)

    room_id: str
    event_id: str
