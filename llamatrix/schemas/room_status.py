"""
llamatrix.schemas.room_status
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

状态接口使用的 Pydantic 响应模型。
"""
from __future__ import annotations

from pydantic import BaseModel, Field

from llamatrix.schemas.chat import Role, RoomKind, RoomState


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    kind: RoomKind = Field(..., description="房间类型：direct / group")
    state: RoomState = Field(..., description="机器人在房间中的状态")
    relay_state: str = Field(..., description="中继循环状态：idle / generating")
    pending: int = Field(..., description="等待处理的请求数")
    turns: int = Field(..., description="当前上下文中的轮次数")


class TurnData(BaseModel):
    """单条对话轮次。"""

    role: Role = Field(..., description="消息角色：user / assistant")
    text: str = Field(..., description="消息文本")
    created_at: str = Field(..., description="创建时间（ISO 格式）")


class HistoryResponseData(BaseModel):
    """对话上下文响应数据。"""

    room_id: str = Field(..., description="房间 ID")
    turns: list[TurnData] = Field(..., description="轮次列表（按时间正序）")
    total: int = Field(..., description="本次返回条数")
