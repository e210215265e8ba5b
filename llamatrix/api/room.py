"""
llamatrix.api.room
~~~~~~~~~~~~~~~~~~

房间状态 REST 接口 —— 查看活跃房间、对话上下文，以及清空上下文。

路由前缀 ``/api``。

端点:
  - ``GET    /rooms``                    → 获取活跃房间列表
  - ``GET    /rooms/{room_id}``          → 获取房间详情
  - ``GET    /rooms/{room_id}/history``  → 获取房间当前的对话上下文
  - ``DELETE /rooms/{room_id}/context``  → 清空房间上下文（与房间内 ``!llamaclear`` 等价）
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from llamatrix.api.deps import get_supervisor
from llamatrix.schemas.api_response import ApiResponse
from llamatrix.schemas.chat import PromptCommand, PromptRequest
from llamatrix.schemas.room_status import HistoryResponseData, RoomInfoData, TurnData
from llamatrix.services.room_session import RoomSession
from llamatrix.services.supervisor import RoomSessionSupervisor

router: APIRouter = APIRouter()


def _session_or_404(supervisor: RoomSessionSupervisor, room_id: str) -> RoomSession:
    session = supervisor.get_session(room_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"房间不存在: {room_id}")
    return session


@router.get("/rooms", summary="获取活跃房间列表")
async def list_rooms(
    supervisor: RoomSessionSupervisor = Depends(get_supervisor),
) -> ApiResponse[list[RoomInfoData]]:
    """返回机器人当前加入的所有房间。"""
    return ApiResponse.ok(data=supervisor.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间详情")
async def room_info(
    room_id: str,
    supervisor: RoomSessionSupervisor = Depends(get_supervisor),
) -> ApiResponse[RoomInfoData]:
    """返回指定房间的中继状态、待处理请求数和上下文轮次数。"""
    session = _session_or_404(supervisor, room_id)
    return ApiResponse.ok(data=session.info())


@router.get("/rooms/{room_id}/history", summary="获取对话上下文")
async def room_history(
    room_id: str,
    supervisor: RoomSessionSupervisor = Depends(get_supervisor),
) -> ApiResponse[HistoryResponseData]:
    """返回房间当前保存的全部对话轮次（按时间正序，未裁剪）。"""
    _session_or_404(supervisor, room_id)
    turns = await supervisor.store.history(room_id)
    data = HistoryResponseData(
        room_id=room_id,
        turns=[
            TurnData(role=turn.role, text=turn.text, created_at=turn.timestamp.isoformat())
            for turn in turns
        ],
        total=len(turns),
    )
    return ApiResponse.ok(data=data)


@router.delete("/rooms/{room_id}/context", summary="清空对话上下文")
async def clear_context(
    room_id: str,
    supervisor: RoomSessionSupervisor = Depends(get_supervisor),
) -> ApiResponse[None]:
    """通过中继循环清空上下文，保证与正在进行的生成按顺序执行。"""
    session = _session_or_404(supervisor, room_id)
    session.relay.submit(
        PromptRequest(
            room_id=room_id,
            sender="api",
            eligible=True,
            command=PromptCommand.CLEAR_CONTEXT,
        ),
    )
    return ApiResponse.ok(data=None, msg="已提交清空请求")
