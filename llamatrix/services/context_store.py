"""
llamatrix.services.context_store
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

按房间保存的对话上下文（内存存储，不跨进程持久化）。

每个房间的条目拥有独立的 ``asyncio.Lock``，房间之间互不阻塞。
发送给后端的上下文长度由可注入的裁剪策略控制，存储本身不设上限。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from llamatrix.core.logging import get_logger
from llamatrix.schemas.chat import ConversationTurn, Role

logger = get_logger(__name__)

# 裁剪策略：输入完整历史，返回实际发送给后端的部分
TrimPolicy = Callable[[Sequence[ConversationTurn]], Sequence[ConversationTurn]]


def keep_all(turns: Sequence[ConversationTurn]) -> Sequence[ConversationTurn]:
    return turns


class KeepLastTurns:
    """只保留最近 ``max_turns`` 轮。

    裁剪后的第一条如果是助手回复，会一并去掉，保证上下文总以用户输入开头。
    """

    def __init__(self, max_turns: int) -> None:
        if max_turns < 1:
            raise ValueError("max_turns 必须大于 0")
        self.max_turns = max_turns

    def __call__(self, turns: Sequence[ConversationTurn]) -> Sequence[ConversationTurn]:
        if len(turns) <= self.max_turns:
            return turns
        kept = turns[-self.max_turns:]
        if kept and kept[0].role == Role.ASSISTANT:
            kept = kept[1:]
        return kept


def trim_policy_from_limit(max_turns: int) -> TrimPolicy:
    """根据配置值构造裁剪策略，``0`` 表示不裁剪。"""
    if max_turns <= 0:
        return keep_all
    return KeepLastTurns(max_turns)


class ContextStore:
    """房间 → 对话轮次序列。

    Attributes:
        trim: 生成快照时使用的裁剪策略。
    """

    def __init__(self, trim: TrimPolicy | None = None) -> None:
        self.trim: TrimPolicy = trim or keep_all
        self._histories: dict[str, list[ConversationTurn]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        return self._locks.setdefault(room_id, asyncio.Lock())

    async def append(self, room_id: str, turn: ConversationTurn) -> None:
        """在房间历史末尾追加一轮对话（房间不存在时自动创建）。"""
        async with self._lock_for(room_id):
            self._histories.setdefault(room_id, []).append(turn)

    async def snapshot(self, room_id: str) -> tuple[ConversationTurn, ...]:
        """返回裁剪后的历史快照（不可变元组，调用方无法修改存储）。"""
        async with self._lock_for(room_id):
            turns = self._histories.get(room_id, [])
            return tuple(self.trim(list(turns)))

    async def history(self, room_id: str) -> tuple[ConversationTurn, ...]:
        """返回未裁剪的完整历史。"""
        async with self._lock_for(room_id):
            return tuple(self._histories.get(room_id, []))

    async def clear(self, room_id: str) -> None:
        """清空房间上下文（保留条目）。"""
        async with self._lock_for(room_id):
            self._histories[room_id] = []
        logger.info("上下文已清空 | room=%s", room_id)

    async def drop(self, room_id: str) -> None:
        """彻底移除房间条目（离开房间时调用）。"""
        async with self._lock_for(room_id):
            self._histories.pop(room_id, None)
        self._locks.pop(room_id, None)

    def count(self, room_id: str) -> int:
        """房间当前的轮次数。"""
        return len(self._histories.get(room_id, []))

    def rooms(self) -> list[str]:
        return list(self._histories)
