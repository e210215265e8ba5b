"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 Matrix 客户端和 Ollama 后端，
使单元测试可在无网络环境下快速运行。
"""
from __future__ import annotations

import asyncio
import os
from collections import deque
from collections.abc import AsyncIterator, Awaitable
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MATRIX_USERNAME", "bot")
os.environ.setdefault("MATRIX_PASSWORD", "test-fake-password")
os.environ.setdefault("MATRIX_HOMESERVER", "example.org")
os.environ.setdefault("MODEL", "llama3")

from llamatrix.core.exceptions import ChatPublishFailure, GenerationError  # noqa: E402
from llamatrix.llm.ollama_client import StreamStatus  # noqa: E402
from llamatrix.schemas.chat import (  # noqa: E402
    ChatEvent,
    EventKind,
    MessageHandle,
    Room,
    RoomKind,
    RoomState,
)

BOT_ID: str = "@bot:example.org"
ALICE: str = "@alice:example.org"


async def settle(awaitable: Awaitable[Any], timeout: float = 2.0) -> Any:
    """带超时地等待，避免测试卡死。"""
    return await asyncio.wait_for(awaitable, timeout=timeout)


async def spin(times: int = 5) -> None:
    """让出事件循环若干次，使后台任务推进。"""
    for _ in range(times):
        await asyncio.sleep(0)


# ── 假的 LLM 后端 ─────────────────────────────────────────────────────

class FakeStream:
    """模拟 ``GenerationStream``：按脚本产出增量，可在指定位置阻塞。"""

    def __init__(
        self,
        owner: FakeInference,
        chunks: list[str],
        error: GenerationError | None = None,
        release: asyncio.Event | None = None,
        block_after: int = 0,
    ) -> None:
        self.owner = owner
        self.chunks = chunks
        self.raise_error = error
        self.release = release
        self.block_after = block_after
        self.text: str = ""
        self.status: StreamStatus | None = None
        self.error: GenerationError | None = None
        self._index = 0
        self._started = False
        self._finished = False

    def __aiter__(self) -> FakeStream:
        return self

    def _finish(self) -> None:
        if self._started and not self._finished:
            self._finished = True
            self.owner.active -= 1

    async def __anext__(self) -> str:
        if self.status is not None:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            self.owner.active += 1
            self.owner.max_active = max(self.owner.max_active, self.owner.active)
        if self.release is not None and self._index >= self.block_after:
            await self.release.wait()
        if self._index < len(self.chunks):
            chunk = self.chunks[self._index]
            self._index += 1
            self.text += chunk
            return chunk
        if self.raise_error is not None:
            self.status = StreamStatus.FAILED
            self.error = self.raise_error
        else:
            self.status = StreamStatus.COMPLETED
        self._finish()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self.status is None:
            self.status = StreamStatus.ABORTED
        self.owner.closed += 1
        self._finish()


class FakeInference:
    """按顺序返回预先编排好的 ``FakeStream``，并统计并发数。"""

    def __init__(self) -> None:
        self.scripts: deque[dict[str, Any]] = deque()
        self.calls: list[tuple[str, str, tuple]] = []
        self.streams: list[FakeStream] = []
        self.active: int = 0
        self.max_active: int = 0
        self.closed: int = 0

    def script(
        self,
        chunks: list[str] | None = None,
        *,
        error: GenerationError | None = None,
        release: asyncio.Event | None = None,
        block_after: int = 0,
    ) -> None:
        self.scripts.append({
            "chunks": list(chunks or []),
            "error": error,
            "release": release,
            "block_after": block_after,
        })

    def generate(self, model: str, prompt_text: str, history: Any) -> FakeStream:
        self.calls.append((model, prompt_text, tuple(history)))
        plan = self.scripts.popleft() if self.scripts else {"chunks": ["ok"]}
        stream = FakeStream(self, **plan)
        self.streams.append(stream)
        return stream

    async def aclose(self) -> None:
        pass


# ── 假的聊天客户端 ────────────────────────────────────────────────────

class FakeChatClient:
    """内存版聊天网络客户端，记录所有发送与编辑操作。"""

    def __init__(self, user_id: str = BOT_ID) -> None:
        self.user_id = user_id
        self.kinds: dict[str, RoomKind] = {}
        self.messages: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []
        self.order: list[tuple[str, str]] = []
        self.edits: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.joined: list[str] = []
        self.left: list[str] = []
        self.join_ok: bool = True
        self.fail_publish: int = 0
        self.fail_edit: int = 0
        self._invites: asyncio.Queue[Room] = asyncio.Queue()
        self._events: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._counter = 0

    # 测试辅助
    def push_invite(self, room: Room) -> None:
        self._invites.put_nowait(room)

    def push_event(self, event: ChatEvent) -> None:
        self._events.put_nowait(event)

    def texts_in(self, room_id: str) -> list[str]:
        """房间内每条消息的最终文本（按发送顺序）。"""
        return [self.messages[eid] for rid, eid in self.order if rid == room_id]

    # ChatNetworkClient 接口
    async def invites(self) -> AsyncIterator[Room]:
        while True:
            yield await self._invites.get()

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            yield await self._events.get()

    async def publish(self, room_id: str, text: str) -> MessageHandle:
        if self.fail_publish > 0:
            self.fail_publish -= 1
            raise ChatPublishFailure("publish refused")
        self._counter += 1
        event_id = f"$ev{self._counter}"
        self.published.append((room_id, text))
        self.order.append((room_id, event_id))
        self.messages[event_id] = text
        return MessageHandle(room_id=room_id, event_id=event_id)

    async def edit(self, handle: MessageHandle, text: str) -> None:
        if self.fail_edit > 0:
            self.fail_edit -= 1
            raise ChatPublishFailure("edit refused")
        self.edits.append((handle.event_id, text))
        self.messages[handle.event_id] = text

    def joined_rooms(self) -> list[Room]:
        return [Room(room_id=rid, kind=self.room_kind(rid), state=RoomState.JOINED) for rid in self.joined]

    def room_kind(self, room_id: str) -> RoomKind:
        return self.kinds.get(room_id, RoomKind.GROUP)

    async def join(self, room_id: str) -> bool:
        if self.join_ok:
            self.joined.append(room_id)
        return self.join_ok

    async def leave(self, room_id: str) -> None:
        self.left.append(room_id)

    async def set_typing(self, room_id: str, typing: bool) -> None:
        self.typing.append((room_id, typing))


def text_event(room_id: str, body: str, sender: str = ALICE) -> ChatEvent:
    return ChatEvent(room_id=room_id, sender=sender, kind=EventKind.TEXT, body=body)


@pytest.fixture()
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture()
def inference() -> FakeInference:
    return FakeInference()
