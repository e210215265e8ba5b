"""
llamatrix.services.relay
~~~~~~~~~~~~~~~~~~~~~~~~

单个房间的中继循环 —— 拉取 Prompt、调用后端、把增量原地编辑到一条聊天消息里。

状态机::

    IDLE ──收到请求──▶ GENERATING ──完成 / 失败──▶ IDLE

  - ``IDLE``：等待请求。收到后先取上下文快照，再追加用户轮次。
  - ``GENERATING``：第一个增量发送一条新消息，之后的增量原地编辑这条消息。
    完成时追加助手轮次；失败时发送一条错误提示，不追加助手轮次。

生成期间到达的请求只保留最新的 ``queue_depth`` 条（默认 1），
更早的请求被静默丢弃，避免突发消息造成无限积压。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from enum import Enum

from llamatrix.chat.base import ChatNetworkClient
from llamatrix.core.config import settings
from llamatrix.core.exceptions import ChatPublishFailure
from llamatrix.core.logging import get_logger, room_id_ctx_var
from llamatrix.llm.ollama_client import GenerationStream, OllamaClient, StreamStatus
from llamatrix.schemas.chat import ConversationTurn, MessageHandle, PromptCommand, PromptRequest, Role
from llamatrix.services.context_store import ContextStore

logger = get_logger(__name__)

CONTEXT_CLEARED_NOTICE: str = "Context cleared"


class RelayState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"


class OutgoingMessage:
    """一次生成对应的那条聊天消息。

    第一次更新时发送，之后原地编辑。发送失败只记录日志，
    下一次成功的更新总会带上完整的累计文本。
    """

    def __init__(
        self,
        chat: ChatNetworkClient,
        room_id: str,
        edit_interval: float = 0.0,
    ) -> None:
        self.chat = chat
        self.room_id = room_id
        self.edit_interval = edit_interval
        self.handle: MessageHandle | None = None
        self.published_text: str = ""
        self._last_sent: float = 0.0

    async def update(self, text: str, *, force: bool = False) -> None:
        if not text or text == self.published_text:
            return
        now = asyncio.get_running_loop().time()
        if (
            not force
            and self.handle is not None
            and self.edit_interval > 0
            and now - self._last_sent < self.edit_interval
        ):
            return
        try:
            if self.handle is None:
                self.handle = await self.chat.publish(self.room_id, text)
            else:
                await self.chat.edit(self.handle, text)
        except ChatPublishFailure as e:
            logger.warning("消息发送失败，稍后重试: %s", e.message)
            return
        self.published_text = text
        self._last_sent = now

    async def flush(self, text: str) -> None:
        """确保房间最终看到完整文本。"""
        await self.update(text, force=True)


class RelayLoop:
    """单个房间的中继循环。

    Attributes:
        room_id: 所属房间。
        state: 当前状态。
        active_stream: 正在进行的生成流（空闲时为 ``None``）。
    """

    def __init__(
        self,
        room_id: str,
        chat: ChatNetworkClient,
        inference: OllamaClient,
        store: ContextStore,
        *,
        model: str | None = None,
        queue_depth: int | None = None,
        edit_interval: float | None = None,
        typing_interval: float | None = None,
    ) -> None:
        self.room_id = room_id
        self.chat = chat
        self.inference = inference
        self.store = store
        self.model: str = model or settings.MODEL
        self.edit_interval: float = (
            edit_interval if edit_interval is not None else settings.RELAY_EDIT_INTERVAL
        )
        self.typing_interval: float = (
            typing_interval if typing_interval is not None else settings.TYPING_REFRESH_INTERVAL
        )
        self.state: RelayState = RelayState.IDLE
        self.active_stream: GenerationStream | None = None

        self._pending: deque[PromptRequest] = deque(
            maxlen=queue_depth or settings.RELAY_QUEUE_DEPTH,
        )
        self._clear_requested: bool = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending(self) -> int:
        """等待处理的请求数（不含正在生成的那个）。"""
        return len(self._pending) + int(self._clear_requested)

    def submit(self, request: PromptRequest) -> None:
        """非阻塞地投递一个请求。

        清空上下文命令会丢弃在它之前排队的 Prompt。
        """
        if request.command == PromptCommand.CLEAR_CONTEXT:
            if self._pending:
                logger.debug("清空命令丢弃 %d 个待处理请求", len(self._pending))
            self._pending.clear()
            self._clear_requested = True
        else:
            if len(self._pending) == self._pending.maxlen:
                logger.debug("待处理队列已满，丢弃较早的请求 | sender=%s", self._pending[0].sender)
            self._pending.append(request)
        self._idle.clear()
        self._wakeup.set()

    async def wait_idle(self) -> None:
        """等待直到空闲且没有待处理请求。"""
        await self._idle.wait()

    async def run(self) -> None:
        """循环处理请求，直到所在任务被取消。"""
        room_id_ctx_var.set(self.room_id)
        logger.info("中继循环已启动")
        try:
            while True:
                await self._wakeup.wait()
                self._wakeup.clear()
                while self._clear_requested or self._pending:
                    try:
                        if self._clear_requested:
                            self._clear_requested = False
                            await self._clear_context()
                        else:
                            await self._relay(self._pending.popleft())
                    except Exception as e:
                        # 单次周期的异常不能影响房间后续的请求
                        logger.error("中继周期异常: %s", e, exc_info=True)
                    finally:
                        self.state = RelayState.IDLE
                self._idle.set()
        finally:
            logger.info("中继循环已退出")

    async def _relay(self, request: PromptRequest) -> None:
        history = await self.store.snapshot(self.room_id)
        await self.store.append(
            self.room_id, ConversationTurn(role=Role.USER, text=request.text),
        )
        self.state = RelayState.GENERATING
        logger.info("开始生成 | sender=%s | history=%d", request.sender, len(history))

        stream = self.inference.generate(self.model, request.text, history)
        self.active_stream = stream
        outgoing = OutgoingMessage(self.chat, self.room_id, self.edit_interval)
        typing_task = asyncio.create_task(self._keep_typing())
        try:
            async for _ in stream:
                await outgoing.update(stream.text)
        finally:
            typing_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await typing_task
            await stream.aclose()
            self.active_stream = None
            await self._set_typing(False)

        if stream.status == StreamStatus.COMPLETED:
            await outgoing.flush(stream.text)
            if stream.text:
                await self.store.append(
                    self.room_id, ConversationTurn(role=Role.ASSISTANT, text=stream.text),
                )
            logger.info("生成完成 | chars=%d", len(stream.text))
            return

        # 失败前已收到的部分文本也要完整展示
        await outgoing.flush(stream.text)
        notice = stream.error.notice if stream.error else "⚠️ Generation failed."
        try:
            await self.chat.publish(self.room_id, notice)
        except ChatPublishFailure as e:
            logger.warning("错误提示发送失败: %s", e.message)

    async def _clear_context(self) -> None:
        await self.store.clear(self.room_id)
        try:
            await self.chat.publish(self.room_id, CONTEXT_CLEARED_NOTICE)
        except ChatPublishFailure as e:
            logger.warning("清空提示发送失败: %s", e.message)

    async def _keep_typing(self) -> None:
        while True:
            await self._set_typing(True)
            await asyncio.sleep(self.typing_interval)

    async def _set_typing(self, typing: bool) -> None:
        try:
            await self.chat.set_typing(self.room_id, typing)
        except Exception as e:
            # 输入提示失败不影响生成
            logger.debug("输入提示更新失败: %s", e)
