"""
llamatrix.llm.ollama_client
~~~~~~~~~~~~~~~~~~~~~~~~~~~

Ollama 流式客户端封装 —— 只负责与 ``/api/chat`` 的连接和流式读取。

``generate()`` 返回一个惰性的 ``GenerationStream``：首次迭代时才发出请求，
逐个产出文本增量，结束后通过 ``status`` / ``error`` 给出终止状态。
HTTP 响应始终在 ``async with`` 内持有，无论正常结束、被取消还是网络失败，
连接都会立即释放。

本组件不做重试，重试策略属于中继循环。
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Sequence
from enum import Enum
from typing import Any

import httpx

from llamatrix.core.config import settings
from llamatrix.core.exceptions import (
    BackendError,
    BackendUnreachable,
    GenerationError,
    GenerationTimeout,
)
from llamatrix.core.logging import get_logger
from llamatrix.prompts.chat import build_chat_messages
from llamatrix.schemas.chat import ConversationTurn

logger = get_logger(__name__)

CHAT_PATH: str = "/api/chat"


class StreamStatus(str, Enum):
    """生成流的终止状态。"""

    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


def _error_detail(response: httpx.Response) -> str:
    """从非 2xx 响应中提取错误信息（Ollama 返回 ``{"error": "..."}``）。"""
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {response.status_code}"


class GenerationStream:
    """一次流式生成：惰性、有限、不可重启的文本增量序列。

    用法::

        async with client.generate(model, "hello", history) as stream:
            async for chunk in stream:
                ...
        if stream.status == StreamStatus.FAILED:
            print(stream.error.notice)

    Attributes:
        text: 已收到的全部文本（失败时保留部分结果）。
        status: 终止状态；迭代结束前为 ``None``。
        error: ``status`` 为 ``FAILED`` 时的错误。
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
        timeout: httpx.Timeout,
    ) -> None:
        self._client = client
        self._payload = payload
        self._timeout = timeout
        self._agen: AsyncGenerator[str, None] | None = None
        self.text: str = ""
        self.status: StreamStatus | None = None
        self.error: GenerationError | None = None

    @property
    def done(self) -> bool:
        return self.status is not None

    def __aiter__(self) -> GenerationStream:
        return self

    async def __anext__(self) -> str:
        if self._agen is None:
            if self.done:
                raise StopAsyncIteration
            self._agen = self._produce()
        return await self._agen.__anext__()

    async def aclose(self) -> None:
        """中止生成并释放底层连接。已结束的流调用无副作用。"""
        if self.status is None:
            self.status = StreamStatus.ABORTED
        if self._agen is not None:
            await self._agen.aclose()

    async def __aenter__(self) -> GenerationStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _fail(self, error: GenerationError) -> None:
        self.status = StreamStatus.FAILED
        self.error = error
        logger.warning("生成流失败 [%s]: %s", error.code, error.message)

    async def _produce(self) -> AsyncGenerator[str, None]:
        try:
            async with self._client.stream(
                "POST",
                CHAT_PATH,
                json=self._payload,
                timeout=self._timeout,
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise BackendError(
                        _error_detail(response), status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("跳过无法解析的流数据: %s", line[:80])
                        continue
                    if not isinstance(data, dict):
                        logger.debug("跳过非对象的流数据: %s", line[:80])
                        continue

                    if data.get("error"):
                        raise BackendError(str(data["error"]))

                    message = data.get("message")
                    content = message.get("content") if isinstance(message, dict) else None
                    content = content if isinstance(content, str) else ""
                    if content:
                        self.text += content
                        yield content

                    if data.get("done"):
                        self.status = StreamStatus.COMPLETED
                        return

            raise BackendError("stream ended without a completion marker")
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            self._fail(BackendUnreachable(str(e) or type(e).__name__))
        except httpx.TimeoutException as e:
            self._fail(GenerationTimeout(str(e) or "no data within the idle window"))
        except httpx.HTTPError as e:
            self._fail(BackendError(str(e) or type(e).__name__))
        except GenerationError as e:
            self._fail(e)
        except (asyncio.CancelledError, GeneratorExit):
            if self.status is None:
                self.status = StreamStatus.ABORTED
            raise


class OllamaClient:
    """Ollama ``/api/chat`` 流式客户端，全局共享一个 ``httpx.AsyncClient`` 连接池。

    Attributes:
        base_url: 后端地址。
        system_prompt: 每次请求附带的系统 Prompt（为空则不发送）。
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        system_prompt: str | None = None,
        connect_timeout: float | None = None,
        idle_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """初始化客户端。

        Args:
            base_url: 后端地址，默认读取 ``settings.BACKEND_URL``。
            system_prompt: 系统 Prompt，默认读取 ``settings.SYSTEM_PROMPT``。
            connect_timeout: 建立连接的超时（秒）。
            idle_timeout: 两次数据之间允许的最长间隔（秒）。
            http_client: 可选的 ``httpx.AsyncClient``（用于测试注入 mock transport）。
        """
        self.base_url: str = (base_url or settings.BACKEND_URL).rstrip("/")
        self.system_prompt: str = (
            system_prompt if system_prompt is not None else settings.SYSTEM_PROMPT
        )
        self._timeout = httpx.Timeout(
            idle_timeout if idle_timeout is not None else settings.GENERATION_IDLE_TIMEOUT,
            connect=connect_timeout if connect_timeout is not None else settings.BACKEND_CONNECT_TIMEOUT,
        )
        self._client: httpx.AsyncClient = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
        )
        logger.info("LLM 客户端已初始化 | backend=%s", self.base_url)

    def generate(
        self,
        model: str,
        prompt_text: str,
        history: Sequence[ConversationTurn],
    ) -> GenerationStream:
        """创建一次流式生成（惰性，迭代时才发出请求）。

        Args:
            model: Ollama 模型名称。
            prompt_text: 本轮用户输入。
            history: 房间上下文快照（不包含本轮输入）。

        Returns:
            尚未开始的 ``GenerationStream``。
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": build_chat_messages(prompt_text, history, self.system_prompt),
            "stream": True,
        }
        return GenerationStream(self._client, payload, self._timeout)

    async def aclose(self) -> None:
        """关闭连接池。应在应用关闭时调用。"""
        await self._client.aclose()
