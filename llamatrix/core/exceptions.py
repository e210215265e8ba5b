"""
llamatrix.core.exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~

统一异常模型。

所有跨模块抛出的错误都继承自 ``BridgeError``，便于中继循环统一捕获。
生成类错误（``GenerationError`` 子类）会终止当前的生成流，
并以一条聊天提示的形式告知房间，房间随后回到空闲状态。

Prompt Gate 的过滤结果不是异常：不合格的事件直接得到 ``eligible=False``。
"""
from __future__ import annotations


class BridgeError(Exception):
    """异常基类。

    Attributes:
        code: 机器可读错误码（如 ``"BACKEND_UNREACHABLE"``）。
        message: 人类可读错误信息（用于日志）。
    """

    code: str = "BRIDGE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class GenerationError(BridgeError):
    """终止生成流的错误。``notice`` 是发送到房间的提示文本。"""

    code = "GENERATION_ERROR"

    @property
    def notice(self) -> str:
        return f"⚠️ Generation failed: {self.message}"


class BackendUnreachable(GenerationError):
    """无法与 LLM 后端建立连接。"""

    code = "BACKEND_UNREACHABLE"

    @property
    def notice(self) -> str:
        return "⚠️ Could not reach the LLM backend, please try again later."


class BackendError(GenerationError):
    """后端返回非成功状态，或在流中途报告错误。

    Attributes:
        status_code: HTTP 状态码；流中途的错误行没有状态码。
    """

    code = "BACKEND_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def notice(self) -> str:
        return f"⚠️ The LLM backend returned an error: {self.message}"


class GenerationTimeout(GenerationError):
    """在空闲窗口内没有收到任何增量。"""

    code = "GENERATION_TIMEOUT"

    @property
    def notice(self) -> str:
        return "⚠️ The LLM backend timed out."


class ChatPublishFailure(BridgeError):
    """发送或编辑聊天消息失败。只记录日志，不中断生成。"""

    code = "CHAT_PUBLISH_FAILURE"
