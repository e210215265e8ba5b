"""
llamatrix.services.prompt_gate
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

判断一条聊天事件能否成为 Prompt。

规则:
  - 私聊房间：所有文本消息都有效。
  - 群聊房间：只有以命令前缀（默认 ``!llama``）开头的消息有效，前缀会被去掉。
  - 非文本事件（表情回应、状态事件、媒体、编辑）一律忽略。
  - 机器人自己发出的消息一律忽略，避免自我触发。
  - ``<前缀>clear``（默认 ``!llamaclear``）在任何房间都是清空上下文命令。

纯函数，没有副作用。
"""
from __future__ import annotations

from llamatrix.core.config import settings
from llamatrix.schemas.chat import ChatEvent, EventKind, PromptCommand, PromptRequest, RoomKind

CLEAR_COMMAND_SUFFIX: str = "clear"


class PromptGate:
    """Prompt 过滤器。

    Attributes:
        bot_user_id: 机器人自己的账号 ID。
        prefix: 群聊中的命令前缀。
    """

    def __init__(self, bot_user_id: str, prefix: str | None = None) -> None:
        self.bot_user_id = bot_user_id
        self.prefix: str = prefix if prefix is not None else settings.COMMAND_PREFIX

    @property
    def clear_command(self) -> str:
        return f"{self.prefix}{CLEAR_COMMAND_SUFFIX}"

    def evaluate(self, event: ChatEvent, kind: RoomKind) -> PromptRequest:
        """返回 ``eligible`` 为 True/False 的 ``PromptRequest``。

        Args:
            event: 聊天事件。
            kind: 事件所在房间的类型。
        """
        ignored = PromptRequest(room_id=event.room_id, sender=event.sender)

        if event.kind != EventKind.TEXT or event.sender == self.bot_user_id:
            return ignored

        body = event.body.strip()
        if body == self.clear_command:
            return PromptRequest(
                room_id=event.room_id,
                sender=event.sender,
                eligible=True,
                command=PromptCommand.CLEAR_CONTEXT,
            )

        if body.startswith(self.prefix):
            text = body[len(self.prefix):].strip()
        elif kind == RoomKind.DIRECT:
            text = body
        else:
            return ignored

        if not text:
            return ignored
        return PromptRequest(
            room_id=event.room_id,
            sender=event.sender,
            text=text,
            eligible=True,
        )
