"""
llamatrix.prompts.chat
~~~~~~~~~~~~~~~~~~~~~~

把房间上下文和新的 Prompt 组装为 Ollama ``/api/chat`` 的 ``messages`` 列表。

将 Prompt 组装独立管理，方便在不修改后端连接代码的前提下调整策略。
"""
from __future__ import annotations

from collections.abc import Sequence

from llamatrix.schemas.chat import ConversationTurn


def build_chat_messages(
    prompt_text: str,
    history: Sequence[ConversationTurn],
    system_prompt: str = "",
) -> list[dict[str, str]]:
    """组装发送给后端的消息列表。

    Args:
        prompt_text: 本轮用户输入（已去掉命令前缀）。
        history: 房间上下文快照，不包含本轮输入。
        system_prompt: 可选的系统 Prompt，为空时不发送 system 消息。

    Returns:
        ``[{"role": ..., "content": ...}, ...]``，最后一条是本轮用户输入。
    """
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history:
        messages.append({"role": turn.role.value, "content": turn.text})
    messages.append({"role": "user", "content": prompt_text})
    return messages
