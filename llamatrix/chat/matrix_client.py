"""
llamatrix.chat.matrix_client
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

基于 matrix-nio 的聊天网络客户端。

职责:
  - 登录：优先从 ``DATA_DIR/session.json`` 恢复会话，否则用密码登录并保存会话。
  - 首次同步：先安装邀请回调，再做一次短超时同步（跳过历史消息），
    之后才安装消息回调，避免回复启动前的旧消息。
  - 把 nio 的回调转换成 ``asyncio.Queue``，以异步迭代器的形式交给上层消费。
  - 发送消息、``m.replace`` 原地编辑、输入提示。
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from urllib.parse import urlparse

from nio import (
    AsyncClient,
    DiscoveryInfoResponse,
    InviteMemberEvent,
    JoinResponse,
    LoginResponse,
    MatrixRoom,
    RoomMemberEvent,
    RoomMessage,
    RoomMessageText,
    RoomSendResponse,
    SyncResponse,
)

from llamatrix.core.config import settings
from llamatrix.core.exceptions import BridgeError, ChatPublishFailure
from llamatrix.core.logging import get_logger
from llamatrix.schemas.chat import ChatEvent, EventKind, MessageHandle, Room, RoomKind, RoomState

logger = get_logger(__name__)

DEVICE_NAME: str = "llamatrix"
SYNC_TIMEOUT_MS: int = 30_000
TYPING_TIMEOUT_MS: int = 10_000


def server_name_of(homeserver: str) -> str:
    """``https://matrix.org`` / ``matrix.org`` → ``matrix.org``。"""
    if "://" in homeserver:
        return urlparse(homeserver).netloc
    return homeserver.strip("/")


def build_user_id(username: str, homeserver: str) -> str:
    """把用户名补全为 ``@localpart:server`` 形式。"""
    if username.startswith("@") and ":" in username:
        return username
    return f"@{username.lstrip('@')}:{server_name_of(homeserver)}"


def is_replacement(event: RoomMessage) -> bool:
    """是否为 ``m.replace`` 编辑事件。"""
    relates_to = event.source.get("content", {}).get("m.relates_to") or {}
    return relates_to.get("rel_type") == "m.replace"


class MatrixChatClient:
    """Matrix 聊天网络客户端。

    Attributes:
        user_id: 机器人的完整 Matrix ID。
        homeserver: 配置的 homeserver（域名或 URL）。
        session_file: 登录会话文件路径。
    """

    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        homeserver: str | None = None,
        *,
        session_file: Path | None = None,
        initial_sync_timeout_ms: int | None = None,
        client: AsyncClient | None = None,
    ) -> None:
        self.homeserver: str = homeserver or settings.MATRIX_HOMESERVER
        self.user_id: str = build_user_id(username or settings.MATRIX_USERNAME, self.homeserver)
        self._password: str = password or settings.MATRIX_PASSWORD
        self.session_file: Path = session_file or settings.session_file
        self.initial_sync_timeout_ms: int = (
            initial_sync_timeout_ms
            if initial_sync_timeout_ms is not None
            else settings.INITIAL_SYNC_TIMEOUT_MS
        )
        self._client: AsyncClient | None = client
        self._restored: bool = False
        self._invites: asyncio.Queue[Room] = asyncio.Queue()
        self._events: asyncio.Queue[ChatEvent] = asyncio.Queue()

    # ── 登录与同步 ────────────────────────────────────────────────────

    def _require_client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError("MatrixChatClient 尚未登录，请先调用 login()")
        return self._client

    async def _resolve_homeserver_url(self, client: AsyncClient) -> None:
        """域名形式的 homeserver 通过 ``.well-known`` 解析真实地址。"""
        if "://" in self.homeserver:
            return
        resp = await client.discovery_info()
        if isinstance(resp, DiscoveryInfoResponse):
            client.homeserver = resp.homeserver_url.rstrip("/")
            logger.debug("homeserver 已解析 -> %s", client.homeserver)

    async def login(self) -> None:
        """恢复已保存的会话，或使用密码登录。

        Raises:
            BridgeError: 密码登录失败。
        """
        if self._client is None:
            base_url = self.homeserver if "://" in self.homeserver else f"https://{self.homeserver}"
            self._client = AsyncClient(base_url, self.user_id)
            await self._resolve_homeserver_url(self._client)

        session = self._read_session()
        if session is not None:
            self._client.restore_login(
                user_id=session["user_id"],
                device_id=session["device_id"],
                access_token=session["access_token"],
            )
            self._restored = True
            logger.info("已恢复登录会话 | user=%s", session["user_id"])
            return
        await self._password_login()

    async def _password_login(self) -> None:
        client = self._require_client()
        resp = await client.login(password=self._password, device_name=DEVICE_NAME)
        if not isinstance(resp, LoginResponse):
            raise BridgeError(f"Matrix 登录失败: {getattr(resp, 'message', resp)}", code="LOGIN_FAILED")
        self._restored = False
        self._write_session(resp)
        logger.info("Matrix 登录成功 | user=%s | device=%s", resp.user_id, resp.device_id)

    def _read_session(self) -> dict | None:
        try:
            data = json.loads(self.session_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not all(data.get(key) for key in ("user_id", "device_id", "access_token")):
            return None
        return data

    def _write_session(self, resp: LoginResponse) -> None:
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        self.session_file.write_text(
            json.dumps({
                "user_id": resp.user_id,
                "device_id": resp.device_id,
                "access_token": resp.access_token,
            }),
            encoding="utf-8",
        )
        self.session_file.chmod(0o600)

    async def start(self) -> None:
        """首次同步并安装事件回调。

        已保存的会话失效时删除会话文件并用密码重新登录一次。

        Raises:
            BridgeError: 首次同步失败。
        """
        client = self._require_client()
        client.add_event_callback(self._on_invite, InviteMemberEvent)

        resp = await client.sync(timeout=self.initial_sync_timeout_ms, full_state=True)
        if not isinstance(resp, SyncResponse) and self._restored:
            logger.warning("已保存的会话失效，重新登录: %s", getattr(resp, "message", resp))
            self.session_file.unlink(missing_ok=True)
            await self._password_login()
            resp = await client.sync(timeout=self.initial_sync_timeout_ms, full_state=True)
        if not isinstance(resp, SyncResponse):
            raise BridgeError(f"首次同步失败: {getattr(resp, 'message', resp)}", code="SYNC_FAILED")

        client.add_event_callback(self._on_message, RoomMessage)
        client.add_event_callback(self._on_member, RoomMemberEvent)
        logger.info("首次同步完成 | 已加入 %d 个房间", len(client.rooms))

    async def sync_forever(self) -> None:
        """持续同步，直到所在任务被取消。"""
        await self._require_client().sync_forever(timeout=SYNC_TIMEOUT_MS)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    # ── nio 回调 → 队列 ───────────────────────────────────────────────

    async def _on_invite(self, room: MatrixRoom, event: InviteMemberEvent) -> None:
        if event.state_key != self.user_id or event.membership != "invite":
            return
        kind = RoomKind.DIRECT if event.content.get("is_direct") else RoomKind.GROUP
        logger.info("收到邀请 | room=%s | from=%s", room.room_id, event.sender)
        self._invites.put_nowait(Room(room_id=room.room_id, kind=kind, state=RoomState.PENDING))

    async def _on_message(self, room: MatrixRoom, event: RoomMessage) -> None:
        if isinstance(event, RoomMessageText) and not is_replacement(event):
            chat_event = ChatEvent(
                room_id=room.room_id,
                sender=event.sender,
                kind=EventKind.TEXT,
                body=event.body,
                event_id=event.event_id,
            )
        else:
            chat_event = ChatEvent(
                room_id=room.room_id,
                sender=event.sender,
                kind=EventKind.OTHER,
                event_id=event.event_id,
            )
        self._events.put_nowait(chat_event)

    async def _on_member(self, room: MatrixRoom, event: RoomMemberEvent) -> None:
        if event.state_key != self.user_id or event.membership not in ("leave", "ban"):
            return
        logger.info("机器人已离开房间 | room=%s | membership=%s", room.room_id, event.membership)
        self._events.put_nowait(
            ChatEvent(
                room_id=room.room_id,
                sender=event.sender,
                kind=EventKind.LEAVE,
                event_id=event.event_id,
            ),
        )

    async def invites(self) -> AsyncIterator[Room]:
        while True:
            yield await self._invites.get()

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            yield await self._events.get()

    # ── 房间操作 ──────────────────────────────────────────────────────

    async def _send(self, room_id: str, content: dict) -> RoomSendResponse:
        try:
            resp = await self._require_client().room_send(
                room_id,
                message_type="m.room.message",
                content=content,
                ignore_unverified_devices=True,
            )
        except Exception as e:
            raise ChatPublishFailure(f"room_send 异常: {e}") from e
        if not isinstance(resp, RoomSendResponse):
            raise ChatPublishFailure(f"room_send 失败: {getattr(resp, 'message', resp)}")
        return resp

    async def publish(self, room_id: str, text: str) -> MessageHandle:
        resp = await self._send(room_id, {"msgtype": "m.text", "body": text})
        return MessageHandle(room_id=room_id, event_id=resp.event_id)

    async def edit(self, handle: MessageHandle, text: str) -> None:
        await self._send(
            handle.room_id,
            {
                "msgtype": "m.text",
                "body": f"* {text}",
                "m.new_content": {"msgtype": "m.text", "body": text},
                "m.relates_to": {"rel_type": "m.replace", "event_id": handle.event_id},
            },
        )

    async def set_typing(self, room_id: str, typing: bool) -> None:
        await self._require_client().room_typing(
            room_id, typing_state=typing, timeout=TYPING_TIMEOUT_MS,
        )

    async def join(self, room_id: str) -> bool:
        resp = await self._require_client().join(room_id)
        if isinstance(resp, JoinResponse):
            logger.info("已加入房间 | room=%s", room_id)
            return True
        logger.warning("加入房间失败 | room=%s | %s", room_id, getattr(resp, "message", resp))
        return False

    async def leave(self, room_id: str) -> None:
        await self._require_client().room_leave(room_id)

    def room_kind(self, room_id: str) -> RoomKind:
        """两人房间视为私聊，其余视为群聊。"""
        room = self._require_client().rooms.get(room_id)
        if room is not None and room.member_count == 2:
            return RoomKind.DIRECT
        return RoomKind.GROUP

    def joined_rooms(self) -> list[Room]:
        return [
            Room(room_id=room_id, kind=self.room_kind(room_id), state=RoomState.JOINED)
            for room_id in self._require_client().rooms
        ]
