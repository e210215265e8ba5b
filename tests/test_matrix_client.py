"""
tests.test_matrix_client
~~~~~~~~~~~~~~~~~~~~~~~~

MatrixChatClient 单元测试 —— nio ``AsyncClient`` 与响应对象全部使用 mock，
不访问真实的 homeserver。
"""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ALICE, BOT_ID, settle
from nio import (
    InviteMemberEvent,
    JoinError,
    JoinResponse,
    LoginError,
    LoginResponse,
    RoomMemberEvent,
    RoomMessage,
    RoomMessageText,
    RoomSendError,
    RoomSendResponse,
    SyncError,
    SyncResponse,
)

from llamatrix.chat.matrix_client import (
    MatrixChatClient,
    build_user_id,
    is_replacement,
    server_name_of,
)
from llamatrix.core.exceptions import BridgeError, ChatPublishFailure
from llamatrix.schemas.chat import EventKind, MessageHandle, RoomKind


def login_response(token: str = "tok-1") -> MagicMock:
    return MagicMock(
        spec=LoginResponse, user_id=BOT_ID, device_id="DEVICE", access_token=token,
    )


def make_nio() -> MagicMock:
    nio_client = MagicMock()
    nio_client.login = AsyncMock(return_value=login_response())
    nio_client.sync = AsyncMock(return_value=MagicMock(spec=SyncResponse))
    nio_client.room_send = AsyncMock(
        return_value=MagicMock(spec=RoomSendResponse, event_id="$sent"),
    )
    nio_client.room_typing = AsyncMock()
    nio_client.join = AsyncMock(return_value=MagicMock(spec=JoinResponse))
    nio_client.room_leave = AsyncMock()
    nio_client.close = AsyncMock()
    nio_client.rooms = {}
    return nio_client


def make_client(tmp_path: Path, nio_client: MagicMock) -> MatrixChatClient:
    return MatrixChatClient(
        "bot",
        "secret",
        "example.org",
        session_file=tmp_path / "session.json",
        initial_sync_timeout_ms=500,
        client=nio_client,
    )


def matrix_room(room_id: str) -> MagicMock:
    room = MagicMock()
    room.room_id = room_id
    return room


# ── 工具函数 ──────────────────────────────────────────────────────────

class TestHelpers:
    """测试用户 ID 补全与编辑事件识别。"""

    def test_server_name(self) -> None:
        assert server_name_of("matrix.org") == "matrix.org"
        assert server_name_of("https://matrix.example.com/") == "matrix.example.com"

    def test_build_user_id(self) -> None:
        assert build_user_id("bot", "matrix.org") == "@bot:matrix.org"
        assert build_user_id("@bot", "https://matrix.org") == "@bot:matrix.org"
        assert build_user_id("@bot:other.org", "matrix.org") == "@bot:other.org"

    def test_is_replacement(self) -> None:
        edit = MagicMock(source={"content": {"m.relates_to": {"rel_type": "m.replace"}}})
        reply = MagicMock(source={"content": {"m.relates_to": {"m.in_reply_to": {}}}})
        plain = MagicMock(source={"content": {}})

        assert is_replacement(edit) is True
        assert is_replacement(reply) is False
        assert is_replacement(plain) is False


# ── 登录 ──────────────────────────────────────────────────────────────

class TestLogin:
    """测试密码登录与会话恢复。"""

    @pytest.mark.asyncio
    async def test_password_login_saves_session(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        await client.login()

        nio_client.login.assert_awaited_once_with(password="secret", device_name="llamatrix")
        saved = json.loads((tmp_path / "session.json").read_text(encoding="utf-8"))
        assert saved == {"user_id": BOT_ID, "device_id": "DEVICE", "access_token": "tok-1"}
        assert (tmp_path / "session.json").stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_restores_saved_session(self, tmp_path: Path) -> None:
        (tmp_path / "session.json").write_text(
            json.dumps({"user_id": BOT_ID, "device_id": "OLD", "access_token": "tok-0"}),
            encoding="utf-8",
        )
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        await client.login()

        nio_client.restore_login.assert_called_once_with(
            user_id=BOT_ID, device_id="OLD", access_token="tok-0",
        )
        nio_client.login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_corrupt_session_falls_back_to_password(self, tmp_path: Path) -> None:
        (tmp_path / "session.json").write_text("{not json", encoding="utf-8")
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        await client.login()

        nio_client.login.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_login_failure_raises(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        nio_client.login.return_value = MagicMock(spec=LoginError, message="Invalid password")
        client = make_client(tmp_path, nio_client)

        with pytest.raises(BridgeError) as exc_info:
            await client.login()

        assert exc_info.value.code == "LOGIN_FAILED"
        assert not (tmp_path / "session.json").exists()


# ── 首次同步 ──────────────────────────────────────────────────────────

class TestStart:
    """测试首次同步与回调安装顺序。"""

    @pytest.mark.asyncio
    async def test_invite_callback_before_initial_sync(self, tmp_path: Path) -> None:
        """邀请回调在首次同步前安装，消息回调在首次同步后安装。"""
        nio_client = make_nio()
        calls: list[str] = []
        nio_client.add_event_callback.side_effect = (
            lambda callback, event_type: calls.append(event_type.__name__)
        )

        async def sync(**kwargs):
            calls.append("sync")
            return MagicMock(spec=SyncResponse)

        nio_client.sync = AsyncMock(side_effect=sync)
        client = make_client(tmp_path, nio_client)
        await client.login()

        await client.start()

        assert calls == ["InviteMemberEvent", "sync", "RoomMessage", "RoomMemberEvent"]
        nio_client.sync.assert_awaited_once_with(timeout=500, full_state=True)

    @pytest.mark.asyncio
    async def test_stale_session_triggers_relogin(self, tmp_path: Path) -> None:
        (tmp_path / "session.json").write_text(
            json.dumps({"user_id": BOT_ID, "device_id": "OLD", "access_token": "stale"}),
            encoding="utf-8",
        )
        nio_client = make_nio()
        nio_client.login.return_value = login_response("fresh")
        nio_client.sync = AsyncMock(side_effect=[
            MagicMock(spec=SyncError, message="M_UNKNOWN_TOKEN"),
            MagicMock(spec=SyncResponse),
        ])
        client = make_client(tmp_path, nio_client)
        await client.login()

        await client.start()

        nio_client.login.assert_awaited_once()
        assert nio_client.sync.await_count == 2
        saved = json.loads((tmp_path / "session.json").read_text(encoding="utf-8"))
        assert saved["access_token"] == "fresh"

    @pytest.mark.asyncio
    async def test_sync_failure_raises(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        nio_client.sync.return_value = MagicMock(spec=SyncError, message="down")
        client = make_client(tmp_path, nio_client)
        await client.login()

        with pytest.raises(BridgeError) as exc_info:
            await client.start()

        assert exc_info.value.code == "SYNC_FAILED"

    @pytest.mark.asyncio
    async def test_requires_login(self, tmp_path: Path) -> None:
        client = MatrixChatClient(
            "bot", "secret", "example.org", session_file=tmp_path / "session.json",
        )

        with pytest.raises(RuntimeError):
            await client.start()


# ── 回调 → 事件 ───────────────────────────────────────────────────────

class TestCallbacks:
    """测试 nio 回调转换为领域事件。"""

    @pytest.mark.asyncio
    async def test_invite_for_bot(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=InviteMemberEvent,
            state_key=BOT_ID,
            membership="invite",
            content={"is_direct": True},
            sender=ALICE,
        )

        await client._on_invite(matrix_room("!dm:example.org"), event)
        room = await settle(anext(client.invites()))

        assert room.room_id == "!dm:example.org"
        assert room.kind == RoomKind.DIRECT

    @pytest.mark.asyncio
    async def test_invite_for_someone_else_is_ignored(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=InviteMemberEvent,
            state_key=ALICE,
            membership="invite",
            content={},
            sender="@carol:example.org",
        )

        await client._on_invite(matrix_room("!pub:example.org"), event)

        assert client._invites.empty()

    @pytest.mark.asyncio
    async def test_text_message(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=RoomMessageText,
            sender=ALICE,
            body="hello",
            event_id="$1",
            source={"content": {"msgtype": "m.text", "body": "hello"}},
        )

        await client._on_message(matrix_room("!pub:example.org"), event)
        chat_event = await settle(anext(client.events()))

        assert chat_event.kind == EventKind.TEXT
        assert chat_event.body == "hello"
        assert chat_event.sender == ALICE

    @pytest.mark.asyncio
    async def test_edit_is_not_text(self, tmp_path: Path) -> None:
        """编辑事件不会被当作新的 Prompt。"""
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=RoomMessageText,
            sender=ALICE,
            body="* hello",
            event_id="$2",
            source={"content": {"m.relates_to": {"rel_type": "m.replace", "event_id": "$1"}}},
        )

        await client._on_message(matrix_room("!pub:example.org"), event)
        chat_event = await settle(anext(client.events()))

        assert chat_event.kind == EventKind.OTHER

    @pytest.mark.asyncio
    async def test_non_text_message(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(spec=RoomMessage, sender=ALICE, event_id="$3")

        await client._on_message(matrix_room("!pub:example.org"), event)
        chat_event = await settle(anext(client.events()))

        assert chat_event.kind == EventKind.OTHER
        assert chat_event.body == ""

    @pytest.mark.asyncio
    async def test_bot_kicked_becomes_leave(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=RoomMemberEvent,
            state_key=BOT_ID,
            membership="ban",
            sender="@mod:example.org",
            event_id="$4",
        )

        await client._on_member(matrix_room("!pub:example.org"), event)
        chat_event = await settle(anext(client.events()))

        assert chat_event.kind == EventKind.LEAVE
        assert chat_event.room_id == "!pub:example.org"

    @pytest.mark.asyncio
    async def test_other_member_leaving_is_ignored(self, tmp_path: Path) -> None:
        client = make_client(tmp_path, make_nio())
        event = MagicMock(
            spec=RoomMemberEvent,
            state_key=ALICE,
            membership="leave",
            sender=ALICE,
            event_id="$5",
        )

        await client._on_member(matrix_room("!pub:example.org"), event)

        assert client._events.empty()


# ── 房间操作 ──────────────────────────────────────────────────────────

class TestRoomOperations:
    """测试发送、编辑、加入与房间类型判断。"""

    @pytest.mark.asyncio
    async def test_publish(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        handle = await client.publish("!pub:example.org", "Hi")

        assert handle == MessageHandle(room_id="!pub:example.org", event_id="$sent")
        nio_client.room_send.assert_awaited_once_with(
            "!pub:example.org",
            message_type="m.room.message",
            content={"msgtype": "m.text", "body": "Hi"},
            ignore_unverified_devices=True,
        )

    @pytest.mark.asyncio
    async def test_edit_uses_replace_relation(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        await client.edit(MessageHandle(room_id="!pub:example.org", event_id="$orig"), "Hi there")

        content = nio_client.room_send.await_args.kwargs["content"]
        assert content["body"] == "* Hi there"
        assert content["m.new_content"] == {"msgtype": "m.text", "body": "Hi there"}
        assert content["m.relates_to"] == {"rel_type": "m.replace", "event_id": "$orig"}

    @pytest.mark.asyncio
    async def test_send_error_response_raises(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        nio_client.room_send.return_value = MagicMock(spec=RoomSendError, message="forbidden")
        client = make_client(tmp_path, nio_client)

        with pytest.raises(ChatPublishFailure):
            await client.publish("!pub:example.org", "Hi")

    @pytest.mark.asyncio
    async def test_send_exception_raises(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        nio_client.room_send.side_effect = OSError("network down")
        client = make_client(tmp_path, nio_client)

        with pytest.raises(ChatPublishFailure):
            await client.publish("!pub:example.org", "Hi")

    @pytest.mark.asyncio
    async def test_join(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        assert await client.join("!pub:example.org") is True

        nio_client.join.return_value = MagicMock(spec=JoinError, message="forbidden")
        assert await client.join("!priv:example.org") is False

    @pytest.mark.asyncio
    async def test_typing(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        client = make_client(tmp_path, nio_client)

        await client.set_typing("!pub:example.org", True)

        nio_client.room_typing.assert_awaited_once_with(
            "!pub:example.org", typing_state=True, timeout=10_000,
        )

    def test_room_kind_and_joined_rooms(self, tmp_path: Path) -> None:
        nio_client = make_nio()
        nio_client.rooms = {
            "!dm:example.org": MagicMock(member_count=2),
            "!pub:example.org": MagicMock(member_count=7),
        }
        client = make_client(tmp_path, nio_client)

        assert client.room_kind("!dm:example.org") == RoomKind.DIRECT
        assert client.room_kind("!pub:example.org") == RoomKind.GROUP
        assert client.room_kind("!unknown:example.org") == RoomKind.GROUP
        assert {room.room_id: room.kind for room in client.joined_rooms()} == {
            "!dm:example.org": RoomKind.DIRECT,
            "!pub:example.org": RoomKind.GROUP,
        }
