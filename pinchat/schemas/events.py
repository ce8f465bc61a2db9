"""
pinchat.schemas.events
~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件名与载荷的 Pydantic 模型。

线上格式统一为 ``{"event": <事件名>, "data": {...}}``，字段名使用 camelCase。
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pinchat.services.registry import Role


class ClientEvent(str, Enum):
    """客户端 → 服务端事件。"""

    JOIN_ROOM = "join-room"
    SEND_MESSAGE = "send-message"
    TYPING = "typing"
    STOP_TYPING = "stop-typing"
    KICK_USER = "kick-user"


class ServerEvent(str, Enum):
    """服务端 → 客户端事件。"""

    JOIN_SUCCESS = "join-success"
    JOIN_ERROR = "join-error"
    RECEIVE_MESSAGE = "receive-message"
    USER_TYPING = "user-typing"
    USER_STOP_TYPING = "user-stop-typing"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    KICKED = "kicked"
    ROOM_CLOSED = "room-closed"


class EventFrame(BaseModel):
    """一帧 WebSocket 消息。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: dict[str, Any] = Field(default_factory=dict, description="事件载荷")

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value


# ── 入站载荷 ──────────────────────────────────────────────────────────

class JoinRoomRequest(BaseModel):
    """``join-room`` 载荷。缺失的字段按空字符串处理，由协调器给出统一的错误提示。"""

    username: str = Field(default="", description="昵称")
    pin: str = Field(default="", description="房间 PIN")
    role: Role | None = Field(default=None, description="加入身份：owner / member")

    @field_validator("username", "pin", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        # PIN 允许以 JSON 数字传入
        if value is None:
            return ""
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("username", "pin")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, str) and value.strip().lower() == "admin":
            return Role.OWNER
        if isinstance(value, str):
            return value.strip().lower()
        return value


class SendMessageRequest(BaseModel):
    """``send-message`` 载荷。"""

    message: str | None = Field(default=None, description="消息正文")


class KickUserRequest(BaseModel):
    """``kick-user`` 载荷。"""

    model_config = ConfigDict(populate_by_name=True)

    target_username: str = Field(default="", alias="targetUsername", description="被移出的成员昵称")


# ── 出站载荷 ──────────────────────────────────────────────────────────

class OutboundPayload(BaseModel):
    """出站载荷基类：按别名输出并省略空字段。"""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MemberInfo(OutboundPayload):
    """成员快照中的一项。pair 模式下不带 role。"""

    username: str
    role: Role | None = None


class MembershipPayload(OutboundPayload):
    """携带完整成员快照的载荷公共字段。"""

    username: str
    users: list[MemberInfo] = Field(default_factory=list)
    users_in_room: int = Field(default=0, alias="usersInRoom")


class JoinSuccess(MembershipPayload):
    role: Role | None = None


class UserJoined(MembershipPayload):
    role: Role | None = None


class UserLeft(MembershipPayload):
    kicked: bool | None = None


class JoinError(OutboundPayload):
    message: str


class ReceiveMessage(OutboundPayload):
    sender: str
    role: Role | None = None
    message: str
    time: str


class TypingState(OutboundPayload):
    """``user-typing`` / ``user-stop-typing`` 载荷。"""

    username: str


class Notice(OutboundPayload):
    """``kicked`` / ``room-closed`` 等只带提示文字的载荷。"""

    message: str
