"""
pinchat.services.coordinator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接会话协调器 —— 把客户端意图翻译成注册表变更和广播指令。

每个连接只有两种状态：未绑定（不在 ``_sessions`` 中）和已绑定到某个房间。
连接不能直接从一个房间切到另一个房间，必须先断开或被移出。

广播对象一律由注册表本次操作返回的快照决定，协调器不在操作之间缓存成员列表。
每个操作在注册表锁内完整执行（包括事件入队），所以同一房间的事件顺序与变更顺序一致。

事件流向:
  - ``join-room``    → 请求方收到 ``join-success``，其他成员收到 ``user-joined``
  - ``send-message`` → 全房间（含发送者）收到 ``receive-message``
  - ``typing``       → 除发送者外收到 ``user-typing`` / ``user-stop-typing``
  - ``kick-user``    → 被移出者收到 ``kicked``，剩余成员收到 ``user-left``
  - 断开连接          → 成员离开广播 ``user-left``；房主离开则全员收到 ``room-closed`` 并被解绑
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from pinchat.core.logging import get_logger
from pinchat.schemas.events import (
    ClientEvent,
    JoinError,
    JoinRoomRequest,
    JoinSuccess,
    KickUserRequest,
    MemberInfo,
    Notice,
    OutboundPayload,
    ReceiveMessage,
    SendMessageRequest,
    ServerEvent,
    TypingState,
    UserJoined,
    UserLeft,
)
from pinchat.services.errors import InvalidInput, RoomError
from pinchat.services.registry import Role, RoomMode, RoomRegistry, Snapshot
from pinchat.services.transport import Transport

logger = get_logger(__name__)

KICKED_MESSAGE: str = "You have been removed from the room by the owner."
ROOM_CLOSED_MESSAGE: str = "The room owner has left. This room is now closed."


@dataclass
class ConnectionSession:
    """一个已绑定连接的会话信息。

    Attributes:
        connection_ref: 传输层连接标识。
        pin: 所在房间 PIN。
        role: 房间内角色。
        display_name: 昵称。
        typing: 是否正在输入。
    """

    connection_ref: str
    pin: str
    role: Role
    display_name: str
    typing: bool = False


class SessionCoordinator:
    """连接会话协调器。

    Attributes:
        registry: 房间注册表（唯一状态来源）。
        transport: 事件投递通道。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        transport: Transport,
        max_name_length: int = 20,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.max_name_length = max_name_length
        self._clock = clock
        self._sessions: dict[str, ConnectionSession] = {}

    @property
    def mode(self) -> RoomMode:
        return self.registry.mode

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def session(self, connection_ref: str) -> ConnectionSession | None:
        """返回连接当前的会话；未绑定时为 ``None``。"""
        return self._sessions.get(connection_ref)

    # ------------------------------------------------------------------
    # 入站事件分发
    # ------------------------------------------------------------------

    def handle_event(self, connection_ref: str, event: str, data: dict[str, Any]) -> None:
        """按事件名分发一条客户端消息。未知事件和格式错误的载荷会被忽略。"""
        try:
            client_event = ClientEvent(event)
        except ValueError:
            logger.debug("忽略未知事件 | event=%s", event)
            return

        if client_event is ClientEvent.JOIN_ROOM:
            try:
                request = JoinRoomRequest.model_validate(data)
            except ValidationError:
                self._reject_join(connection_ref, InvalidInput("Invalid join request."))
                return
            self.join(connection_ref, request.username, request.pin, request.role)
        elif client_event is ClientEvent.SEND_MESSAGE:
            try:
                message = SendMessageRequest.model_validate(data).message
            except ValidationError:
                logger.debug("忽略格式错误的消息")
                return
            self.send_message(connection_ref, message)
        elif client_event is ClientEvent.TYPING:
            self.set_typing(connection_ref, True)
        elif client_event is ClientEvent.STOP_TYPING:
            self.set_typing(connection_ref, False)
        elif client_event is ClientEvent.KICK_USER:
            try:
                target = KickUserRequest.model_validate(data).target_username
            except ValidationError:
                logger.debug("忽略格式错误的移出请求")
                return
            self.kick(connection_ref, target)

    # ------------------------------------------------------------------
    # 加入
    # ------------------------------------------------------------------

    def join(self, connection_ref: str, username: str, pin: str, role: Role | None = None) -> None:
        """处理加入请求。失败时只向请求方回复 ``join-error``，连接保持未绑定。"""
        with self.registry.lock:
            try:
                session, snapshot = self._admit(connection_ref, username, pin, role)
            except RoomError as e:
                self._reject_join(connection_ref, e)
                return

            self._sessions[connection_ref] = session
            self.transport.bind_channel(connection_ref, session.pin)

            users = self._member_infos(snapshot)
            self._send(
                connection_ref,
                ServerEvent.JOIN_SUCCESS,
                JoinSuccess(
                    username=session.display_name,
                    role=self._wire_role(session.role),
                    users=users,
                    users_in_room=len(snapshot),
                ),
            )
            if len(snapshot) > 1:
                self._broadcast(
                    session.pin,
                    ServerEvent.USER_JOINED,
                    UserJoined(
                        username=session.display_name,
                        role=self._wire_role(session.role),
                        users=users,
                        users_in_room=len(snapshot),
                    ),
                    exclude=connection_ref,
                )
            logger.info(
                "用户加入房间 | pin=%s | user=%s | role=%s | 在线: %d",
                session.pin, session.display_name, session.role.value, len(snapshot),
            )

    def _admit(
        self, connection_ref: str, username: str, pin: str, role: Role | None,
    ) -> tuple[ConnectionSession, Snapshot]:
        """校验加入请求并写入注册表，返回新会话和成员快照。"""
        if connection_ref in self._sessions:
            raise InvalidInput("You are already in a room.")

        name = (username or "").strip()
        pin = (pin or "").strip()
        if not name or not pin:
            raise InvalidInput()
        if len(name) > self.max_name_length:
            raise InvalidInput(f"Username must be 1-{self.max_name_length} characters.")

        if self.mode is RoomMode.OWNER:
            if role is Role.OWNER:
                room = self.registry.create_room(pin, name, connection_ref)
                snapshot = room.snapshot()
            else:
                role = Role.MEMBER
                snapshot = self.registry.add_member(pin, name, Role.MEMBER, connection_ref)
        else:
            role = Role.MEMBER
            if pin in self.registry:
                snapshot = self.registry.add_member(pin, name, Role.MEMBER, connection_ref)
            else:
                snapshot = self.registry.create_room(pin, name, connection_ref).snapshot()

        return ConnectionSession(connection_ref, pin, role, name), snapshot

    def _reject_join(self, connection_ref: str, error: RoomError) -> None:
        logger.info("加入失败 | reason=%s | %s", type(error).__name__, error.message)
        self._send(connection_ref, ServerEvent.JOIN_ERROR, JoinError(message=error.message))

    # ------------------------------------------------------------------
    # 聊天与输入状态
    # ------------------------------------------------------------------

    def send_message(self, connection_ref: str, message: str | None) -> None:
        """向全房间（包括发送者本人）转发一条消息。空消息静默丢弃。"""
        with self.registry.lock:
            session = self._sessions.get(connection_ref)
            if session is None:
                logger.debug("未加入房间，丢弃消息")
                return
            if not isinstance(message, str) or not message.strip():
                logger.debug("丢弃空消息 | pin=%s", session.pin)
                return

            # 发消息即结束输入，其他成员先收到 user-stop-typing
            self.set_typing(connection_ref, False)
            self._broadcast(
                session.pin,
                ServerEvent.RECEIVE_MESSAGE,
                ReceiveMessage(
                    sender=session.display_name,
                    role=self._wire_role(session.role),
                    message=message,
                    time=self._clock().strftime("%H:%M"),
                ),
            )
            logger.debug("消息已转发 | pin=%s | sender=%s", session.pin, session.display_name)

    def set_typing(self, connection_ref: str, typing: bool) -> None:
        """更新输入状态。状态未变化时不广播。"""
        with self.registry.lock:
            session = self._sessions.get(connection_ref)
            if session is None or session.typing == typing:
                return

            session.typing = typing
            event = ServerEvent.USER_TYPING if typing else ServerEvent.USER_STOP_TYPING
            self._broadcast(
                session.pin,
                event,
                TypingState(username=session.display_name),
                exclude=connection_ref,
            )

    # ------------------------------------------------------------------
    # 房主移出成员
    # ------------------------------------------------------------------

    def kick(self, connection_ref: str, target_username: str) -> None:
        """房主按昵称移出成员。任何校验失败都静默丢弃，不通知请求方。"""
        with self.registry.lock:
            session = self._sessions.get(connection_ref)
            if session is None:
                logger.debug("未加入房间，丢弃移出请求")
                return
            if session.role is Role.MEMBER:
                logger.debug("非房主的移出请求已丢弃 | pin=%s | user=%s", session.pin, session.display_name)
                return

            try:
                removal = self.registry.remove_member_by_name(session.pin, target_username, connection_ref)
            except RoomError as e:
                logger.debug("移出请求已丢弃 | pin=%s | target=%s | reason=%s",
                             session.pin, target_username, type(e).__name__)
                return

            removed = removal.removed
            self._send(removed.connection_ref, ServerEvent.KICKED, Notice(message=KICKED_MESSAGE))
            self._unbind(removed.connection_ref)

            self._broadcast(
                session.pin,
                ServerEvent.USER_LEFT,
                UserLeft(
                    username=removed.display_name,
                    kicked=True,
                    users=self._member_infos(removal.remaining),
                    users_in_room=len(removal.remaining),
                ),
            )
            logger.info(
                "成员被移出 | pin=%s | owner=%s | target=%s | 在线: %d",
                session.pin, session.display_name, removed.display_name, len(removal.remaining),
            )

    # ------------------------------------------------------------------
    # 断开连接
    # ------------------------------------------------------------------

    def disconnect(self, connection_ref: str) -> None:
        """处理连接终止。未绑定的连接直接忽略；房主断开会解散整个房间。"""
        with self.registry.lock:
            session = self._unbind(connection_ref)
            if session is None:
                return

            try:
                change = self.registry.remove_member(session.pin, connection_ref)
            except RoomError as e:
                logger.warning("断开时成员已不在房间 | pin=%s | reason=%s", session.pin, type(e).__name__)
                return

            if change.was_owner:
                self._close_room(session)
            elif change.remaining:
                self._broadcast(
                    session.pin,
                    ServerEvent.USER_LEFT,
                    UserLeft(
                        username=session.display_name,
                        users=self._member_infos(change.remaining),
                        users_in_room=len(change.remaining),
                    ),
                )
                logger.info(
                    "用户离开房间 | pin=%s | user=%s | 在线: %d",
                    session.pin, session.display_name, len(change.remaining),
                )
            else:
                logger.info("最后一名用户离开 | pin=%s | user=%s", session.pin, session.display_name)

    def _close_room(self, owner: ConnectionSession) -> None:
        """房主离开：解散房间，通知并解绑其余所有成员。"""
        members = self.registry.dissolve_room(owner.pin)
        notice = Notice(message=ROOM_CLOSED_MESSAGE)
        for member in members:
            self._send(member.connection_ref, ServerEvent.ROOM_CLOSED, notice)
            self._unbind(member.connection_ref)
        logger.info("房主离开，房间已解散 | pin=%s | owner=%s | 受影响成员: %d",
                    owner.pin, owner.display_name, len(members))

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _unbind(self, connection_ref: str) -> ConnectionSession | None:
        session = self._sessions.pop(connection_ref, None)
        if session is not None:
            self.transport.unbind_channel(connection_ref, session.pin)
        return session

    def _wire_role(self, role: Role) -> Role | None:
        # pair 模式的载荷不带 role
        return role if self.mode is RoomMode.OWNER else None

    def _member_infos(self, snapshot: Snapshot) -> list[MemberInfo]:
        return [
            MemberInfo(username=member.display_name, role=self._wire_role(member.role))
            for member in snapshot
        ]

    def _send(self, connection_ref: str, event: ServerEvent, payload: OutboundPayload) -> None:
        self.transport.send(connection_ref, event.value, payload.to_wire())

    def _broadcast(
        self,
        pin: str,
        event: ServerEvent,
        payload: OutboundPayload,
        exclude: str | None = None,
    ) -> None:
        self.transport.broadcast(pin, event.value, payload.to_wire(), exclude=exclude)
