"""
pinchat.services.registry
~~~~~~~~~~~~~~~~~~~~~~~~~

房间注册表 —— 进程内唯一的房间与成员状态来源。

``RoomRegistry`` 以 PIN 为键保存所有活跃房间，每个房间持有按加入顺序排列的成员列表。
注册表不感知传输层，只负责状态与不变量：

- 同一房间内昵称大小写不敏感唯一；
- 成员数为 0 的房间立即删除；
- owner 模式下每个房间有且只有一个房主，房主身份不可转移；
- pair 模式下房间人数不超过容量上限。

所有变更操作都返回变更后的成员快照，调用方不需要自己重新计算状态。
注册表持有一把可重入锁 ``lock``，协调器在整个业务操作期间持有它，保证同一时刻只有一个变更在进行。
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from pinchat.core.logging import get_logger
from pinchat.services.errors import (
    CannotRemoveOwner,
    NameTaken,
    NotAuthorized,
    PinAlreadyInUse,
    RoomFull,
    RoomNotFound,
    TargetNotFound,
)

logger = get_logger(__name__)


class Role(str, Enum):
    """房间内的成员角色。"""

    OWNER = "owner"
    MEMBER = "member"


class RoomMode(str, Enum):
    """房间模式。

    - ``OWNER``: 房主创建房间，成员凭 PIN 加入，房主离开则解散房间。
    - ``PAIR``: 两人房间，第一个加入者创建房间，没有房主。
    """

    OWNER = "owner"
    PAIR = "pair"


@dataclass(frozen=True)
class Member:
    """房间成员。

    Attributes:
        connection_ref: 传输层连接的不透明标识。
        display_name: 昵称（已去除首尾空白）。
        role: 成员角色。
    """

    connection_ref: str
    display_name: str
    role: Role

    @property
    def name_key(self) -> str:
        """用于唯一性比较的昵称（大小写不敏感）。"""
        return self.display_name.casefold()


Snapshot = tuple[Member, ...]


@dataclass
class Room:
    """一个以 PIN 标识的聊天房间。

    Attributes:
        pin: 房间 PIN，由客户端提供。
        owner: 房主昵称，pair 模式下为 ``None``。
        capacity: 人数上限，``None`` 表示不限。
        members: 按加入顺序排列的成员列表。
    """

    pin: str
    owner: str | None = None
    capacity: int | None = None
    members: list[Member] = field(default_factory=list)

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and len(self.members) >= self.capacity

    def snapshot(self) -> Snapshot:
        """当前成员列表的只读快照。"""
        return tuple(self.members)

    def find_by_ref(self, connection_ref: str) -> Member | None:
        for member in self.members:
            if member.connection_ref == connection_ref:
                return member
        return None

    def find_by_name(self, name: str) -> Member | None:
        key = name.strip().casefold()
        for member in self.members:
            if member.name_key == key:
                return member
        return None


class MembershipChange(NamedTuple):
    """``remove_member`` 的结果。"""

    removed: Member
    remaining: Snapshot
    was_owner: bool


class Removal(NamedTuple):
    """``remove_member_by_name`` 的结果。"""

    removed: Member
    remaining: Snapshot


class RoomRegistry:
    """进程内房间注册表。

    每个进程构造一个实例，注入给 ``SessionCoordinator``；测试中可以随意创建独立实例。

    Attributes:
        mode: 房间模式。
        lock: 保护所有房间状态的可重入锁。
    """

    def __init__(self, mode: RoomMode = RoomMode.OWNER, pair_capacity: int = 2) -> None:
        self.mode = RoomMode(mode)
        self._capacity: int | None = pair_capacity if self.mode is RoomMode.PAIR else None
        self._rooms: dict[str, Room] = {}
        self.lock = threading.RLock()

    def __contains__(self, pin: object) -> bool:
        return pin in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    @property
    def capacity(self) -> int | None:
        return self._capacity

    @property
    def member_count(self) -> int:
        """所有房间的成员总数。"""
        with self.lock:
            return sum(len(room.members) for room in self._rooms.values())

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def lookup_room(self, pin: str) -> Room:
        """按 PIN 查找房间。

        Raises:
            RoomNotFound: PIN 未注册。
        """
        room = self._rooms.get(pin)
        if room is None:
            raise RoomNotFound()
        return room

    # ------------------------------------------------------------------
    # 变更
    # ------------------------------------------------------------------

    def create_room(self, pin: str, owner_name: str, connection_ref: str) -> Room:
        """创建房间，创建者作为第一个成员加入。

        owner 模式下创建者为房主；pair 模式下创建者是普通成员，房间没有房主。

        Raises:
            PinAlreadyInUse: PIN 已被占用。
        """
        with self.lock:
            if pin in self._rooms:
                raise PinAlreadyInUse()

            if self.mode is RoomMode.OWNER:
                role, owner = Role.OWNER, owner_name
            else:
                role, owner = Role.MEMBER, None

            room = Room(pin=pin, owner=owner, capacity=self._capacity)
            room.members.append(Member(connection_ref, owner_name, role))
            self._rooms[pin] = room
            logger.info("房间已创建 | pin=%s | creator=%s | mode=%s", pin, owner_name, self.mode.value)
            return room

    def add_member(self, pin: str, name: str, role: Role, connection_ref: str) -> Snapshot:
        """向已存在的房间追加成员，返回新的成员快照。

        Raises:
            RoomNotFound: PIN 未注册。
            RoomFull: 房间人数已达上限（仅 pair 模式）。
            NameTaken: 昵称与现有成员冲突（大小写不敏感）。
            PinAlreadyInUse: 试图以房主身份加入已有房主的房间。
        """
        with self.lock:
            room = self.lookup_room(pin)
            if room.is_full:
                raise RoomFull(f"This room is already full ({len(room.members)}/{room.capacity} users).")
            if room.find_by_name(name) is not None:
                raise NameTaken(f'"{name}" is already in this room. Pick another name.')
            if role is Role.OWNER:
                raise PinAlreadyInUse()

            room.members.append(Member(connection_ref, name, role))
            return room.snapshot()

    def remove_member(self, pin: str, connection_ref: str) -> MembershipChange:
        """移除绑定在 ``connection_ref`` 上的成员。

        被移除者是房主时返回 ``was_owner=True``，由调用方决定是否解散房间，此时房间保留；
        否则若房间变空则直接删除。

        Raises:
            RoomNotFound: PIN 未注册。
            TargetNotFound: 该连接不在此房间中。
        """
        with self.lock:
            room = self.lookup_room(pin)
            member = room.find_by_ref(connection_ref)
            if member is None:
                raise TargetNotFound()

            room.members.remove(member)
            was_owner = member.role is Role.OWNER
            if not was_owner and not room.members:
                self._delete(pin, reason="empty")
            return MembershipChange(member, room.snapshot(), was_owner)

    def remove_member_by_name(self, pin: str, target_name: str, requester_ref: str) -> Removal:
        """房主按昵称移出成员。

        Raises:
            RoomNotFound: PIN 未注册。
            NotAuthorized: 请求方不是该房间的房主。
            TargetNotFound: 房间内没有该昵称的成员。
            CannotRemoveOwner: 目标是房主本人。
        """
        with self.lock:
            room = self.lookup_room(pin)
            requester = room.find_by_ref(requester_ref)
            if requester is None or requester.role is not Role.OWNER:
                raise NotAuthorized()

            target = room.find_by_name(target_name)
            if target is None:
                raise TargetNotFound()
            if target.role is Role.OWNER:
                raise CannotRemoveOwner()

            room.members.remove(target)
            return Removal(target, room.snapshot())

    def dissolve_room(self, pin: str) -> Snapshot:
        """强制清空并删除房间，返回解散前的成员列表。

        Raises:
            RoomNotFound: PIN 未注册。
        """
        with self.lock:
            room = self.lookup_room(pin)
            members = room.snapshot()
            room.members.clear()
            self._delete(pin, reason="dissolved")
            return members

    def _delete(self, pin: str, reason: str) -> None:
        del self._rooms[pin]
        logger.info("房间已删除 | pin=%s | reason=%s", pin, reason)
