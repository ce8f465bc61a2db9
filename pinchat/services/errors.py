"""
pinchat.services.errors
~~~~~~~~~~~~~~~~~~~~~~~

房间相关的业务异常。

加入类异常（``InvalidInput`` / ``PinAlreadyInUse`` / ``RoomNotFound`` /
``NameTaken`` / ``RoomFull``）会以 ``join-error`` 的形式回给请求方；
权限类异常（``NotAuthorized`` / ``TargetNotFound`` / ``CannotRemoveOwner``）
只记录日志，不通知任何人。
"""
from __future__ import annotations


class RoomError(Exception):
    """所有房间业务异常的基类。

    Attributes:
        message: 可以直接展示给客户端的提示文字。
    """

    default_message: str = "Room operation failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(RoomError):
    default_message = "Username and PIN are required."


class PinAlreadyInUse(RoomError):
    default_message = "This PIN is already in use. Pick another PIN."


class RoomNotFound(RoomError):
    default_message = "No room exists with this PIN."


class NameTaken(RoomError):
    default_message = "This name is already in the room. Pick another name."


class RoomFull(RoomError):
    default_message = "This room is already full."


class NotAuthorized(RoomError):
    default_message = "Only the room owner can remove members."


class TargetNotFound(RoomError):
    default_message = "No such member in this room."


class CannotRemoveOwner(RoomError):
    default_message = "The room owner cannot be removed."
