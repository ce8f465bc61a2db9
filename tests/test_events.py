"""
tests.test_events
~~~~~~~~~~~~~~~~~

事件载荷模型测试：入站字段归一化与出站 camelCase 序列化。
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from pinchat.schemas.events import (
    EventFrame,
    JoinRoomRequest,
    KickUserRequest,
    MemberInfo,
    UserLeft,
)
from pinchat.services.registry import Role


class TestJoinRoomRequest:
    """测试 join-room 载荷的归一化。"""

    def test_strips_and_coerces(self) -> None:
        request = JoinRoomRequest.model_validate({"username": "  Alice ", "pin": 4242})

        assert request.username == "Alice"
        assert request.pin == "4242"
        assert request.role is None

    def test_missing_values_become_empty(self) -> None:
        request = JoinRoomRequest.model_validate({"username": None})

        assert request.username == ""
        assert request.pin == ""

    @pytest.mark.parametrize(("raw", "expected"), [
        ("owner", Role.OWNER),
        ("Member", Role.MEMBER),
        ("admin", Role.OWNER),
        ("", None),
    ])
    def test_role_normalized(self, raw: str, expected: Role | None) -> None:
        request = JoinRoomRequest.model_validate({"username": "a", "pin": "1", "role": raw})

        assert request.role == expected

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            JoinRoomRequest.model_validate({"username": "a", "pin": "1", "role": "superuser"})

    def test_boolean_pin_rejected(self) -> None:
        with pytest.raises(ValidationError):
            JoinRoomRequest.model_validate({"username": "a", "pin": True})


class TestWireFormat:
    """测试出站载荷的线上格式。"""

    def test_aliases_and_none_fields_dropped(self) -> None:
        payload = UserLeft(
            username="Bob",
            users=[MemberInfo(username="Alice", role=Role.OWNER), MemberInfo(username="Carol")],
            users_in_room=2,
        )

        assert payload.to_wire() == {
            "username": "Bob",
            "users": [{"username": "Alice", "role": "owner"}, {"username": "Carol"}],
            "usersInRoom": 2,
        }

    def test_kick_request_alias(self) -> None:
        assert KickUserRequest.model_validate({"targetUsername": "Bob"}).target_username == "Bob"

    def test_frame_data_defaults_to_empty(self) -> None:
        frame = EventFrame.model_validate({"event": "typing", "data": None})

        assert frame.data == {}

    def test_frame_requires_event(self) -> None:
        with pytest.raises(ValidationError):
            EventFrame.model_validate({"data": {}})
