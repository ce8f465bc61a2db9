"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 记录型假传输层、独立的注册表/协调器实例，以及端到端测试用的 TestClient。
"""
from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("WS_RATE_LIMIT_INTERVAL", "0")  # 端到端测试不受聊天限流影响

from fastapi.testclient import TestClient  # noqa: E402

from pinchat.main import app  # noqa: E402
from pinchat.services.coordinator import SessionCoordinator  # noqa: E402
from pinchat.services.registry import RoomMode, RoomRegistry  # noqa: E402

FIXED_NOW: datetime = datetime(2024, 5, 1, 9, 5, 30)


class RecordingTransport:
    """记录所有投递结果的假传输层。

    ``broadcast`` 按当前频道成员展开成逐个连接的投递记录，方便断言"谁收到了什么"。
    """

    def __init__(self) -> None:
        self.channels: dict[str, set[str]] = {}
        self.inbox: dict[str, list[tuple[str, dict[str, Any]]]] = {}

    def send(self, connection_ref: str, event: str, payload: dict[str, Any]) -> None:
        self.inbox.setdefault(connection_ref, []).append((event, payload))

    def broadcast(
        self,
        pin: str,
        event: str,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        for connection_ref in sorted(self.channels.get(pin, ())):
            if connection_ref != exclude:
                self.send(connection_ref, event, payload)

    def bind_channel(self, connection_ref: str, pin: str) -> None:
        self.channels.setdefault(pin, set()).add(connection_ref)

    def unbind_channel(self, connection_ref: str, pin: str) -> None:
        self.channels.get(pin, set()).discard(connection_ref)

    # ── 断言辅助 ──

    def events(self, connection_ref: str) -> list[str]:
        return [event for event, _ in self.inbox.get(connection_ref, [])]

    def last(self, connection_ref: str) -> tuple[str, dict[str, Any]]:
        return self.inbox[connection_ref][-1]

    def clear(self) -> None:
        self.inbox.clear()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def registry() -> RoomRegistry:
    return RoomRegistry(mode=RoomMode.OWNER)


@pytest.fixture()
def pair_registry() -> RoomRegistry:
    return RoomRegistry(mode=RoomMode.PAIR, pair_capacity=2)


@pytest.fixture()
def coordinator(registry: RoomRegistry, transport: RecordingTransport) -> SessionCoordinator:
    """owner 模式的协调器，时钟固定为 09:05。"""
    return SessionCoordinator(registry, transport, clock=lambda: FIXED_NOW)


@pytest.fixture()
def pair_coordinator(pair_registry: RoomRegistry, transport: RecordingTransport) -> SessionCoordinator:
    """pair 模式的协调器。"""
    return SessionCoordinator(pair_registry, transport, clock=lambda: FIXED_NOW)


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """运行完整 lifespan 的 TestClient，每个测试拿到全新的注册表。"""
    with TestClient(app) as test_client:
        yield test_client
