"""
tests.test_transport
~~~~~~~~~~~~~~~~~~~~

WebSocketTransport 单元测试 —— 使用 AsyncMock 代替真实 WebSocket。
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from pinchat.services.transport import WebSocketTransport, encode_frame


async def drain() -> None:
    """让写协程把队列中的消息发完。"""
    for _ in range(5):
        await asyncio.sleep(0)


def sent_frames(ws: AsyncMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


def test_encode_frame_keeps_unicode() -> None:
    frame = encode_frame("receive-message", {"message": "你好"})

    assert json.loads(frame) == {"event": "receive-message", "data": {"message": "你好"}}
    assert "你好" in frame


class TestWebSocketTransport:
    """测试连接管理、单播与频道广播。"""

    @pytest.mark.asyncio
    async def test_connect_accepts_and_assigns_id(self) -> None:
        transport = WebSocketTransport()
        ws = AsyncMock()

        ref = await transport.connect(ws)

        ws.accept.assert_awaited_once()
        assert ref
        assert transport.online_count == 1
        await transport.disconnect(ref)
        assert transport.online_count == 0

    @pytest.mark.asyncio
    async def test_send_is_delivered_in_order(self) -> None:
        transport = WebSocketTransport()
        ws = AsyncMock()
        ref = await transport.connect(ws)

        transport.send(ref, "join-success", {"username": "Alice"})
        transport.send(ref, "user-joined", {"username": "Bob"})
        await drain()

        assert [f["event"] for f in sent_frames(ws)] == ["join-success", "user-joined"]
        await transport.disconnect(ref)

    @pytest.mark.asyncio
    async def test_broadcast_respects_channel_and_exclude(self) -> None:
        transport = WebSocketTransport()
        ws_a, ws_b, ws_c = AsyncMock(), AsyncMock(), AsyncMock()
        a = await transport.connect(ws_a)
        b = await transport.connect(ws_b)
        c = await transport.connect(ws_c)
        transport.bind_channel(a, "4242")
        transport.bind_channel(b, "4242")
        transport.bind_channel(c, "9999")

        transport.broadcast("4242", "user-typing", {"username": "A"}, exclude=a)
        await drain()

        assert ws_a.send_text.await_count == 0
        assert sent_frames(ws_b) == [{"event": "user-typing", "data": {"username": "A"}}]
        assert ws_c.send_text.await_count == 0
        for ref in (a, b, c):
            await transport.disconnect(ref)

    @pytest.mark.asyncio
    async def test_unbind_removes_empty_channel(self) -> None:
        transport = WebSocketTransport()
        transport.bind_channel("x", "4242")

        transport.unbind_channel("x", "4242")
        transport.unbind_channel("x", "4242")

        assert transport.channels == {}

    @pytest.mark.asyncio
    async def test_send_to_unknown_connection_is_dropped(self) -> None:
        transport = WebSocketTransport()

        transport.send("ghost", "kicked", {"message": "bye"})
        transport.broadcast("nowhere", "room-closed", {"message": "bye"})

    @pytest.mark.asyncio
    async def test_failed_send_stops_writer(self) -> None:
        """发送失败后写协程退出并关闭 socket，后续事件不再入队，也不会抛给调用方。"""
        transport = WebSocketTransport()
        ws = AsyncMock()
        ws.send_text.side_effect = RuntimeError("socket closed")
        ref = await transport.connect(ws)
        transport.bind_channel(ref, "4242")

        transport.send(ref, "receive-message", {"message": "1"})
        await drain()
        assert ref not in transport._outboxes
        transport.send(ref, "receive-message", {"message": "2"})
        transport.broadcast("4242", "user-typing", {"username": "Bob"})
        await drain()

        assert ws.send_text.await_count == 1
        ws.close.assert_awaited_once()
        assert transport.online_count == 0
        await transport.disconnect(ref)
        assert transport.channels == {}

    @pytest.mark.asyncio
    async def test_failed_send_leaves_other_connections_alone(self) -> None:
        transport = WebSocketTransport()
        broken, healthy = AsyncMock(), AsyncMock()
        broken.send_text.side_effect = RuntimeError("socket closed")
        broken.close.side_effect = RuntimeError("already closed")
        a = await transport.connect(broken)
        b = await transport.connect(healthy)
        transport.bind_channel(a, "4242")
        transport.bind_channel(b, "4242")

        transport.broadcast("4242", "receive-message", {"message": "1"})
        await drain()
        transport.broadcast("4242", "receive-message", {"message": "2"})
        await drain()

        assert broken.send_text.await_count == 1
        assert [f["data"]["message"] for f in sent_frames(healthy)] == ["1", "2"]
        assert transport.online_count == 1
        for ref in (a, b):
            await transport.disconnect(ref)

    @pytest.mark.asyncio
    async def test_disconnect_clears_channels(self) -> None:
        transport = WebSocketTransport()
        ref = await transport.connect(AsyncMock())
        transport.bind_channel(ref, "4242")

        await transport.disconnect(ref)
        await transport.disconnect(ref)

        assert transport.channels == {}
        transport.send(ref, "kicked", {"message": "late"})
