"""
pinchat.services.transport
~~~~~~~~~~~~~~~~~~~~~~~~~~

传输层 —— 把协调器给出的事件投递到具体的 WebSocket 连接。

协调器只依赖 ``Transport`` 协议中的四个同步方法；真正的网络发送是异步的，
由 ``WebSocketTransport`` 为每个连接维护一个发件队列和一个写协程来完成。
投递是尽力而为的：目标连接已经断开时事件直接丢弃，不会向协调器抛出异常。
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from fastapi import WebSocket

from pinchat.core.logging import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """协调器使用的传输层接口。"""

    def send(self, connection_ref: str, event: str, payload: dict[str, Any]) -> None:
        """单播给指定连接。"""
        ...

    def broadcast(
        self,
        pin: str,
        event: str,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        """广播给已绑定到房间频道的所有连接，可排除一个连接。"""
        ...

    def bind_channel(self, connection_ref: str, pin: str) -> None:
        ...

    def unbind_channel(self, connection_ref: str, pin: str) -> None:
        ...


def encode_frame(event: str, payload: dict[str, Any]) -> str:
    """编码一帧出站消息。"""
    return json.dumps({"event": event, "data": payload}, ensure_ascii=False)


@dataclass
class _Outbox:
    """单个连接的发件箱。"""

    websocket: WebSocket
    queue: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    writer: asyncio.Task[None] | None = None


class WebSocketTransport:
    """基于 FastAPI WebSocket 的传输层实现。

    - ``connect`` / ``disconnect`` 由 WebSocket 端点调用，管理连接生命周期；
    - ``send`` / ``broadcast`` / ``bind_channel`` / ``unbind_channel`` 由协调器调用，全部是非阻塞的。

    Attributes:
        channels: 房间 PIN → 已绑定的连接 ID 集合。
    """

    def __init__(self) -> None:
        self._outboxes: dict[str, _Outbox] = {}
        self.channels: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # 连接生命周期
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> str:
        """接受新连接，启动写协程，返回分配的连接 ID。"""
        await websocket.accept()
        connection_ref = uuid.uuid4().hex[:12]
        outbox = _Outbox(websocket=websocket)
        outbox.writer = asyncio.create_task(self._write_loop(connection_ref, outbox))
        self._outboxes[connection_ref] = outbox
        logger.info("连接已建立 | conn=%s | 在线: %d", connection_ref, self.online_count)
        return connection_ref

    async def disconnect(self, connection_ref: str) -> None:
        """移除连接并停止其写协程。重复调用是安全的。"""
        outbox = self._outboxes.pop(connection_ref, None)
        for members in self.channels.values():
            members.discard(connection_ref)
        self.channels = {pin: refs for pin, refs in self.channels.items() if refs}
        if outbox is None or outbox.writer is None:
            return

        outbox.writer.cancel()
        try:
            await outbox.writer
        except asyncio.CancelledError:
            pass
        logger.info("连接已断开 | conn=%s | 在线: %d", connection_ref, self.online_count)

    @property
    def online_count(self) -> int:
        """当前连接数。"""
        return len(self._outboxes)

    # ------------------------------------------------------------------
    # Transport 协议
    # ------------------------------------------------------------------

    def send(self, connection_ref: str, event: str, payload: dict[str, Any]) -> None:
        outbox = self._outboxes.get(connection_ref)
        if outbox is None:
            logger.debug("目标连接不存在，丢弃事件 | conn=%s | event=%s", connection_ref, event)
            return
        outbox.queue.put_nowait(encode_frame(event, payload))

    def broadcast(
        self,
        pin: str,
        event: str,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        frame = encode_frame(event, payload)
        for connection_ref in sorted(self.channels.get(pin, ())):
            if connection_ref == exclude:
                continue
            outbox = self._outboxes.get(connection_ref)
            if outbox is not None:
                outbox.queue.put_nowait(frame)

    def bind_channel(self, connection_ref: str, pin: str) -> None:
        self.channels.setdefault(pin, set()).add(connection_ref)

    def unbind_channel(self, connection_ref: str, pin: str) -> None:
        members = self.channels.get(pin)
        if members is None:
            return
        members.discard(connection_ref)
        if not members:
            del self.channels[pin]

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    async def _write_loop(self, connection_ref: str, outbox: _Outbox) -> None:
        """逐条发送发件箱中的消息。

        发送失败说明连接已断开：移除发件箱使后续事件不再入队，并主动关闭 socket，
        让端点的接收循环退出并走断开流程。
        """
        while True:
            frame = await outbox.queue.get()
            try:
                await outbox.websocket.send_text(frame)
            except Exception as e:
                logger.warning("发送失败，停止向该连接写入 | conn=%s | %s", connection_ref, e)
                break

        if self._outboxes.get(connection_ref) is outbox:
            del self._outboxes[connection_ref]
        try:
            await outbox.websocket.close()
        except Exception as e:
            logger.debug("关闭连接失败 | conn=%s | %s", connection_ref, e)
