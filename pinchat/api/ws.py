"""
pinchat.api.ws
~~~~~~~~~~~~~~

WebSocket 聊天端点。

客户端通过 ``/ws`` 建立连接后，以 JSON 帧 ``{"event": ..., "data": {...}}`` 发送意图，
端点负责解码并交给 ``SessionCoordinator``；连接关闭时（无论原因）都会走协调器的断开流程。

入站事件:
  - ``join-room``    ``{username, pin, role?}``
  - ``send-message`` ``{message}``
  - ``typing`` / ``stop-typing``
  - ``kick-user``    ``{targetUsername}``（仅房主）
"""
from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from pinchat.core.config import settings
from pinchat.core.logging import connection_id_ctx_var, get_logger
from pinchat.core.rate_limit import WebSocketRateLimiter
from pinchat.schemas.events import ClientEvent, EventFrame
from pinchat.services.coordinator import SessionCoordinator
from pinchat.services.transport import WebSocketTransport

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def decode_frame(raw: str) -> EventFrame | None:
    """解码一帧客户端消息，格式不合法时返回 ``None``。"""
    try:
        return EventFrame.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        return None


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 聊天端点。

    每个连接在加入房间前处于未绑定状态，只能发送 ``join-room``；
    其余事件在未绑定时会被协调器忽略。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    transport: WebSocketTransport = websocket.app.state.transport
    coordinator: SessionCoordinator = websocket.app.state.coordinator

    connection_ref = await transport.connect(websocket)
    token = connection_id_ctx_var.set(connection_ref)
    # 每个连接独立的聊天限流器
    ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)

    try:
        while True:
            raw: str = await websocket.receive_text()
            frame = decode_frame(raw)
            if frame is None:
                logger.warning("忽略无法解析的消息帧 | size=%d", len(raw))
                continue

            if frame.event == ClientEvent.SEND_MESSAGE.value and not ws_limiter.is_allowed(connection_ref):
                logger.debug("发送过快，丢弃消息")
                continue

            coordinator.handle_event(connection_ref, frame.event, frame.data)
    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("WebSocket 异常: %s", e, exc_info=True)
    finally:
        coordinator.disconnect(connection_ref)
        ws_limiter.remove_client(connection_ref)
        await transport.disconnect(connection_ref)
        connection_id_ctx_var.reset(token)
