"""
pinchat.api.deps
~~~~~~~~~~~~~~~~

FastAPI 依赖 —— 从 ``app.state`` 取出 lifespan 中创建的共享实例。
"""
from fastapi import Request

from pinchat.services.registry import RoomRegistry
from pinchat.services.transport import WebSocketTransport


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_transport(request: Request) -> WebSocketTransport:
    return request.app.state.transport
