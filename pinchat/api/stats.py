"""
pinchat.api.stats
~~~~~~~~~~~~~~~~~

运行时统计接口。

端点:
  - ``GET /stats`` → 房间数 / 成员数 / 连接数（不暴露任何 PIN）
"""
# slowapi 包装后的端点由 FastAPI 在 slowapi 模块的命名空间里解析注解，这里不能延迟求值
from fastapi import APIRouter, Depends, Request

from pinchat.api.deps import get_registry, get_transport
from pinchat.core.config import settings
from pinchat.core.rate_limit import limiter
from pinchat.schemas.api_response import ApiResponse, StatsData
from pinchat.services.registry import RoomRegistry
from pinchat.services.transport import WebSocketTransport

router: APIRouter = APIRouter()


@router.get("/stats", summary="获取运行时统计", response_model=ApiResponse[StatsData])
@limiter.limit(settings.API_RATE_LIMIT)
async def get_stats(
    request: Request,
    registry: RoomRegistry = Depends(get_registry),
    transport: WebSocketTransport = Depends(get_transport),
) -> ApiResponse[StatsData]:
    """返回当前进程的房间与连接统计。"""
    return ApiResponse.ok(
        data=StatsData(
            mode=registry.mode.value,
            rooms=len(registry),
            members=registry.member_count,
            connections=transport.online_count,
        ),
    )
