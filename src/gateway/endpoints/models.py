"""
Gateway 模型列表与健康检查端点
"""

import time

from fastapi import APIRouter, Depends

from config import get_available_models
from log import log

from ..state import GatewayState, get_gateway_state

router = APIRouter()

__all__ = ["router"]


@router.get("/v1/models")
@router.get("/models")  # 别名路由，兼容不同客户端配置
async def list_models():
    """静态模型列表"""
    log.debug("Models request received", tag="GATEWAY")
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": created, "owned_by": "moss"}
            for model_id in await get_available_models()
        ],
    }


@router.get("/health")
async def health(gateway: GatewayState = Depends(get_gateway_state)):
    return {
        "status": "ok",
        "timestamp": int(time.time()),
        "uptime_seconds": round(gateway.uptime_seconds, 3),
        "sessions": len(gateway.sessions),
        "tokens": len(gateway.tokens),
    }
