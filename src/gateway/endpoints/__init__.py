"""
Gateway 端点模块

包含 OpenAI 聊天补全、模型列表和健康检查端点。
"""

from fastapi import APIRouter

__all__ = [
    "create_gateway_router",
    "openai_router",
    "models_router",
]


def create_gateway_router() -> APIRouter:
    """
    创建网关路由器

    Returns:
        配置好的 APIRouter 实例
    """
    from .openai import router as openai_router
    from .models import router as models_router

    router = APIRouter()
    router.include_router(models_router, tags=["models"])
    router.include_router(openai_router, tags=["openai"])
    return router


# 延迟导入避免循环依赖
def __getattr__(name: str):
    if name == "openai_router":
        from .openai import router
        return router
    elif name == "models_router":
        from .models import router
        return router
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
