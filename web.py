"""
Main Web Integration - Integrates all routers and modules
集合router并开启主服务
"""

# 加载 .env 文件中的环境变量（必须在其他导入之前）
from dotenv import load_dotenv
load_dotenv()  # 加载 .env 文件

import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_server_host, get_server_port
from log import clear_request_id, get_request_id, log, set_request_id

from src.gateway.endpoints import create_gateway_router
from src.gateway.state import build_gateway_state
from src.utils import GatewayError, error_body, error_response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    log.info("启动 Moss 网关主服务")

    # 初始化配置缓存（优先执行）
    try:
        import config
        await config.init_config()
        log.info("配置缓存初始化成功")
    except Exception as e:
        log.error(f"配置缓存初始化失败: {e}", exc=e)

    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = await build_gateway_state()
    gateway = app.state.gateway
    gateway.sweeper.start()

    yield

    # 清理资源
    log.info("开始关闭 Moss 网关主服务")
    await gateway.sweeper.stop()
    log.info("Moss 网关主服务已停止")


# 创建FastAPI应用
app = FastAPI(
    title="Moss Gateway",
    description="Moss API proxy with OpenAI compatibility",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """为每个请求分配 request_id，记录请求耗时"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = set_request_id(request_id)
    start_time = time.perf_counter()
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        duration_ms = (time.perf_counter() - start_time) * 1000
        log.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            tag="HTTP",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        return response
    finally:
        clear_request_id(token)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content=error_body(
                f"Unknown request URL: {request.method} {request.url.path}",
                "invalid_request_error",
                "resource_missing",
            ),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), "invalid_request_error", exc.status_code),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = get_request_id()
    log.error(f"未处理的异常: {exc}", tag="HTTP", exc=exc)
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", "server_error", "internal_error", request_id),
        headers={"X-Request-ID": request_id} if request_id else None,
    )


# 挂载路由器
app.include_router(create_gateway_router(), prefix="", tags=["OpenAI Compatible API"])


__all__ = ["app"]


async def main():
    """异步主启动函数"""
    from hypercorn.asyncio import serve
    from hypercorn.config import Config

    port = await get_server_port()
    host = await get_server_host()

    log.info("=" * 60)
    log.info("启动 Moss Gateway")
    log.info("=" * 60)
    log.info("API端点:")
    log.info(f"   OpenAI兼容: http://127.0.0.1:{port}/v1")
    log.info(f"   健康检查: http://127.0.0.1:{port}/health")
    log.info("=" * 60)

    # 配置hypercorn
    config = Config()
    config.bind = [f"{host}:{port}"]
    config.accesslog = "-"
    config.errorlog = "-"
    config.loglevel = "INFO"
    config.use_colors = True

    # 设置请求体大小限制为10MB
    config.max_request_body_size = 10 * 1024 * 1024

    # 流式生成可能持续较久
    config.keep_alive_timeout = 300
    config.read_timeout = 300

    await serve(app, config)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
