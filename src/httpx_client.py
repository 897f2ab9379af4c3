"""
通用的HTTP客户端模块

为上游调用（登录、创建会话、生成）提供统一的 httpx 客户端配置。

特性:
- 代理支持：每次创建客户端时动态读取 PROXY 配置，支持热更新
- 流式请求：流式客户端默认不设超时，由调用方取消作为兜底
- 可注入 transport：测试中使用 httpx.MockTransport 代替真实网络
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from config import get_proxy_config
from log import log


class HttpxClientManager:
    """通用HTTP客户端管理器"""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def get_client_kwargs(self, timeout: Optional[float] = 30.0, **kwargs) -> Dict[str, Any]:
        """
        获取httpx客户端的通用配置参数

        Args:
            timeout: 请求超时时间（秒），None 表示不限制
            **kwargs: 其他参数

        Returns:
            客户端配置字典
        """
        client_kwargs = {"timeout": timeout, **kwargs}

        if self._transport is not None:
            client_kwargs["transport"] = self._transport
            return client_kwargs

        # 动态读取代理配置，支持热更新
        current_proxy_config = await get_proxy_config()
        if current_proxy_config:
            client_kwargs["proxy"] = current_proxy_config

        return client_kwargs

    @asynccontextmanager
    async def get_client(
        self, timeout: Optional[float] = 30.0, **kwargs
    ) -> AsyncGenerator[httpx.AsyncClient, None]:
        """获取配置好的异步HTTP客户端"""
        client_kwargs = await self.get_client_kwargs(timeout=timeout, **kwargs)
        async with httpx.AsyncClient(**client_kwargs) as client:
            yield client

    @asynccontextmanager
    async def get_streaming_client(
        self, timeout: Optional[float] = None, **kwargs
    ) -> AsyncGenerator[httpx.AsyncClient, None]:
        """
        获取用于流式请求的HTTP客户端

        上游生成耗时不可预期，默认不设超时；客户端断开时上下文退出，连接随之关闭。
        """
        client_kwargs = await self.get_client_kwargs(timeout=timeout, **kwargs)
        client = httpx.AsyncClient(**client_kwargs)
        try:
            yield client
        finally:
            await safe_close_client(client)


# 全局HTTP客户端管理器实例
http_client = HttpxClientManager()


async def safe_close_client(client: Optional[httpx.AsyncClient]) -> None:
    """
    安全地关闭 HTTP 客户端

    已关闭的客户端直接跳过；关闭时的 RuntimeError 只记录调试日志，不影响主流程。
    """
    if client is None or client.is_closed:
        return

    try:
        await client.aclose()
    except RuntimeError as e:
        log.debug(f"[HttpxClient] Error closing client (ignored): {e}")
