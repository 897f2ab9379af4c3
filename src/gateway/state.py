"""
Gateway 进程级状态

两个 TTL 存储是唯一跨请求共享的可变状态，随进程创建、随进程销毁（不持久化）。
应用启动时由 lifespan 构建并挂到 app.state.gateway 上，端点通过 get_gateway_state 获取。
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request

from config import (
    get_moss_api_base,
    get_moss_login_credentials,
    get_moss_request_timeout,
    get_session_ttl_seconds,
    get_shared_api_key,
    get_token_ttl_seconds,
    get_ttl_sweep_interval,
)

from ..httpx_client import HttpxClientManager
from ..moss_client import MossClient
from ..session_manager import SessionOrchestrator
from ..ttl_store import TTLStore, TTLSweeper

__all__ = ["GatewayState", "build_gateway_state", "get_gateway_state"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GatewayState:
    client: MossClient
    sessions: TTLStore
    tokens: TTLStore
    orchestrator: SessionOrchestrator
    sweeper: TTLSweeper
    started_at: float = field(default_factory=time.time)
    now: Callable[[], datetime] = _utcnow

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at


async def build_gateway_state(http: Optional[HttpxClientManager] = None) -> GatewayState:
    """根据当前配置构建网关状态"""
    email, password = await get_moss_login_credentials()
    client = MossClient(
        await get_moss_api_base(),
        email,
        password,
        timeout=await get_moss_request_timeout(),
        http=http,
    )

    sessions = TTLStore("sessions", await get_session_ttl_seconds())
    # token 24 小时绝对过期，读取不续期
    tokens = TTLStore("tokens", await get_token_ttl_seconds(), refresh_on_read=False)

    orchestrator = SessionOrchestrator(client, sessions, tokens, await get_shared_api_key())
    sweeper = TTLSweeper([sessions, tokens], interval=await get_ttl_sweep_interval())

    return GatewayState(
        client=client,
        sessions=sessions,
        tokens=tokens,
        orchestrator=orchestrator,
        sweeper=sweeper,
    )


def get_gateway_state(request: Request) -> GatewayState:
    return request.app.state.gateway
