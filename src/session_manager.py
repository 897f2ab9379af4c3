"""
Session/Token Orchestrator

负责两件事:
1. 凭证解析: 调用方出示共享哨兵 Key 时，使用网关自己的登录 token（懒加载、24 小时绝对过期）；
   否则直接使用调用方的 token
2. 会话解析: 每个凭证对应一个上游 conversationId（空闲 2 小时过期）；
   没有会话时先创建，"重置" 指令强制新建并直接回复新的会话 ID

并发: 同一个 key 的登录 / 创建会话只会有一个进行中的上游调用，
后到的请求等待同一个结果（single-flight）。
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from log import log

from .moss_format import build_conversation_payload, last_user_text
from .ttl_store import TTLStore

__all__ = [
    "DEFAULT_TOKEN_KEY",
    "RESET_COMMANDS",
    "RELOGIN_COMMANDS",
    "is_reset_command",
    "is_relogin_command",
    "SingleFlight",
    "SessionDecision",
    "SessionOrchestrator",
]

DEFAULT_TOKEN_KEY = "default_user"

RESET_COMMANDS = frozenset({"重置", "reset", "1"})
RELOGIN_COMMANDS = frozenset({"重新登录", "login", "登录"})

RELOGIN_REPLY = "账号过期，已重新登录成功，请重新提问~~"
RESET_REPLY = "会话已重置，新的会话 ID: {conversation_id} 已创建，请重新提问~~"


def is_reset_command(messages: List[Dict[str, Any]]) -> bool:
    text = last_user_text(messages)
    return text is not None and text.strip() in RESET_COMMANDS


def is_relogin_command(messages: List[Dict[str, Any]]) -> bool:
    text = last_user_text(messages)
    return text is not None and text.strip().lower() in RELOGIN_COMMANDS


class SingleFlight:
    """
    Per-key in-flight registry.

    第一个调用方启动任务，后到的调用方 await 同一个任务；任务结束后自动注销。
    调用方被取消（客户端断开）不会取消共享任务，其他等待者仍能拿到结果。
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        else:
            log.debug(f"[SingleFlight] Joining in-flight call for {key}")
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # 所有等待者都已取消时，异常只能在这里取走
        if not task.cancelled() and task.exception() is not None:
            log.debug(f"[SingleFlight] {key} failed: {task.exception()!r}")


@dataclass
class SessionDecision:
    """
    Orchestrator 的结论

    reply 不为空时表示短路: 直接把 reply 作为回复，不调用生成接口。
    """
    credential: str
    conversation_id: Any = None
    reply: Optional[str] = None

    @property
    def short_circuit(self) -> bool:
        return self.reply is not None


class SessionOrchestrator:
    """
    Usage:
        orchestrator = SessionOrchestrator(client, sessions, tokens, "sk-shared-default")
        decision = await orchestrator.prepare(bearer, messages, model)
        if decision.short_circuit:
            ...  # 直接回复 decision.reply
    """

    def __init__(self, client, sessions: TTLStore, tokens: TTLStore, shared_api_key: str):
        self.client = client
        self.sessions = sessions
        self.tokens = tokens
        self.shared_api_key = shared_api_key
        self._flights = SingleFlight()

    def is_shared(self, presented: str) -> bool:
        return presented == self.shared_api_key

    async def resolve_credential(self, presented: str) -> str:
        """共享哨兵 Key 换成网关 token，其他 Key 原样使用"""
        if not self.is_shared(presented):
            return presented

        token = self.tokens.get(DEFAULT_TOKEN_KEY)
        if token:
            return token

        log.info("检测到共享 Key，获取共享 token", tag="SESSION")
        return await self._acquire_shared_token()

    async def relogin(self) -> str:
        """强制重新登录共享账号"""
        log.info("触发强制重新登录", tag="SESSION")
        self.tokens.delete(DEFAULT_TOKEN_KEY)
        return await self._acquire_shared_token()

    async def _acquire_shared_token(self) -> str:
        async def login() -> str:
            token = await self.client.login()
            self.tokens.set(DEFAULT_TOKEN_KEY, token)
            return token

        return await self._flights.do(DEFAULT_TOKEN_KEY, login)

    async def new_conversation(self, credential: str, model: Optional[str]) -> Any:
        """创建新会话并写入会话存储（同一凭证并发创建只调用一次上游）"""
        async def create() -> Any:
            conversation_id = await self.client.create_conversation(
                credential, build_conversation_payload(model)
            )
            self.sessions.set(credential, conversation_id)
            return conversation_id

        return await self._flights.do(f"conversation:{credential}", create)

    async def prepare(
        self,
        presented: str,
        messages: List[Dict[str, Any]],
        model: Optional[str],
    ) -> SessionDecision:
        """
        解析凭证和会话

        顺序:
            1. 共享 Key + 重新登录指令 -> 重新登录，短路回复
            2. 解析凭证
            3. 重置指令 -> 新建会话，短路回复新会话 ID
            4. 无会话 -> 新建会话后继续生成
        """
        if self.is_shared(presented) and is_relogin_command(messages):
            credential = await self.relogin()
            return SessionDecision(credential=credential, reply=RELOGIN_REPLY)

        credential = await self.resolve_credential(presented)

        if is_reset_command(messages):
            conversation_id = await self.new_conversation(credential, model)
            log.info(f"会话已重置: {conversation_id}", tag="SESSION")
            return SessionDecision(
                credential=credential,
                conversation_id=conversation_id,
                reply=RESET_REPLY.format(conversation_id=conversation_id),
            )

        conversation_id = self.sessions.get(credential)
        if conversation_id is None:
            conversation_id = await self.new_conversation(credential, model)

        return SessionDecision(credential=credential, conversation_id=conversation_id)
