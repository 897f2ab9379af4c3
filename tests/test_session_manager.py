"""
Session/Token Orchestrator 测试

上游登录 / 创建会话使用假客户端，只统计调用次数。
"""

import asyncio
import gc

import pytest

from src.moss_client import MossLoginError
from src.session_manager import (
    DEFAULT_TOKEN_KEY,
    RELOGIN_REPLY,
    SessionOrchestrator,
    SingleFlight,
    is_relogin_command,
    is_reset_command,
)
from src.ttl_store import TTLStore

SHARED = "sk-shared-default"


class FakeMossClient:
    def __init__(self, fail_login: bool = False):
        self.login_calls = 0
        self.conversation_calls = []
        self.fail_login = fail_login

    async def login(self) -> str:
        self.login_calls += 1
        # 让出执行权，模拟网络等待期间其他请求插入
        for _ in range(3):
            await asyncio.sleep(0)
        if self.fail_login:
            raise MossLoginError("bad credentials")
        return f"token-{self.login_calls}"

    async def create_conversation(self, token, payload) -> str:
        self.conversation_calls.append((token, payload))
        await asyncio.sleep(0)
        return f"conv-{len(self.conversation_calls)}"


def make_orchestrator(client=None):
    client = client or FakeMossClient()
    sessions = TTLStore("sessions", 7200)
    tokens = TTLStore("tokens", 86400, refresh_on_read=False)
    return SessionOrchestrator(client, sessions, tokens, SHARED), client


def user(text):
    return [{"role": "user", "content": text}]


class TestCommands:
    """测试快捷指令识别"""

    def test_reset_vocabulary(self):
        for text in ["重置", "reset", "1", "  重置  "]:
            assert is_reset_command(user(text))
        assert not is_reset_command(user("RESET"))
        assert not is_reset_command(user("please reset"))

    def test_relogin_vocabulary_case_insensitive(self):
        for text in ["重新登录", "login", "LOGIN", " Login ", "登录"]:
            assert is_relogin_command(user(text))
        assert not is_relogin_command(user("logout"))

    def test_only_last_user_message_counts(self):
        messages = [
            {"role": "user", "content": "重置"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "hello"},
        ]
        assert not is_reset_command(messages)
        assert not is_reset_command([{"role": "system", "content": "重置"}])


class TestSingleFlight:
    """测试 per-key single-flight"""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        flights = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return "result"

        results = await asyncio.gather(*(flights.do("k", work) for _ in range(5)))

        assert results == ["result"] * 5
        assert calls == 1
        assert not flights.in_flight("k")

    @pytest.mark.asyncio
    async def test_failure_propagates_to_all_waiters(self):
        flights = SingleFlight()

        async def boom():
            await asyncio.sleep(0)
            raise RuntimeError("boom")

        results = await asyncio.gather(
            flights.do("k", boom), flights.do("k", boom), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert not flights.in_flight("k")

    @pytest.mark.asyncio
    async def test_failure_after_all_waiters_cancelled_is_retrieved(self):
        """等待者全部取消后共享任务失败，异常被取走，不触发 loop 的 "never retrieved" 报告"""
        loop = asyncio.get_running_loop()
        reported = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))

        flights = SingleFlight()
        release = asyncio.Event()

        async def slow_login():
            await release.wait()
            raise RuntimeError("login failed")

        try:
            waiter = asyncio.ensure_future(flights.do("k", slow_login))
            await asyncio.sleep(0)
            assert flights.in_flight("k")

            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

            release.set()
            for _ in range(5):
                await asyncio.sleep(0)
            assert not flights.in_flight("k")

            del waiter
            gc.collect()
        finally:
            loop.set_exception_handler(previous_handler)

        assert not any("never retrieved" in str(c.get("message", "")) for c in reported)


class TestCredentialResolution:
    """测试凭证解析"""

    @pytest.mark.asyncio
    async def test_caller_token_used_directly(self):
        orchestrator, client = make_orchestrator()
        assert await orchestrator.resolve_credential("sk-user") == "sk-user"
        assert client.login_calls == 0

    @pytest.mark.asyncio
    async def test_shared_key_logs_in_once_and_caches(self):
        orchestrator, client = make_orchestrator()

        assert await orchestrator.resolve_credential(SHARED) == "token-1"
        assert await orchestrator.resolve_credential(SHARED) == "token-1"
        assert client.login_calls == 1
        assert orchestrator.tokens.get(DEFAULT_TOKEN_KEY) == "token-1"

    @pytest.mark.asyncio
    async def test_concurrent_shared_requests_single_login(self):
        """N 个并发请求只触发一次登录，全部拿到同一个 token"""
        orchestrator, client = make_orchestrator()

        tokens = await asyncio.gather(*(orchestrator.resolve_credential(SHARED) for _ in range(10)))

        assert client.login_calls == 1
        assert set(tokens) == {"token-1"}

    @pytest.mark.asyncio
    async def test_login_failure_is_not_cached(self):
        orchestrator, client = make_orchestrator(FakeMossClient(fail_login=True))

        with pytest.raises(MossLoginError):
            await orchestrator.resolve_credential(SHARED)
        assert DEFAULT_TOKEN_KEY not in orchestrator.tokens


class TestPrepare:
    """测试会话编排"""

    @pytest.mark.asyncio
    async def test_reset_without_prior_session(self):
        """重置指令: 创建一次会话，回复新会话 ID，不进入生成"""
        orchestrator, client = make_orchestrator()

        decision = await orchestrator.prepare("sk-user", user("重置"), "gpt-4o-mini")

        assert decision.short_circuit
        assert "conv-1" in decision.reply
        assert len(client.conversation_calls) == 1
        assert orchestrator.sessions.get("sk-user") == "conv-1"

    @pytest.mark.asyncio
    async def test_reset_replaces_existing_session(self):
        orchestrator, client = make_orchestrator()
        orchestrator.sessions.set("sk-user", "conv-old")

        decision = await orchestrator.prepare("sk-user", user("reset"), "gpt-4o")

        assert decision.conversation_id == "conv-1"
        assert orchestrator.sessions.get("sk-user") == "conv-1"

    @pytest.mark.asyncio
    async def test_missing_session_created_then_generation_proceeds(self):
        orchestrator, client = make_orchestrator()

        decision = await orchestrator.prepare("sk-user", user("hello"), "gpt-4o-tmp")

        assert not decision.short_circuit
        assert decision.conversation_id == "conv-1"
        assert decision.credential == "sk-user"
        token, payload = client.conversation_calls[0]
        assert token == "sk-user"
        assert payload["assistantId"] == "2"

    @pytest.mark.asyncio
    async def test_existing_session_reused(self):
        orchestrator, client = make_orchestrator()
        orchestrator.sessions.set("sk-user", "conv-9")

        decision = await orchestrator.prepare("sk-user", user("hello"), "gpt-4o")

        assert decision.conversation_id == "conv-9"
        assert client.conversation_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_first_requests_create_one_conversation(self):
        orchestrator, client = make_orchestrator()

        decisions = await asyncio.gather(
            *(orchestrator.prepare("sk-user", user("hello"), "gpt-4o") for _ in range(5))
        )

        assert len(client.conversation_calls) == 1
        assert {d.conversation_id for d in decisions} == {"conv-1"}

    @pytest.mark.asyncio
    async def test_shared_key_session_keyed_by_resolved_token(self):
        orchestrator, client = make_orchestrator()

        decision = await orchestrator.prepare(SHARED, user("hello"), "gpt-4o")

        assert decision.credential == "token-1"
        assert orchestrator.sessions.get("token-1") == decision.conversation_id

    @pytest.mark.asyncio
    async def test_relogin_with_shared_key(self):
        """重新登录: 驱逐旧 token，重新获取，短路回复"""
        orchestrator, client = make_orchestrator()
        orchestrator.tokens.set(DEFAULT_TOKEN_KEY, "stale")

        decision = await orchestrator.prepare(SHARED, user(" LOGIN "), "gpt-4o")

        assert decision.reply == RELOGIN_REPLY
        assert client.login_calls == 1
        assert orchestrator.tokens.get(DEFAULT_TOKEN_KEY) == "token-1"
        assert client.conversation_calls == []

    @pytest.mark.asyncio
    async def test_relogin_ignored_for_caller_token(self):
        """非共享 Key 发送 "login" 按普通消息处理"""
        orchestrator, client = make_orchestrator()

        decision = await orchestrator.prepare("sk-user", user("login"), "gpt-4o")

        assert not decision.short_circuit
        assert client.login_calls == 0
        assert decision.conversation_id == "conv-1"
