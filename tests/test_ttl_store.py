"""
TTL Store 单元测试

使用可控时钟，不依赖真实时间流逝。
"""

import asyncio

import pytest

from src.ttl_store import TTLStore, TTLSweeper


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TestTTLStore:
    """测试 TTLStore 基本读写与清扫"""

    def test_set_and_get(self):
        """写入后可读取，缺失键返回默认值"""
        store = TTLStore("sessions", 60, clock=FakeClock())
        store.set("sk-a", "conv-1")

        assert store.get("sk-a") == "conv-1"
        assert store.get("sk-b") is None
        assert store.get("sk-b", "fallback") == "fallback"
        assert "sk-a" in store
        assert len(store) == 1

    def test_set_overwrites(self):
        """重复写入覆盖旧值"""
        store = TTLStore("sessions", 60, clock=FakeClock())
        store.set("sk-a", "conv-1")
        store.set("sk-a", "conv-2")

        assert store.get("sk-a") == "conv-2"
        assert len(store) == 1

    def test_delete(self):
        """删除立即生效"""
        store = TTLStore("sessions", 60, clock=FakeClock())
        store.set("sk-a", "conv-1")

        assert store.delete("sk-a") is True
        assert store.delete("sk-a") is False
        assert store.get("sk-a") is None

    def test_sweep_evicts_idle_entries(self):
        """超过 max_age 未访问的条目在下次清扫后消失"""
        clock = FakeClock()
        store = TTLStore("sessions", 7200, clock=clock)
        store.set("old", "conv-old")
        clock.advance(3600)
        store.set("fresh", "conv-fresh")
        clock.advance(3601)

        removed = store.sweep()

        assert removed == 1
        assert "old" not in store
        assert store.get("fresh") == "conv-fresh"

    def test_read_extends_life(self):
        """读取会刷新最后访问时间"""
        clock = FakeClock()
        store = TTLStore("sessions", 7200, clock=clock)
        store.set("sk-a", "conv-1")

        clock.advance(7000)
        assert store.get("sk-a") == "conv-1"
        clock.advance(7000)

        assert store.sweep() == 0
        assert store.get("sk-a") == "conv-1"

    def test_absolute_expiry_without_refresh(self):
        """refresh_on_read=False 时读取不续期（凭证存储的 24 小时绝对过期）"""
        clock = FakeClock()
        store = TTLStore("tokens", 86400, refresh_on_read=False, clock=clock)
        store.set("default_user", "tok")

        clock.advance(80000)
        assert store.get("default_user") == "tok"
        clock.advance(10000)

        assert store.sweep() == 1
        assert store.get("default_user") is None

    def test_entry_within_window_survives(self):
        """恰好在窗口内的条目不会被清扫"""
        clock = FakeClock()
        store = TTLStore("sessions", 100, clock=clock)
        store.set("k", "v")
        clock.advance(100)

        assert store.sweep() == 0
        assert "k" in store


class TestTTLSweeper:
    """测试后台清扫任务"""

    def test_sweep_once_covers_all_stores(self):
        """sweep_once 对所有注册的存储执行清扫"""
        clock = FakeClock()
        sessions = TTLStore("sessions", 10, clock=clock)
        tokens = TTLStore("tokens", 10, refresh_on_read=False, clock=clock)
        sessions.set("a", 1)
        tokens.set("b", 2)
        clock.advance(11)

        sweeper = TTLSweeper([sessions, tokens], interval=600)

        assert sweeper.sweep_once() == 2
        assert len(sessions) == 0
        assert len(tokens) == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """启动后处于运行状态，停止后任务被取消"""
        sweeper = TTLSweeper([TTLStore("sessions", 10)], interval=600)

        sweeper.start()
        assert sweeper.is_running

        await sweeper.stop()
        assert not sweeper.is_running

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        """未启动时 stop 不报错"""
        sweeper = TTLSweeper([], interval=600)
        await sweeper.stop()
        assert not sweeper.is_running

    @pytest.mark.asyncio
    async def test_loop_sweeps_on_interval(self):
        """运行中的清扫任务按间隔自动清理过期条目，无需手动 sweep"""
        clock = FakeClock()
        sessions = TTLStore("sessions", 10, clock=clock)
        sessions.set("idle", "conv-1")
        clock.advance(11)

        sweeper = TTLSweeper([sessions], interval=0.01)
        sweeper.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await sweeper.stop()

        assert "idle" not in sessions
        assert len(sessions) == 0
