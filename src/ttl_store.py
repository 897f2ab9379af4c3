"""
TTL Store - 带最后访问时间的内存键值存储

用于两类进程级共享状态:
    - 会话存储: 调用方凭证 -> 上游 conversationId（空闲 2 小时过期，读取续期）
    - 凭证存储: "default_user" -> 共享 loginToken（24 小时绝对过期，读取不续期）

过期只由后台定时清扫 (sweep) 执行，与请求流量无关。
时钟可注入，测试中用可控时钟代替真实时间。
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

from log import log

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass
class TTLEntry(Generic[V]):
    value: V
    last_access: float


class TTLStore(Generic[K, V]):
    """
    Mapping with per-key last-access timestamps and sweep-based eviction.

    Usage:
        store = TTLStore("sessions", max_age=7200)
        store.set("sk-abc", "conv_123")
        store.get("sk-abc")          # -> "conv_123"，同时刷新访问时间
        store.sweep()                # 删除超过 max_age 未访问的键
    """

    def __init__(
        self,
        name: str,
        max_age: float,
        *,
        refresh_on_read: bool = True,
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.max_age = float(max_age)
        self.refresh_on_read = refresh_on_read
        self._clock = clock or time.monotonic
        self._entries: Dict[K, TTLEntry[V]] = {}
        self._lock = threading.Lock()

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = TTLEntry(value=value, last_access=self._clock())

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self.refresh_on_read:
                entry.last_access = self._clock()
            return entry.value

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        """
        Remove every key whose last access is older than max_age.

        Returns:
            Number of entries removed
        """
        cutoff = self._clock() - self.max_age
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.last_access < cutoff]
            for key in expired:
                del self._entries[key]

        if expired:
            log.info(f"[TTL:{self.name}] Swept {len(expired)} expired entries, {len(self)} remaining")
        return len(expired)


class TTLSweeper:
    """
    后台定时清扫任务

    每个 interval 秒对所有注册的存储执行一次 sweep()。
    """

    def __init__(self, stores: list, interval: float = 600.0):
        self.stores = list(stores)
        self.interval = float(interval)
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            log.warning("[TTLSweeper] 已在运行，跳过重复启动")
            return
        self._task = asyncio.create_task(self._sweep_loop())
        log.info(
            f"[TTLSweeper] 启动清扫任务 (间隔: {self.interval:.0f}s, "
            f"stores: {', '.join(s.name for s in self.stores)})"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("[TTLSweeper] 清扫任务已停止")

    def sweep_once(self) -> int:
        return sum(store.sweep() for store in self.stores)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep_once()
            except Exception as e:
                log.error(f"[TTLSweeper] 清扫出错: {e}", exc=e)
