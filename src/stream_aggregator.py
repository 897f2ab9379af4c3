"""
Content Aggregator / Mode Detector

逐行消费上游记录，决定每段文本是立即作为普通内容下发，还是作为疑似工具调用缓冲到流结束。

状态机:
    TEXT ──(开头匹配工具调用 JSON)──> TOOL_CANDIDATE （单向，直到流结束）

- TEXT: 新增文本立即下发，sent_length 前进
- 开头还无法判定时（例如只收到 "{" 或 "```"）暂不下发，等到能判定为止
- TOOL_CANDIDATE: 只累积，不下发
- 流结束: 对全文运行工具调用识别；识别成功输出 tool_calls，
  否则把尚未下发的文本一次性作为普通内容下发（原样、无损）

consume() / finish() 是纯函数，便于不依赖网络回放测试。
"""

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Tuple, Union

from log import log

from .moss_stream import extract_error_message, extract_text_delta
from .tool_call_parser import DEFAULT_STRATEGIES, ToolCallDescriptor, normalize_tool_calls

__all__ = [
    "Mode",
    "Opening",
    "AggregationState",
    "ContentDelta",
    "ToolCallsDelta",
    "Finish",
    "detect_tool_opening",
    "consume",
    "finish",
    "ContentAggregator",
]


class Mode(str, Enum):
    TEXT = "text"
    TOOL_CANDIDATE = "tool_candidate"


class Opening(str, Enum):
    MATCH = "match"
    PENDING = "pending"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class AggregationState:
    accumulated_text: str = ""
    mode: Mode = Mode.TEXT
    sent_length: int = 0
    error_count: int = 0
    aborted: bool = False


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolCallsDelta:
    calls: Tuple[ToolCallDescriptor, ...]


@dataclass(frozen=True)
class Finish:
    reason: str  # "stop" | "tool_calls"


Unit = Union[ContentDelta, ToolCallsDelta, Finish]

_FENCE_PREFIX = re.compile(r"```[A-Za-z0-9_+-]*\s*")
_OPENING_KEYS = ('"tool_calls"', '"name"')


def detect_tool_opening(text: str) -> Opening:
    """
    判断文本开头是否为工具调用 JSON

    识别的开头: {"tool_calls" 或 {"name"，可以前置 ``` / ```json 代码块标记。

    Example:
        >>> detect_tool_opening('{"tool_calls": [')
        <Opening.MATCH: 'match'>
        >>> detect_tool_opening('{"to')
        <Opening.PENDING: 'pending'>
        >>> detect_tool_opening('Hello')
        <Opening.NO_MATCH: 'no_match'>
    """
    rest = text.lstrip()
    if not rest:
        return Opening.PENDING

    if rest.startswith("```"):
        fence = _FENCE_PREFIX.match(rest)
        rest = rest[fence.end():]
        if not rest:
            return Opening.PENDING
    elif "```".startswith(rest):
        return Opening.PENDING

    if not rest.startswith("{"):
        return Opening.NO_MATCH

    body = rest[1:].lstrip()
    if not body:
        return Opening.PENDING

    for key in _OPENING_KEYS:
        if body.startswith(key):
            return Opening.MATCH
        if key.startswith(body):
            return Opening.PENDING

    return Opening.NO_MATCH


def consume(
    state: AggregationState,
    record: Dict[str, Any],
    *,
    error_mode: str = "warn",
) -> Tuple[List[Unit], AggregationState]:
    """
    处理一条上游记录

    Args:
        state: 当前聚合状态
        record: 上游一行解析出的 JSON
        error_mode: "warn" 错误行作为内容输出后继续；"abort" 输出后停止消费

    Returns:
        (本次需要下发的单元, 新状态)
    """
    if state.aborted:
        return [], state

    error_message = extract_error_message(record)
    if error_message is not None:
        log.warning(f"[AGGREGATOR] Upstream error line: {error_message}", tag="MOSS")
        return [ContentDelta(error_message)], replace(
            state,
            error_count=state.error_count + 1,
            aborted=error_mode == "abort",
        )

    delta = extract_text_delta(record)
    if not delta:
        return [], state

    text = state.accumulated_text + delta

    if state.mode is Mode.TOOL_CANDIDATE:
        return [], replace(state, accumulated_text=text)

    if state.sent_length == 0:
        opening = detect_tool_opening(text)
        if opening is Opening.MATCH:
            log.info("[AGGREGATOR] Tool-call opening detected, buffering until end of stream")
            return [], replace(state, accumulated_text=text, mode=Mode.TOOL_CANDIDATE)
        if opening is Opening.PENDING:
            return [], replace(state, accumulated_text=text)

    pending = text[state.sent_length:]
    return [ContentDelta(pending)], replace(state, accumulated_text=text, sent_length=len(text))


def finish(state: AggregationState, strategies=DEFAULT_STRATEGIES) -> List[Unit]:
    """
    流结束时的最终决策: 输出工具调用，或把缓冲文本作为普通内容放行
    """
    calls = normalize_tool_calls(state.accumulated_text, strategies)
    if calls:
        return [ToolCallsDelta(tuple(calls)), Finish("tool_calls")]

    units: List[Unit] = []
    remainder = state.accumulated_text[state.sent_length:]
    if remainder:
        if state.mode is Mode.TOOL_CANDIDATE:
            log.info("[AGGREGATOR] Buffered text is not a tool call, flushing as plain content")
        units.append(ContentDelta(remainder))
    units.append(Finish("stop"))
    return units


class ContentAggregator:
    """
    单个请求内使用的有状态包装

    Usage:
        aggregator = ContentAggregator(error_mode="warn")
        for record in records:
            for unit in aggregator.feed(record):
                ...
        for unit in aggregator.finish():
            ...
    """

    def __init__(self, error_mode: str = "warn", strategies=DEFAULT_STRATEGIES):
        self.state = AggregationState()
        self.error_mode = error_mode
        self.strategies = strategies

    @property
    def aborted(self) -> bool:
        return self.state.aborted

    @property
    def text(self) -> str:
        return self.state.accumulated_text

    def feed(self, record: Dict[str, Any]) -> List[Unit]:
        units, self.state = consume(self.state, record, error_mode=self.error_mode)
        return units

    def finish(self) -> List[Unit]:
        return finish(self.state, self.strategies)
