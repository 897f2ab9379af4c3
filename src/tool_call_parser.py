"""
Tool-Call Normalizer - 从模型文本输出中识别并规范化工具调用

上游模型没有原生 tool_calls 字段，工具调用以 JSON 形式嵌在正文里。
这里按顺序尝试三种识别策略，第一个成功的结果即为最终结果：

1. ToolCallsMarkerStrategy: 找到 "tool_calls" 字面量，向前回溯到外层 '{'，
   截取平衡 JSON 并解析，要求包含调用对象列表
2. FencedBlockStrategy: 在 ``` 代码块中解析同样的结构
3. BareCallStrategy: 单个裸露的 {"name": ..., "arguments": ...} 视为一次调用

识别不到是正常结果（返回空列表），不是错误。
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from log import log

from .json_extractor import extract_balanced_json

__all__ = [
    "ToolCallDescriptor",
    "ToolCallsMarkerStrategy",
    "FencedBlockStrategy",
    "BareCallStrategy",
    "DEFAULT_STRATEGIES",
    "generate_tool_call_id",
    "normalize_tool_calls",
]

_TOOL_CALLS_MARKER = '"tool_calls"'
_FENCE_PATTERN = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?(.*?)(?:```|$)", re.DOTALL)
_BARE_CALL_PATTERN = re.compile(r'\{\s*"name"\s*:')


def generate_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass
class ToolCallDescriptor:
    """规范化后的工具调用，arguments 始终是合法 JSON 文本"""
    name: str
    arguments: str
    id: str = field(default_factory=generate_tool_call_id)
    type: str = "function"

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


def _canonicalize_arguments(arguments: Any) -> str:
    """live object 序列化；已字符串化且合法的 JSON 原样保留"""
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        stripped = arguments.strip()
        if not stripped:
            return "{}"
        try:
            json.loads(stripped)
            return stripped
        except json.JSONDecodeError:
            return json.dumps(arguments, ensure_ascii=False)
    return json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))


def _normalize_call(obj: Any) -> Optional[ToolCallDescriptor]:
    """
    把单个调用对象转换为 ToolCallDescriptor

    支持两种形状:
        {"name": "lookup", "arguments": {...}}
        {"id": "...", "type": "function", "function": {"name": "lookup", "arguments": "..."}}
    """
    if not isinstance(obj, dict):
        return None

    function = obj.get("function")
    if isinstance(function, dict):
        name = function.get("name")
        arguments = function.get("arguments", function.get("parameters"))
    else:
        name = obj.get("name")
        arguments = obj.get("arguments", obj.get("parameters"))

    if not isinstance(name, str) or not name.strip():
        return None

    call_id = obj.get("id")
    call_type = obj.get("type")
    return ToolCallDescriptor(
        name=name.strip(),
        arguments=_canonicalize_arguments(arguments),
        id=call_id if isinstance(call_id, str) and call_id else generate_tool_call_id(),
        type=call_type if isinstance(call_type, str) and call_type else "function",
    )


def _normalize_call_list(items: Any) -> Optional[List[ToolCallDescriptor]]:
    if not isinstance(items, list) or not items:
        return None
    calls = [call for call in (_normalize_call(item) for item in items) if call is not None]
    return calls or None


def _loads(candidate: Optional[str]) -> Any:
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


class ToolCallsMarkerStrategy:
    """定位 "tool_calls" 字段并解析其外层对象"""

    name = "tool_calls_marker"

    def attempt(self, text: str) -> Optional[List[ToolCallDescriptor]]:
        marker_pos = text.find(_TOOL_CALLS_MARKER)
        while marker_pos != -1:
            # 从最近的 '{' 开始向外回溯，直到解析出包含 tool_calls 的对象
            open_pos = text.rfind("{", 0, marker_pos)
            while open_pos != -1:
                data = _loads(extract_balanced_json(text, open_pos))
                if isinstance(data, dict) and "tool_calls" in data:
                    calls = _normalize_call_list(data["tool_calls"])
                    if calls:
                        return calls
                    break
                open_pos = text.rfind("{", 0, open_pos)
            marker_pos = text.find(_TOOL_CALLS_MARKER, marker_pos + len(_TOOL_CALLS_MARKER))
        return None


class FencedBlockStrategy:
    """解析 ``` 代码块内的 {"tool_calls": [...]} 或调用数组"""

    name = "fenced_block"

    def attempt(self, text: str) -> Optional[List[ToolCallDescriptor]]:
        if "```" not in text:
            return None

        for match in _FENCE_PATTERN.finditer(text):
            body = match.group(1).strip()
            if not body:
                continue

            if body.startswith("["):
                calls = _normalize_call_list(_loads(body))
                if calls:
                    return calls
                continue

            data = _loads(extract_balanced_json(body))
            if isinstance(data, dict):
                calls = _normalize_call_list(data.get("tool_calls"))
                if calls:
                    return calls
        return None


class BareCallStrategy:
    """单个裸露的 {"name": ..., "arguments": ...} 对象"""

    name = "bare_call"

    def attempt(self, text: str) -> Optional[List[ToolCallDescriptor]]:
        for match in _BARE_CALL_PATTERN.finditer(text):
            data = _loads(extract_balanced_json(text, match.start()))
            if not isinstance(data, dict):
                continue
            if "arguments" not in data and "parameters" not in data:
                continue
            call = _normalize_call(data)
            if call is not None:
                return [call]
        return None


DEFAULT_STRATEGIES = (
    ToolCallsMarkerStrategy(),
    FencedBlockStrategy(),
    BareCallStrategy(),
)


def normalize_tool_calls(text: str, strategies=DEFAULT_STRATEGIES) -> List[ToolCallDescriptor]:
    """
    依次执行识别策略，返回第一个成功策略的结果

    Returns:
        工具调用列表；未识别到时返回空列表
    """
    if not text or "{" not in text:
        return []

    for strategy in strategies:
        try:
            calls = strategy.attempt(text)
        except (ValueError, TypeError, RecursionError) as e:
            log.debug(f"[TOOL_PARSER] {strategy.name} failed: {e}")
            continue
        if calls:
            log.info(
                f"[TOOL_PARSER] Detected {len(calls)} tool call(s) via {strategy.name}: "
                f"{', '.join(c.name for c in calls)}"
            )
            return calls

    return []
