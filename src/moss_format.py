"""
OpenAI 请求 -> Moss 上游请求 转换

- 模型变体: 模型名带 -tmp 后缀时 assistantId = "2"，否则 "1"；发往上游时去掉后缀
- prompt: 取最后一条 user 消息；带 tools 时在前面附加工具使用说明，
  最后一次 assistant 之后的 tool 消息作为工具结果一并带上
- 免费时段（北京时间 20:00-08:00 及周末）自动升级模型
"""

import json
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

__all__ = [
    "DEFAULT_MODEL",
    "VARIANT_SUFFIX",
    "get_assistant_id",
    "strip_variant_suffix",
    "generate_nonce",
    "message_text",
    "last_user_text",
    "extract_prompt",
    "build_completion_payload",
    "build_conversation_payload",
    "free_time_reason",
    "apply_free_time_upgrade",
]

DEFAULT_MODEL = "gpt-4o-mini"
VARIANT_SUFFIX = "-tmp"

BEIJING_TZ = timezone(timedelta(hours=8), name="Asia/Shanghai")


def get_assistant_id(model: Optional[str]) -> str:
    """Assistant variant selector"""
    return "2" if model and VARIANT_SUFFIX in model else "1"


def strip_variant_suffix(model: Optional[str]) -> str:
    name = (model or "").replace(VARIANT_SUFFIX, "")
    return name or DEFAULT_MODEL


def generate_nonce() -> str:
    return f"hp_{random.randint(0, 99999999)}"


def message_text(content: Any) -> str:
    """
    提取消息文本

    content 可以是字符串，也可以是 OpenAI 多模态的 part 列表（只保留 text 部分）
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type", "text") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return str(content)


def last_user_text(messages: List[Dict[str, Any]]) -> Optional[str]:
    for message in reversed(messages or []):
        if isinstance(message, dict) and message.get("role") == "user":
            return message_text(message.get("content"))
    return None


def _render_tools_instruction(tools: List[Dict[str, Any]]) -> str:
    lines = [
        "You can call the following tools. To call tools, reply with ONLY a JSON object "
        'in this exact format and nothing else: {"tool_calls": [{"name": "<tool name>", '
        '"arguments": {<arguments object>}}]}',
        "",
        "Available tools:",
    ]
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        function = tool.get("function") if isinstance(tool.get("function"), dict) else tool
        name = function.get("name")
        if not name:
            continue
        description = function.get("description") or ""
        parameters = json.dumps(function.get("parameters") or {}, ensure_ascii=False)
        lines.append(f"- {name}: {description}".rstrip())
        lines.append(f"  parameters: {parameters}")
    return "\n".join(lines)


def _trailing_tool_results(messages: List[Dict[str, Any]]) -> List[str]:
    results = []
    for message in reversed(messages or []):
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role == "assistant":
            break
        if role == "tool":
            call_id = message.get("tool_call_id") or message.get("name") or "tool"
            results.append(f"[{call_id}] {message_text(message.get('content'))}")
    results.reverse()
    return results


def extract_prompt(messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> str:
    """
    组装发往上游的 prompt（上游通过 conversationId 维护多轮上下文，因此只发送最新一轮）

    Example:
        >>> extract_prompt([{"role": "user", "content": "hi"}])
        'hi'
    """
    sections = []
    if tools:
        sections.append(_render_tools_instruction(tools))

    tool_results = _trailing_tool_results(messages)
    if tool_results:
        sections.append("Tool results:\n" + "\n".join(tool_results))

    # tool 结果之后没有新的 user 消息时，不重复发送上一轮的问题
    last_role = messages[-1].get("role") if messages and isinstance(messages[-1], dict) else None
    if not (tool_results and last_role == "tool"):
        sections.append(last_user_text(messages) or "")

    return "\n\n".join(section for section in sections if section)


def build_completion_payload(
    prompt: str,
    conversation_id: Any,
    model: Optional[str],
    nonce: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "prompt": prompt,
        "options": {
            "openCot": False,
            "appId": None,
            "nonce": nonce or generate_nonce(),
            "conversationId": conversation_id,
            "openaiVersion": strip_variant_suffix(model),
            "datasetIds": [],
            "voice": False,
            "image": False,
            "assistantId": get_assistant_id(model),
            "version": "2",
        },
        "apiKey": None,
    }


def build_conversation_payload(model: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    timestamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {
        "title": f"hat_{timestamp}_问题",
        "assistantId": get_assistant_id(model),
        "version": "2",
    }


def free_time_reason(now: Optional[datetime] = None) -> Optional[str]:
    """
    判断是否处于免费时段

    Returns:
        "weekend" / "night"；非免费时段返回 None
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    beijing = now.astimezone(BEIJING_TZ)

    if beijing.weekday() >= 5:
        return "weekend"
    if beijing.hour >= 20 or beijing.hour < 8:
        return "night"
    return None


def apply_free_time_upgrade(
    model: str,
    free_model: str,
    now: Optional[datetime] = None,
) -> Tuple[str, Optional[str]]:
    """
    免费时段把请求模型替换为 free_model

    Returns:
        (最终模型, 升级原因)；未升级时原因为 None
    """
    reason = free_time_reason(now)
    if reason is None or model == free_model:
        return model, None
    return free_model, reason
