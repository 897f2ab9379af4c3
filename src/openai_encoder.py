"""
OpenAI 响应编码器

把聚合器产出的单元 (ContentDelta / ToolCallsDelta / Finish) 编码为
OpenAI chat.completion.chunk SSE 帧，或在非流式模式下组装为 chat.completion 对象。

流式帧顺序:
    内容帧 (首帧带 role) ... → [工具调用起始帧 → 参数分片帧 ...] → 结束帧 → data: [DONE]
同一响应内所有帧共用一个 id 和 created。
"""

import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .stream_aggregator import ContentDelta, Finish, ToolCallsDelta
from .tool_call_parser import ToolCallDescriptor

__all__ = [
    "generate_completion_id",
    "OpenAIStreamEncoder",
    "build_completion_response",
]


def generate_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def _slice(text: str, size: int) -> List[str]:
    if not text:
        return [""]
    return [text[i:i + size] for i in range(0, len(text), size)]


class OpenAIStreamEncoder:
    """SSE Chunk 构建器"""

    def __init__(
        self,
        model: str,
        completion_id: Optional[str] = None,
        created: Optional[int] = None,
        argument_chunk_size: int = 64,
    ):
        self.completion_id = completion_id or generate_completion_id()
        self.model = model
        self.created = created or int(time.time())
        self.argument_chunk_size = max(1, int(argument_chunk_size))
        self._role_sent = False

    def _frame(self, delta: Dict[str, Any], finish_reason: Optional[str] = None,
               usage: Optional[Dict[str, Any]] = None) -> str:
        chunk = {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        }
        if usage:
            chunk["usage"] = usage
        return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"

    def _with_role(self, delta: Dict[str, Any]) -> Dict[str, Any]:
        if self._role_sent:
            return delta
        self._role_sent = True
        return {"role": "assistant", **delta}

    def build_content_chunk(self, content: str) -> str:
        """构建内容 chunk"""
        return self._frame(self._with_role({"content": content}))

    def build_tool_call_chunks(self, calls: Iterable[ToolCallDescriptor]) -> List[str]:
        """
        每个调用一个起始帧 (id / type / name，arguments 为空)，
        随后按 argument_chunk_size 切分参数文本逐帧下发
        """
        frames = []
        for index, call in enumerate(calls):
            start = {
                "content": None,
                "tool_calls": [{
                    "index": index,
                    "id": call.id,
                    "type": call.type,
                    "function": {"name": call.name, "arguments": ""},
                }],
            }
            frames.append(self._frame(self._with_role(start)))

            for piece in _slice(call.arguments, self.argument_chunk_size):
                frames.append(self._frame({
                    "tool_calls": [{"index": index, "function": {"arguments": piece}}],
                }))
        return frames

    def build_finish_chunk(self, finish_reason: str, usage: Optional[Dict[str, Any]] = None) -> str:
        """构建结束 chunk"""
        return self._frame(self._with_role({}), finish_reason=finish_reason, usage=usage)

    @staticmethod
    def build_done_marker() -> str:
        """构建结束标记"""
        return "data: [DONE]\n\n"

    def encode(self, unit) -> List[str]:
        """编码单个聚合单元；Finish 之后追加 [DONE]"""
        if isinstance(unit, ContentDelta):
            return [self.build_content_chunk(unit.text)] if unit.text else []
        if isinstance(unit, ToolCallsDelta):
            return self.build_tool_call_chunks(unit.calls)
        if isinstance(unit, Finish):
            return [self.build_finish_chunk(unit.reason), self.build_done_marker()]
        raise TypeError(f"Unknown stream unit: {type(unit).__name__}")

    def encode_text_reply(self, text: str) -> List[str]:
        """完整的纯文本回复（用于快捷指令回复和流中错误）"""
        return self.encode(ContentDelta(text)) + self.encode(Finish("stop"))


def build_completion_response(
    units: Iterable[Any],
    model: str,
    completion_id: Optional[str] = None,
    created: Optional[int] = None,
    usage: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    非流式模式: 把全部单元合并为一个 chat.completion 对象
    """
    content_parts: List[str] = []
    tool_calls: List[ToolCallDescriptor] = []
    finish_reason = "stop"

    for unit in units:
        if isinstance(unit, ContentDelta):
            content_parts.append(unit.text)
        elif isinstance(unit, ToolCallsDelta):
            tool_calls.extend(unit.calls)
        elif isinstance(unit, Finish):
            finish_reason = unit.reason

    content = "".join(content_parts)
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["content"] = content or None
        message["tool_calls"] = [call.to_openai() for call in tool_calls]

    response = {
        "id": completion_id or generate_completion_id(),
        "object": "chat.completion",
        "created": created or int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": message,
            "finish_reason": finish_reason,
        }],
    }
    response["usage"] = usage or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    return response
