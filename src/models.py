"""
OpenAI Chat Completions 请求类型

只校验网关实际依赖的字段；其余字段（temperature 等）原样保留，不做处理。
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = None
    stream: bool = False
    tools: Optional[List[Dict[str, Any]]] = None

    def message_dicts(self) -> List[Dict[str, Any]]:
        return [message.model_dump(exclude_none=True) for message in self.messages]
