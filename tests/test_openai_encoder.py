"""
OpenAI 输出编码测试
"""

import json

from src.openai_encoder import OpenAIStreamEncoder, build_completion_response
from src.stream_aggregator import ContentDelta, Finish, ToolCallsDelta
from src.tool_call_parser import ToolCallDescriptor


def parse_frames(frames):
    """把 SSE 帧解析为 JSON 对象列表，[DONE] 保留为字符串"""
    parsed = []
    for frame in frames:
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = frame[len("data: "):-2]
        parsed.append(payload if payload == "[DONE]" else json.loads(payload))
    return parsed


class TestOpenAIStreamEncoder:
    """测试流式帧"""

    def test_content_frames(self):
        """首帧带 role，后续帧不带；所有帧共用同一个 id"""
        encoder = OpenAIStreamEncoder("gpt-4o-mini", completion_id="chatcmpl-1", created=123)
        frames = []
        for unit in [ContentDelta("Hel"), ContentDelta("lo"), Finish("stop")]:
            frames.extend(encoder.encode(unit))
        chunks = parse_frames(frames)

        assert chunks[0]["choices"][0]["delta"] == {"role": "assistant", "content": "Hel"}
        assert chunks[1]["choices"][0]["delta"] == {"content": "lo"}
        assert chunks[2]["choices"][0]["delta"] == {}
        assert chunks[2]["choices"][0]["finish_reason"] == "stop"
        assert chunks[3] == "[DONE]"

        for chunk in chunks[:3]:
            assert chunk["id"] == "chatcmpl-1"
            assert chunk["object"] == "chat.completion.chunk"
            assert chunk["created"] == 123
            assert chunk["model"] == "gpt-4o-mini"

    def test_empty_content_is_skipped(self):
        encoder = OpenAIStreamEncoder("m")
        assert encoder.encode(ContentDelta("")) == []

    def test_non_ascii_content_is_preserved(self):
        encoder = OpenAIStreamEncoder("m")
        (frame,) = encoder.encode(ContentDelta("你好"))
        assert "你好" in frame

    def test_tool_call_frames(self):
        """起始帧声明 id/name 且 arguments 为空，随后按固定大小分片"""
        call = ToolCallDescriptor(name="lookup", arguments='{"q":"x"}', id="call_1")
        encoder = OpenAIStreamEncoder("m", argument_chunk_size=4)
        frames = encoder.encode(ToolCallsDelta((call,))) + encoder.encode(Finish("tool_calls"))
        chunks = parse_frames(frames)

        start = chunks[0]["choices"][0]["delta"]
        assert start["role"] == "assistant"
        assert start["content"] is None
        assert start["tool_calls"] == [{
            "index": 0,
            "id": "call_1",
            "type": "function",
            "function": {"name": "lookup", "arguments": ""},
        }]

        argument_chunks = chunks[1:-2]
        pieces = [c["choices"][0]["delta"]["tool_calls"][0]["function"]["arguments"] for c in argument_chunks]
        assert pieces == ['{"q"', ':"x"', "}"]
        assert "".join(pieces) == '{"q":"x"}'
        assert all(c["choices"][0]["delta"]["tool_calls"][0]["index"] == 0 for c in argument_chunks)

        assert chunks[-2]["choices"][0]["finish_reason"] == "tool_calls"
        assert chunks[-1] == "[DONE]"

    def test_multiple_tool_calls_indexed(self):
        calls = (
            ToolCallDescriptor(name="a", arguments="{}", id="call_a"),
            ToolCallDescriptor(name="b", arguments="{}", id="call_b"),
        )
        encoder = OpenAIStreamEncoder("m")
        chunks = parse_frames(encoder.encode(ToolCallsDelta(calls)))

        # 每个调用: 起始帧 + 一个参数帧
        assert len(chunks) == 4
        first_start = chunks[0]["choices"][0]["delta"]["tool_calls"][0]
        second_start = chunks[2]["choices"][0]["delta"]["tool_calls"][0]

        assert (first_start["index"], first_start["function"]["name"]) == (0, "a")
        assert (second_start["index"], second_start["function"]["name"]) == (1, "b")
        assert chunks[3]["choices"][0]["delta"]["tool_calls"][0] == {"index": 1, "function": {"arguments": "{}"}}
        assert "role" not in chunks[2]["choices"][0]["delta"]

    def test_text_reply(self):
        """短路回复: 内容帧 + stop + [DONE]"""
        chunks = parse_frames(OpenAIStreamEncoder("m").encode_text_reply("会话已重置"))

        assert chunks[0]["choices"][0]["delta"]["content"] == "会话已重置"
        assert chunks[1]["choices"][0]["finish_reason"] == "stop"
        assert chunks[2] == "[DONE]"


class TestBuildCompletionResponse:
    """测试非流式响应组装"""

    def test_plain_content(self):
        response = build_completion_response(
            [ContentDelta("Hel"), ContentDelta("lo"), Finish("stop")],
            "gpt-4o",
            completion_id="chatcmpl-x",
            usage={"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
        )

        assert response["id"] == "chatcmpl-x"
        assert response["object"] == "chat.completion"
        assert response["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
        assert response["choices"][0]["finish_reason"] == "stop"
        assert response["usage"]["total_tokens"] == 3

    def test_tool_calls(self):
        call = ToolCallDescriptor(name="lookup", arguments='{"q":"x"}', id="call_1")
        response = build_completion_response([ToolCallsDelta((call,)), Finish("tool_calls")], "m")
        message = response["choices"][0]["message"]

        assert message["content"] is None
        assert message["tool_calls"] == [call.to_openai()]
        assert response["choices"][0]["finish_reason"] == "tool_calls"
        assert response["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
