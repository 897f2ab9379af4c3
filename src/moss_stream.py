"""
Moss 上游流解码器

上游生成接口返回按换行分隔的 JSON 流（NDJSON），但网络分块与行边界无关：
一行可能被切成多块，一块也可能包含多行，甚至在多字节 UTF-8 字符中间断开。

解码规则:
- 每块追加到缓冲区，按 '\\n' 切分，最后一个不完整片段留作下一块的前缀
- 去空白后为空的行直接跳过
- 每行独立 JSON 解析，解析失败只跳过该行，不中断整个流
"""

import codecs
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from log import log

__all__ = [
    "MossStreamDecoder",
    "iter_moss_records",
    "decode_moss_body",
    "extract_error_message",
    "extract_text_delta",
    "DEFAULT_ERROR_MESSAGE",
]

DEFAULT_ERROR_MESSAGE = "服务暂时不可用~~"


class MossStreamDecoder:
    """
    分块 NDJSON 解析器

    Usage:
        decoder = MossStreamDecoder()
        for chunk in chunks:
            for record in decoder.feed(chunk):
                ...
        for record in decoder.flush():
            ...
    """

    def __init__(self):
        self.buffer = ""
        self.skipped_lines = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[Dict[str, Any]]:
        """
        输入数据块，返回本块中所有完整行解析出的记录

        Args:
            chunk: 原始字节块或文本块

        Returns:
            解析出的记录列表（按到达顺序）
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []

        self.buffer += chunk
        *lines, self.buffer = self.buffer.split("\n")

        records = []
        for line in lines:
            record = self._parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> List[Dict[str, Any]]:
        """
        流结束时处理缓冲区中残留的最后一行（上游可能不以换行结尾）

        Returns:
            剩余的记录列表
        """
        tail = self.buffer + self._decoder.decode(b"", final=True)
        self.buffer = ""
        record = self._parse_line(tail)
        return [record] if record is not None else []

    def _parse_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None

        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            log.debug(f"[MOSS_STREAM] Skipping malformed line: {line[:100]}")
            return None

        if not isinstance(record, dict):
            self.skipped_lines += 1
            log.debug(f"[MOSS_STREAM] Skipping non-object line: {line[:100]}")
            return None

        return record


async def iter_moss_records(
    chunks: AsyncIterator[Union[bytes, str]],
) -> AsyncIterator[Dict[str, Any]]:
    """
    把原始字节流转换为记录流（保持到达顺序）

    Args:
        chunks: 上游响应的字节块异步迭代器，例如 response.aiter_bytes()

    Yields:
        每行解析出的 JSON 对象
    """
    decoder = MossStreamDecoder()
    async for chunk in chunks:
        for record in decoder.feed(chunk):
            yield record
    for record in decoder.flush():
        yield record

    if decoder.skipped_lines:
        log.warning(f"[MOSS_STREAM] Skipped {decoder.skipped_lines} malformed line(s)")


def _error_code(record: Dict[str, Any]) -> Optional[int]:
    code = record.get("code")
    if isinstance(code, bool):
        return None
    if isinstance(code, (int, float)):
        return int(code)
    if isinstance(code, str) and code.strip().lstrip("-").isdigit():
        return int(code.strip())
    return None


def extract_error_message(record: Dict[str, Any]) -> Optional[str]:
    """
    非零 code 的行表示上游错误，返回可读消息；正常行返回 None

    Example:
        >>> extract_error_message({"code": 500, "msg": "model offline"})
        'model offline'
        >>> extract_error_message({"code": 0, "msgItem": {"theContent": "hi"}}) is None
        True
    """
    code = _error_code(record)
    if not code:
        return None

    for key in ("msg", "message", "content"):
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return DEFAULT_ERROR_MESSAGE


def extract_text_delta(record: Dict[str, Any]) -> str:
    """取 msgItem.theContent 文本增量，缺失时返回空串"""
    item = record.get("msgItem")
    if not isinstance(item, dict):
        return ""
    content = item.get("theContent")
    return content if isinstance(content, str) else ""


def decode_moss_body(body: str) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """
    解析非流式响应体

    上游可能返回单个 JSON 对象（content / text / response 字段携带全文），
    也可能仍然返回 NDJSON；两种情况都转换为与流式相同的记录序列。

    Returns:
        (记录列表, usage)；上游未提供 usage 时为 None
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else None
        if extract_error_message(data) is not None or "msgItem" in data:
            return [data], usage
        for key in ("content", "text", "response"):
            value = data.get(key)
            if isinstance(value, str):
                return [{"msgItem": {"theContent": value}}], usage
        return [data], usage

    decoder = MossStreamDecoder()
    records = decoder.feed(body) + decoder.flush()
    usage = None
    for record in records:
        if isinstance(record.get("usage"), dict):
            usage = record["usage"]
    return records, usage
