"""
平衡 JSON 提取器

从自由文本（可能夹杂说明文字或代码块）中截取第一个语法完整的 JSON 对象。
计数花括号时跳过字符串字面量，并处理反斜杠转义，
因此 {"a": "{"} 这类字符串里的括号不会影响深度。
"""

from typing import Optional

__all__ = ["find_matching_brace", "extract_balanced_json"]


def find_matching_brace(text: str, start_pos: int) -> int:
    """
    查找 start_pos 处 '{' 对应的 '}' 位置

    Args:
        text: 待扫描文本
        start_pos: 左花括号位置

    Returns:
        右花括号位置，找不到（文本提前结束）返回 -1

    Example:
        >>> find_matching_brace('{"a": {"b": 1}}', 0)
        14
        >>> find_matching_brace('{"a": "{}"}', 0)
        10
    """
    if start_pos < 0 or start_pos >= len(text) or text[start_pos] != "{":
        return -1

    depth = 0
    in_string = False
    escape_next = False

    for i in range(start_pos, len(text)):
        char = text[i]

        if escape_next:
            escape_next = False
            continue

        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i

    return -1


def extract_balanced_json(text: str, start: int = 0) -> Optional[str]:
    """
    返回从 start 起第一个 '{' 到其匹配 '}' 的子串

    Example:
        >>> extract_balanced_json('call: {"name": "x", "arguments": {"q": "}"}} done')
        '{"name": "x", "arguments": {"q": "}"}}'
    """
    if not text:
        return None

    open_pos = text.find("{", max(start, 0))
    if open_pos == -1:
        return None

    close_pos = find_matching_brace(text, open_pos)
    if close_pos == -1:
        return None

    return text[open_pos:close_pos + 1]
