"""
日志模块 - 支持彩色输出、结构化日志和请求追踪

颜色方案：
- DEBUG:    灰色 (dim) - 调试信息
- INFO:     白色 - 一般信息
- SUCCESS:  绿色 (green) - 成功操作
- WARNING:  橙色 - 警告（包括上游错误行）
- ERROR:    红色 - 错误
- CRITICAL: 红色加粗 - 严重错误
- PERF:     紫色 - 上游调用耗时

结构化日志：
- 设置 LOG_FORMAT=json 启用 JSON 格式输出
- 设置 LOG_FORMAT=text 使用传统文本格式（默认）

文件日志：
- LOG_DIR 下按天写入 app-YYYY-MM-DD.log
- ERROR / CRITICAL 额外写入 error-YYYY-MM-DD.log（附带异常堆栈）
"""

import contextvars
import json
import os
import sys
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI 颜色代码"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    WHITE = "\033[37m"
    BRIGHT_RED = "\033[91m"
    BRIGHT_GREEN = "\033[92m"
    BRIGHT_MAGENTA = "\033[95m"


def _supports_color() -> bool:
    """检测终端是否支持颜色"""
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled = _supports_color()

LOG_LEVELS = {
    "debug": 0,
    "info": 1,
    "success": 1,
    "perf": 2,
    "warning": 3,
    "error": 4,
    "critical": 5,
}

LOG_STYLES = {
    "debug":    (Colors.DIM + Colors.WHITE, "DEBUG"),
    "info":     (Colors.WHITE, "INFO"),
    "success":  (Colors.BRIGHT_GREEN, "SUCCESS"),
    "perf":     (Colors.BRIGHT_MAGENTA, "PERF"),
    "warning":  (Colors.YELLOW + Colors.BOLD, "WARNING"),
    "error":    (Colors.RED, "ERROR"),
    "critical": (Colors.BRIGHT_RED + Colors.BOLD, "CRITICAL"),
}

_file_lock = threading.Lock()
_file_writing_disabled = False

_structured_log_enabled = os.getenv("LOG_FORMAT", "text").lower() == "json"

# 请求上下文（asyncio 任务间隔离）
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def set_request_id(request_id: str) -> contextvars.Token:
    """设置当前请求的 request_id（用于日志追踪）"""
    return _request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    """获取当前请求的 request_id"""
    return _request_id_var.get()


def clear_request_id(token: Optional[contextvars.Token] = None):
    """清除当前请求的 request_id"""
    if token is not None:
        _request_id_var.reset(token)
    else:
        _request_id_var.set(None)


def _get_current_log_level() -> int:
    level = os.getenv("LOG_LEVEL", "info").lower()
    return LOG_LEVELS.get(level, LOG_LEVELS["info"])


def _get_log_dir() -> str:
    return os.getenv("LOG_DIR", "logs")


def _get_log_file_path(kind: str = "app") -> str:
    """按天命名：app-2026-01-01.log / error-2026-01-01.log"""
    date = datetime.now().strftime("%Y-%m-%d")
    return os.path.join(_get_log_dir(), f"{kind}-{date}.log")


def _write_to_file(message: str, kind: str = "app"):
    global _file_writing_disabled
    if _file_writing_disabled:
        return
    try:
        log_file = _get_log_file_path(kind)
        with _file_lock:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(message + "\n")
    except OSError as e:
        _file_writing_disabled = True
        print(f"Warning: Disabling log file writing: {e}", file=sys.stderr)


def _colorize(text: str, color: str) -> str:
    if not _color_enabled:
        return text
    return f"{color}{text}{Colors.RESET}"


def _format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()


def _log(
    level: str,
    message: str,
    tag: Optional[str] = None,
    exc: Optional[BaseException] = None,
    **extra,
):
    """
    核心日志函数，支持结构化日志

    Args:
        level: 日志级别
        message: 日志消息
        tag: 可选标签
        exc: 可选异常，ERROR 级别时堆栈写入 error 日志
        **extra: 额外的结构化字段（duration_ms, status, ...）
    """
    level = level.lower()
    if level not in LOG_LEVELS:
        print(f"Warning: Unknown log level '{level}'", file=sys.stderr)
        return

    if LOG_LEVELS[level] < _get_current_log_level():
        return

    request_id = get_request_id()
    if request_id and "request_id" not in extra:
        extra["request_id"] = request_id

    color, label = LOG_STYLES[level]
    now = datetime.now()
    timestamp = now.strftime("%H:%M:%S")

    log_entry: Dict[str, Any] = {
        "timestamp": now.isoformat(),
        "level": label,
        "message": message,
    }
    if tag:
        log_entry["tag"] = tag
    if extra:
        log_entry.update(extra)
    if exc is not None:
        log_entry["error"] = repr(exc)

    if tag:
        plain_entry = f"[{timestamp}] [{label}] [{tag}] {message}"
        colored_entry = (
            f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
            f"{_colorize(f'[{label}]', color)} "
            f"{_colorize(f'[{tag}]', Colors.BRIGHT_MAGENTA)} "
            f"{message}"
        )
    else:
        plain_entry = f"[{timestamp}] [{label}] {message}"
        colored_entry = (
            f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
            f"{_colorize(f'[{label}]', color)} "
            f"{message}"
        )

    if extra:
        extra_str = " ".join(f"{k}={v}" for k, v in extra.items())
        plain_entry += f" | {extra_str}"
        colored_entry += f" {Colors.DIM}| {extra_str}{Colors.RESET}"

    stream = sys.stderr if level in ("error", "critical") else sys.stdout
    if _structured_log_enabled:
        print(json.dumps(log_entry, ensure_ascii=False, default=str), file=stream)
    else:
        print(colored_entry if _color_enabled else plain_entry, file=stream)

    _write_to_file(plain_entry)
    if level in ("error", "critical"):
        if exc is not None:
            _write_to_file(
                f"{plain_entry}\n--- SYSTEM ERROR STACK ---\n{_format_exception(exc)}\n"
                f"--------------------------",
                kind="error",
            )
        else:
            _write_to_file(plain_entry, kind="error")


class Logger:
    """支持多种调用方式的日志器"""

    def __call__(self, level: str, message: str, tag: Optional[str] = None, **extra):
        _log(level, message, tag, **extra)

    def debug(self, message: str, tag: Optional[str] = None, **extra):
        _log("debug", message, tag, **extra)

    def info(self, message: str, tag: Optional[str] = None, **extra):
        _log("info", message, tag, **extra)

    def success(self, message: str, tag: Optional[str] = None, **extra):
        _log("success", message, tag, **extra)

    def warning(self, message: str, tag: Optional[str] = None, **extra):
        _log("warning", message, tag, **extra)

    def error(
        self,
        message: str,
        tag: Optional[str] = None,
        exc: Optional[BaseException] = None,
        **extra,
    ):
        _log("error", message, tag, exc=exc, **extra)

    def critical(
        self,
        message: str,
        tag: Optional[str] = None,
        exc: Optional[BaseException] = None,
        **extra,
    ):
        _log("critical", message, tag, exc=exc, **extra)

    def perf(self, message: str, tag: Optional[str] = None, **extra):
        """耗时日志"""
        _log("perf", message, tag, **extra)

    def get_current_level(self) -> str:
        current_level = _get_current_log_level()
        for name, value in LOG_LEVELS.items():
            if value == current_level:
                return name
        return "info"

    def is_structured_enabled(self) -> bool:
        return _structured_log_enabled

    @contextmanager
    def timer(self, operation: str, tag: Optional[str] = None, **extra):
        """
        计时器上下文管理器，用于测量上游调用耗时

        Usage:
            with log.timer("moss_login", tag="MOSS"):
                token = await client.login()
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.perf(
                f"{operation} completed in {duration_ms:.2f}ms",
                tag=tag,
                operation=operation,
                duration_ms=round(duration_ms, 2),
                **extra,
            )


log = Logger()

__all__ = [
    "log",
    "LOG_LEVELS",
    "Colors",
    "set_request_id",
    "get_request_id",
    "clear_request_id",
]
