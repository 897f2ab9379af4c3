"""
Configuration for the Moss -> OpenAI gateway.
Centralizes all configuration to avoid duplication across modules.

- 启动时从 YAML 配置文件加载一次到内存（文件可选）
- 优先级: 环境变量 > YAML 配置 > 默认值
- 修改配置文件后调用 reload_config() 重新加载
"""

import os
import re
from pathlib import Path
from typing import Any, List, Optional

import yaml

# 全局配置缓存
_config_cache: dict[str, Any] = {}
_config_initialized = False

DEFAULT_CONFIG_FILE = "config/gateway.yaml"

DEFAULT_MODELS = ["gpt-4o-mini", "gpt-4o", "gpt-4o-tmp"]

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}")


# ====================== 配置系统 ======================

def expand_env_vars(value: Any) -> Any:
    """
    递归展开环境变量

    支持语法：${VAR_NAME:default_value}

    Examples:
        >>> os.environ["TEST_VAR"] = "hello"
        >>> expand_env_vars("${TEST_VAR:world}")
        'hello'
        >>> expand_env_vars("${MISSING_VAR:world}")
        'world'
    """
    if isinstance(value, str):
        def replacer(match):
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(match.group(1), default_value)

        return _ENV_PATTERN.sub(replacer, value)
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: expand_env_vars(val) for key, val in value.items()}
    return value


def _load_config_file() -> dict[str, Any]:
    config_path = Path(os.getenv("GATEWAY_CONFIG_FILE", DEFAULT_CONFIG_FILE))
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ValueError(f"配置文件格式错误：顶层必须是字典 ({config_path})")

    return expand_env_vars(raw_config)


async def init_config():
    """初始化配置缓存（启动时调用一次，已初始化时跳过）"""
    if _config_initialized:
        return

    await reload_config()


async def reload_config():
    """重新加载配置（修改配置文件后调用）"""
    global _config_cache, _config_initialized

    _config_cache = _load_config_file()
    _config_initialized = True


def _get_cached_config(key: str, default: Any = None) -> Any:
    """从内存缓存获取配置（同步）"""
    return _config_cache.get(key, default)


async def get_config_value(key: str, default: Any = None, env_var: Optional[str] = None) -> Any:
    """Get configuration value with priority: ENV > config file > default."""
    if not _config_initialized:
        await init_config()

    # Priority 1: Environment variable
    if env_var and os.getenv(env_var):
        return os.getenv(env_var)

    # Priority 2: Memory cache
    value = _get_cached_config(key)
    if value is not None:
        return value

    return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


async def _get_int(key: str, default: int, env_var: str) -> int:
    value = await get_config_value(key, default, env_var)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


async def _get_float(key: str, default: float, env_var: str) -> float:
    value = await get_config_value(key, default, env_var)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# Server Configuration
async def get_server_host() -> str:
    """
    Get server host setting.

    Environment variable: HOST
    Default: 0.0.0.0
    """
    return str(await get_config_value("host", "0.0.0.0", "HOST"))


async def get_server_port() -> int:
    """
    Get server port setting.

    Environment variable: PORT
    Default: 8002
    """
    return await _get_int("port", 8002, "PORT")


async def get_proxy_config() -> Optional[str]:
    """Get outbound proxy configuration."""
    proxy_url = await get_config_value("proxy", env_var="PROXY")
    return proxy_url if proxy_url else None


# Upstream Configuration
async def get_moss_api_base() -> str:
    """
    Get upstream (Moss) API base URL.

    Environment variable: MOSS_API_BASE
    Default: https://jiangsu.codemoss.vip/luomacode-api
    """
    base = await get_config_value(
        "moss_api_base", "https://jiangsu.codemoss.vip/luomacode-api", "MOSS_API_BASE"
    )
    return str(base).rstrip("/")


async def get_moss_login_credentials() -> tuple[str, str]:
    """
    Get fixed login credentials for the shared-default account.

    Environment variables: MOSS_LOGIN_EMAIL / MOSS_LOGIN_PASSWORD
    """
    email = await get_config_value("moss_login_email", "", "MOSS_LOGIN_EMAIL")
    password = await get_config_value("moss_login_password", "", "MOSS_LOGIN_PASSWORD")
    return str(email), str(password)


async def get_moss_request_timeout() -> float:
    """
    Timeout (seconds) for login and conversation-creation calls.

    生成请求本身不设超时，由客户端断开来取消。

    Environment variable: MOSS_REQUEST_TIMEOUT
    Default: 15
    """
    return await _get_float("moss_request_timeout", 15.0, "MOSS_REQUEST_TIMEOUT")


async def get_shared_api_key() -> str:
    """
    Sentinel bearer value meaning "use the gateway's pooled login".

    Environment variable: SHARED_API_KEY
    Default: sk-shared-default
    """
    return str(await get_config_value("shared_api_key", "sk-shared-default", "SHARED_API_KEY"))


# TTL Store Configuration
async def get_session_ttl_seconds() -> float:
    """
    会话 ID 的空闲过期时间（秒）。

    Environment variable: SESSION_TTL_SECONDS
    Default: 7200 (2 小时)
    """
    return await _get_float("session_ttl_seconds", 7200.0, "SESSION_TTL_SECONDS")


async def get_token_ttl_seconds() -> float:
    """
    共享凭证的绝对过期时间（秒），读取不会续期。

    Environment variable: TOKEN_TTL_SECONDS
    Default: 86400 (24 小时)
    """
    return await _get_float("token_ttl_seconds", 86400.0, "TOKEN_TTL_SECONDS")


async def get_ttl_sweep_interval() -> float:
    """
    Environment variable: TTL_SWEEP_INTERVAL_SECONDS
    Default: 600
    """
    return await _get_float("ttl_sweep_interval_seconds", 600.0, "TTL_SWEEP_INTERVAL_SECONDS")


# Stream Translation Configuration
async def get_tool_argument_chunk_size() -> int:
    """
    工具调用 arguments 分片大小（字符数），仅影响传输分块。

    Environment variable: TOOL_ARGUMENT_CHUNK_SIZE
    Default: 64
    """
    return max(1, await _get_int("tool_argument_chunk_size", 64, "TOOL_ARGUMENT_CHUNK_SIZE"))


async def get_upstream_error_mode() -> str:
    """
    上游流中出现非零 code 行时的处理方式。

    - warn: 作为内联警告内容输出，继续读取（默认）
    - abort: 输出警告后停止读取上游流

    Environment variable: UPSTREAM_ERROR_MODE
    """
    mode = str(await get_config_value("upstream_error_mode", "warn", "UPSTREAM_ERROR_MODE")).lower()
    return mode if mode in ("warn", "abort") else "warn"


async def get_free_time_upgrade_enabled() -> bool:
    """
    夜间 (20:00-08:00 北京时间) 和周末自动升级模型。

    Environment variable: FREE_TIME_UPGRADE
    Default: True
    """
    return _as_bool(await get_config_value("free_time_upgrade", True, "FREE_TIME_UPGRADE"))


async def get_free_time_model() -> str:
    """
    Environment variable: FREE_TIME_MODEL
    Default: gpt-4o-2024-05-13
    """
    return str(await get_config_value("free_time_model", "gpt-4o-2024-05-13", "FREE_TIME_MODEL"))


async def get_available_models() -> List[str]:
    """
    Static list of model identifiers exposed by /v1/models.

    Environment variable: MODELS (comma-separated)
    Default: ["gpt-4o-mini", "gpt-4o", "gpt-4o-tmp"]
    """
    env_value = os.getenv("MODELS")
    if env_value:
        return [model.strip() for model in env_value.split(",") if model.strip()]

    models = await get_config_value("models")
    if models and isinstance(models, list):
        return [str(m) for m in models]

    return list(DEFAULT_MODELS)
