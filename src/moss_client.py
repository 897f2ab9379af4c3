"""
Moss 上游客户端

三个外部协作接口:
    POST {base}/user/login              {email, password}          -> loginToken
    POST {base}/conversation            {title, assistantId, ...}  -> list[0].id
    POST {base}/v3/moss/completions     {prompt, options, apiKey}  -> JSON / NDJSON 流

登录和创建会话使用较短的超时；生成请求不设超时，由客户端断开取消。
非 2xx 响应一律抛出异常，不重试。
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from log import log

from .httpx_client import HttpxClientManager, http_client

__all__ = [
    "MossAPIError",
    "MossLoginError",
    "MossConversationError",
    "MossCompletionError",
    "MossClient",
]

DEFAULT_HEADERS = {
    "accept": "application/json, text/plain, */*",
    "accept-language": "zh-CN,zh;q=0.9",
    "cache-control": "no-cache",
    "content-type": "application/json",
    "pragma": "no-cache",
    "user-agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
    ),
}


class MossAPIError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: Any = None) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class MossLoginError(MossAPIError):
    """共享账号登录失败"""


class MossConversationError(MossAPIError):
    """创建会话失败"""


class MossCompletionError(MossAPIError):
    """生成接口返回非 2xx"""


def _excerpt(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class MossClient:
    """
    Moss 上游 API 客户端

    Usage:
        client = MossClient(base_url, email, password)
        token = await client.login()
        conversation_id = await client.create_conversation(token, "gpt-4o-mini")
        async with client.stream_completion(token, payload) as response:
            async for chunk in response.aiter_bytes():
                ...
    """

    def __init__(
        self,
        base_url: str,
        email: str = "",
        password: str = "",
        *,
        timeout: float = 15.0,
        http: Optional[HttpxClientManager] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self.http = http or http_client

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        if token:
            headers["token"] = token
        return headers

    async def _post_json(self, path: str, body: Dict[str, Any], token: Optional[str],
                         error_cls: type) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self.http.get_client(timeout=self.timeout) as client:
                response = await client.post(url, json=body, headers=self._headers(token))
        except httpx.RequestError as e:
            raise error_cls(f"{path} 请求失败: {e}") from e

        if not response.is_success:
            raise error_cls(
                f"{path} 返回 {response.status_code}: {_excerpt(response.text)}",
                status_code=response.status_code,
                detail=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise error_cls(f"{path} 返回非 JSON 响应: {_excerpt(response.text)}",
                            status_code=response.status_code) from e

        if not isinstance(data, dict):
            raise error_cls(f"{path} 返回数据格式错误: {_excerpt(response.text)}",
                            status_code=response.status_code, detail=data)
        return data

    async def login(self) -> str:
        """使用固定账号登录，返回 loginToken"""
        if not self.email or not self.password:
            raise MossLoginError("未配置登录账号 (MOSS_LOGIN_EMAIL / MOSS_LOGIN_PASSWORD)")

        with log.timer("moss_login", tag="MOSS"):
            data = await self._post_json(
                "/user/login",
                {"email": self.email, "password": self.password},
                None,
                MossLoginError,
            )

        token = data.get("loginToken")
        if data.get("code") != 0 or not token:
            raise MossLoginError(f"登录返回数据格式错误: {data}", detail=data)

        log.success("共享账号登录成功", tag="MOSS")
        return token

    async def create_conversation(self, token: str, payload: Dict[str, Any]) -> Any:
        """创建新会话，返回上游会话 ID"""
        with log.timer("moss_create_conversation", tag="MOSS"):
            data = await self._post_json("/conversation", payload, token, MossConversationError)

        items = data.get("list")
        if data.get("code") != 0 or not isinstance(items, list) or not items:
            raise MossConversationError(f"创建会话返回数据格式错误: {data}", detail=data)

        first = items[0]
        conversation_id = first.get("id") if isinstance(first, dict) else None
        if conversation_id is None:
            raise MossConversationError(f"创建会话返回数据缺少 id: {data}", detail=data)

        log.info(f"新会话创建成功: {conversation_id}", tag="MOSS")
        return conversation_id

    @asynccontextmanager
    async def stream_completion(
        self, token: str, payload: Dict[str, Any]
    ) -> AsyncGenerator[httpx.Response, None]:
        """
        发起流式生成请求

        上下文退出（包括客户端断开导致的取消）时关闭上游连接。

        Raises:
            MossCompletionError: 上游返回非 2xx
        """
        url = f"{self.base_url}/v3/moss/completions"
        async with self.http.get_streaming_client(timeout=None) as client:
            try:
                async with client.stream("POST", url, json=payload, headers=self._headers(token)) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise MossCompletionError(
                            f"生成接口返回 {response.status_code}: {_excerpt(body)}",
                            status_code=response.status_code,
                            detail=body,
                        )
                    yield response
            except httpx.RequestError as e:
                raise MossCompletionError(f"生成请求失败: {e}") from e

    async def complete(self, token: str, payload: Dict[str, Any]) -> str:
        """非流式生成，返回完整响应体文本"""
        url = f"{self.base_url}/v3/moss/completions"
        try:
            async with self.http.get_client(timeout=None) as client:
                response = await client.post(url, json=payload, headers=self._headers(token))
        except httpx.RequestError as e:
            raise MossCompletionError(f"生成请求失败: {e}") from e

        if not response.is_success:
            raise MossCompletionError(
                f"生成接口返回 {response.status_code}: {_excerpt(response.text)}",
                status_code=response.status_code,
                detail=response.text,
            )
        return response.text
