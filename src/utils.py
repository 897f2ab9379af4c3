from typing import Any, Dict, Optional

from fastapi import Header, status
from fastapi.responses import JSONResponse

from log import log


class GatewayError(Exception):
    """
    可直接映射为 OpenAI 风格错误响应的异常

    web.py 中注册的异常处理器把它渲染为:
        {"error": {"message": ..., "type": ..., "code": ...}}
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        error_type: str = "invalid_request_error",
        code: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
        self.code = code
        super().__init__(message)


def error_body(
    message: str,
    error_type: str,
    code: Any = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message, "type": error_type, "code": code}
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


def error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, exc.error_type, exc.code),
    )


async def authenticate_bearer(
    authorization: Optional[str] = Header(None)
) -> str:
    """
    Bearer Token 提取

    网关本身不校验 token 的有效性：普通 token 原样转发给上游，
    共享哨兵 Key 由 SessionOrchestrator 换成网关自己的登录 token。

    使用示例:
        @router.post("/endpoint")
        async def endpoint(token: str = Depends(authenticate_bearer)):
            pass

    Raises:
        GatewayError: 缺少 Authorization 头或 token 为空时返回 401
    """
    token = ""
    if authorization:
        parts = authorization.strip().split(None, 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            token = parts[1].strip()

    if not token:
        log.warning("请求缺少Token", tag="AUTH")
        raise GatewayError(
            status.HTTP_401_UNAUTHORIZED,
            "Missing authorization token",
            error_type="authentication_error",
            code="missing_token",
        )

    return token
