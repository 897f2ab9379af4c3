"""
Gateway OpenAI 格式端点

/v1/chat/completions: OpenAI 请求 -> Moss 上游 -> OpenAI 响应（流式 SSE 或完整 JSON）
"""

import asyncio
from contextlib import AsyncExitStack
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from config import (
    get_free_time_model,
    get_free_time_upgrade_enabled,
    get_tool_argument_chunk_size,
    get_upstream_error_mode,
)
from log import log

from ...models import ChatCompletionRequest
from ...moss_client import MossCompletionError, MossConversationError, MossLoginError
from ...moss_format import DEFAULT_MODEL, apply_free_time_upgrade, build_completion_payload, extract_prompt
from ...moss_stream import decode_moss_body, iter_moss_records
from ...openai_encoder import OpenAIStreamEncoder, build_completion_response
from ...stream_aggregator import ContentAggregator, ContentDelta, Finish
from ...utils import GatewayError, authenticate_bearer
from ..state import GatewayState, get_gateway_state

router = APIRouter()

__all__ = ["router"]

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _sse_response(frames: AsyncGenerator[str, None]) -> StreamingResponse:
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


async def _iter_frames(frames: List[str]) -> AsyncGenerator[str, None]:
    for frame in frames:
        yield frame


def _usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """上游 usage 缺失或字段不是数字时按 0 计"""
    usage = usage if isinstance(usage, dict) else {}
    result = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        try:
            result[key] = int(usage.get(key) or 0)
        except (TypeError, ValueError):
            log.debug(f"忽略无效的 usage 字段 {key}={usage.get(key)!r}", tag="GATEWAY")
            result[key] = 0
    return result


async def _read_body(request: Request) -> ChatCompletionRequest:
    try:
        body = await request.json()
    except ValueError as e:
        raise GatewayError(400, f"Invalid JSON: {e}", code="invalid_messages") from e

    if not isinstance(body, dict) or not isinstance(body.get("messages"), list) or not body["messages"]:
        raise GatewayError(400, "Messages array is required", code="invalid_messages")

    try:
        return ChatCompletionRequest.model_validate(body)
    except ValidationError as e:
        raise GatewayError(400, f"Invalid messages: {e.errors()[0].get('msg')}", code="invalid_messages") from e


async def _resolve_model(requested: Optional[str], gateway: GatewayState) -> str:
    model = requested or DEFAULT_MODEL
    if not await get_free_time_upgrade_enabled():
        return model

    upgraded, reason = apply_free_time_upgrade(model, await get_free_time_model(), gateway.now())
    if reason:
        log.info(f"[福利时间] 自动升级模型: {model} -> {upgraded}", tag="GATEWAY", reason=reason)
    return upgraded


def _reply(text: str, model: str, stream: bool):
    """短路回复（重新登录 / 重置会话），按调用方请求的模式输出完整回复"""
    if stream:
        encoder = OpenAIStreamEncoder(model)
        return _sse_response(_iter_frames(encoder.encode_text_reply(text)))
    return JSONResponse(content=build_completion_response([ContentDelta(text), Finish("stop")], model))


def _upstream_error(e: MossCompletionError) -> GatewayError:
    log.error(f"上游生成请求失败: {e}", tag="GATEWAY", status_code=e.status_code)
    return GatewayError(502, str(e), error_type="upstream_error", code="upstream_http_error")


@router.post("/v1/chat/completions")
@router.post("/chat/completions")  # 别名路由，兼容 Base URL 不带 /v1 的客户端
async def chat_completions(
    request: Request,
    token: str = Depends(authenticate_bearer),
    gateway: GatewayState = Depends(get_gateway_state),
):
    body = await _read_body(request)
    messages = body.message_dicts()
    stream = body.stream
    model = await _resolve_model(body.model, gateway)

    log.info(f"接收到聊天请求 [{model}]", tag="GATEWAY", stream=stream)

    try:
        decision = await gateway.orchestrator.prepare(token, messages, model)
    except MossLoginError as e:
        log.error(f"自动登录失败: {e}", tag="GATEWAY", exc=e)
        raise GatewayError(
            401, f"自动登录失败，请重试 error: {e}",
            error_type="authentication_error", code="login_failed",
        ) from e
    except MossConversationError as e:
        log.error(f"会话创建失败: {e}", tag="GATEWAY", exc=e)
        raise GatewayError(
            500, "创建会话失败，请重新发送请求 重置",
            error_type="conversation_error", code="create_conversation_failed",
        ) from e

    if decision.short_circuit:
        return _reply(decision.reply, model, stream)

    payload = build_completion_payload(extract_prompt(messages, body.tools), decision.conversation_id, model)
    error_mode = await get_upstream_error_mode()
    log.info(f"Proxying to Moss API: {decision.conversation_id}", tag="GATEWAY")

    if stream:
        return await _stream_completion(gateway, decision.credential, payload, model, error_mode)
    return await _buffered_completion(gateway, decision.credential, payload, model, error_mode)


async def _stream_completion(
    gateway: GatewayState,
    credential: str,
    payload: Dict[str, Any],
    model: str,
    error_mode: str,
) -> StreamingResponse:
    # 先建立上游连接：非 2xx 在这里还能以 502 返回
    stack = AsyncExitStack()
    try:
        response = await stack.enter_async_context(gateway.client.stream_completion(credential, payload))
    except MossCompletionError as e:
        await stack.aclose()
        raise _upstream_error(e) from e

    encoder = OpenAIStreamEncoder(model, argument_chunk_size=await get_tool_argument_chunk_size())
    aggregator = ContentAggregator(error_mode=error_mode)

    async def frames() -> AsyncGenerator[str, None]:
        try:
            try:
                async for record in iter_moss_records(response.aiter_bytes()):
                    for unit in aggregator.feed(record):
                        for frame in encoder.encode(unit):
                            yield frame
                    if aggregator.aborted:
                        log.warning("上游返回错误行，停止读取上游流", tag="GATEWAY")
                        break
            except httpx.HTTPError as e:
                # 响应头已发出，只能以内容帧告知客户端
                log.error(f"上游流读取中断: {e}", tag="GATEWAY", exc=e)
                for frame in encoder.encode(ContentDelta(f"上游连接中断: {e}")):
                    yield frame

            for unit in aggregator.finish():
                for frame in encoder.encode(unit):
                    yield frame
        except asyncio.CancelledError:
            log.info("客户端断开连接，关闭上游请求", tag="GATEWAY")
            raise
        finally:
            await stack.aclose()

    return _sse_response(frames())


async def _buffered_completion(
    gateway: GatewayState,
    credential: str,
    payload: Dict[str, Any],
    model: str,
    error_mode: str,
) -> JSONResponse:
    try:
        body_text = await gateway.client.complete(credential, payload)
    except MossCompletionError as e:
        raise _upstream_error(e) from e

    records, usage = decode_moss_body(body_text)
    aggregator = ContentAggregator(error_mode=error_mode)
    units = []
    for record in records:
        units.extend(aggregator.feed(record))
        if aggregator.aborted:
            break
    units.extend(aggregator.finish())

    return JSONResponse(content=build_completion_response(units, model, usage=_usage(usage)))
