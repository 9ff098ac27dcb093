"""
路由公共工具：读取 JSON 请求体、校验请求模型、业务异常转换为 JSON 响应。
"""

import json
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from app.services.errors import EscrowError, InvalidRequestError

logger = logging.getLogger(__name__)


def error_response(e: EscrowError) -> JSONResponse:
    """业务异常 -> {"error": ..., "code": ...}。"""
    return JSONResponse(
        status_code=e.status_code,
        content={"error": str(e), "code": e.code},
    )


async def parse_body(request: Request, model: type[BaseModel]) -> BaseModel:
    """
    读取 JSON 请求体并按模型校验。

    Raises:
        InvalidRequestError: 请求体不是合法 JSON 对象或缺少必填字段。
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("请求体必须是合法的 JSON") from None
    if not isinstance(payload, dict):
        raise InvalidRequestError("请求体必须是 JSON 对象")

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) for err in e.errors()
        )
        raise InvalidRequestError(f"请求参数无效: {fields}") from None
