"""
申诉接口路由：

- POST /resolve-dispute  管理员裁决申诉
- POST /create-dispute   下单方发起申诉
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.models.schemas import (
    RESOLUTION_NO_ACTION,
    RESOLUTION_REFUND_FULL,
    RESOLUTION_REFUND_PARTIAL,
    RESOLUTION_RELEASE_TO_PARTNER,
)
from app.routes.common import error_response, parse_body
from app.services.auth import get_request_user_id
from app.services.dispute_service import DisputeService
from app.services.errors import EscrowError

logger = logging.getLogger(__name__)

router = APIRouter()

RESOLUTION_LABELS = {
    RESOLUTION_REFUND_FULL: "全额退款",
    RESOLUTION_REFUND_PARTIAL: "部分退款",
    RESOLUTION_RELEASE_TO_PARTNER: "放款给合作方",
    RESOLUTION_NO_ACTION: "不做资金处理",
}


class ResolveDisputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dispute_id: str = Field(alias="disputeId", min_length=1)
    # 类型与取值由结算层校验（非法裁决返回 invalid_resolution，非整数金额返回 invalid_amount）
    resolution: Any = None
    resolution_amount: Any = Field(default=None, alias="resolutionAmount")
    resolution_notes: Optional[str] = Field(default=None, alias="resolutionNotes")


class CreateDisputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId", min_length=1)
    reason: str
    description: str


def get_dispute_service() -> DisputeService:
    return DisputeService()


@router.post("/resolve-dispute")
async def resolve_dispute(request: Request):
    """
    管理员裁决申诉。

    流程：校验令牌与管理员身份 → 校验请求体 → 事务内结算 → 通知双方

    管理员身份只在这里校验一次（须在解析请求体之前），之后调用
    settle_dispute 结算。resolutionAmount 接受整数或整数值的浮点数（如 400000.0）。
    """
    svc = get_dispute_service()
    admin_id = get_request_user_id(request)
    try:
        svc.authorize_admin(admin_id)
        body = await parse_body(request, ResolveDisputeRequest)
        result = svc.settle_dispute(
            admin_id,
            body.dispute_id,
            body.resolution,
            resolution_amount=body.resolution_amount,
            resolution_notes=body.resolution_notes,
        )
    except EscrowError as e:
        logger.info("裁决申诉失败: admin=%s, code=%s, error=%s", admin_id, e.code, e)
        return error_response(e)

    return {
        "success": True,
        "resolution": result["resolution"],
        "message": f"申诉已处理：{RESOLUTION_LABELS[result['resolution']]}",
    }


@router.post("/create-dispute")
async def create_dispute(request: Request):
    """下单方对进行中或待确认的预订发起申诉。"""
    svc = get_dispute_service()
    user_id = get_request_user_id(request)
    try:
        body = await parse_body(request, CreateDisputeRequest)
        dispute = svc.file_dispute(user_id, body.booking_id, body.reason, body.description)
    except EscrowError as e:
        return error_response(e)

    return JSONResponse(content={
        "success": True,
        "disputeId": dispute.id,
        "message": "申诉已提交，请等待管理员处理",
    })
