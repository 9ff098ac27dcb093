"""
管理后台路由：平台配置。

- GET  /admin/settings   当前服务费率与自动完成时长
- POST /admin/settings   修改服务费率、自动完成时长（仅管理员）
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from app.routes.common import error_response, parse_body
from app.services.auth import get_request_user_id, require_admin
from app.services.errors import EscrowError, InvalidRequestError
from app.services.platform_config import (
    PlatformConfigError,
    get_auto_complete_hours,
    get_platform_fee_rate,
    update_platform_settings,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


class UpdateSettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform_fee_rate: Optional[Decimal] = Field(default=None, alias="platformFeeRate")
    auto_complete_hours: Optional[int] = Field(default=None, alias="autoCompleteHours")


def _settings_payload() -> dict:
    return {
        "platformFeeRate": float(get_platform_fee_rate()),
        "autoCompleteHours": get_auto_complete_hours(),
    }


@router.get("/settings")
async def settings_page(request: Request):
    """当前平台配置。"""
    try:
        require_admin(get_request_user_id(request))
    except EscrowError as e:
        return error_response(e)
    return _settings_payload()


@router.post("/settings")
async def update_settings(request: Request):
    """修改平台配置，只对之后创建的预订和之后的自动完成扫描生效。"""
    admin_id = get_request_user_id(request)
    try:
        require_admin(admin_id)
        body = await parse_body(request, UpdateSettingsRequest)
        try:
            update_platform_settings(
                platform_fee_rate=body.platform_fee_rate,
                auto_complete_hours=body.auto_complete_hours,
            )
        except PlatformConfigError as e:
            raise InvalidRequestError(str(e)) from e
    except EscrowError as e:
        logger.info("修改平台配置失败: admin=%s, code=%s, error=%s", admin_id, e.code, e)
        return error_response(e)

    logger.info("管理员修改平台配置: admin=%s", admin_id)
    return {"success": True, **_settings_payload()}
