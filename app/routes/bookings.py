"""
预订与钱包接口路由：

- POST /create-booking    下单并托管
- POST /accept-booking    合作方接单
- POST /complete-booking  合作方标记完成 / 下单方确认放款
- POST /cancel-booking    下单方取消并退款
- GET  /wallet            当前用户钱包余额（只读）
"""

import logging
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from app.database import get_db
from app.routes.common import error_response, parse_body
from app.services.auth import get_request_user_id
from app.services.booking_service import BookingService
from app.services.errors import EscrowError, UnauthorizedError
from app.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateBookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    partner_id: str = Field(alias="partnerId", min_length=1)
    activity: str = ""
    # 金额类型由服务层校验（非正整数返回 invalid_amount）
    total_amount: Any = Field(alias="totalAmount")


class BookingIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId", min_length=1)


def get_booking_service() -> BookingService:
    return BookingService()


def _booking_payload(booking) -> dict:
    return {
        "success": True,
        "bookingId": booking.id,
        "status": booking.status,
        "payoutStatus": booking.payout_status,
    }


@router.post("/create-booking")
async def create_booking(request: Request):
    user_id = get_request_user_id(request)
    try:
        body = await parse_body(request, CreateBookingRequest)
        booking = get_booking_service().create_booking(
            user_id, body.partner_id, body.activity, body.total_amount
        )
    except EscrowError as e:
        return error_response(e)

    payload = _booking_payload(booking)
    payload.update(
        totalAmount=booking.total_amount,
        partnerEarning=booking.partner_earning,
        platformFee=booking.platform_fee,
    )
    return payload


@router.post("/accept-booking")
async def accept_booking(request: Request):
    user_id = get_request_user_id(request)
    try:
        body = await parse_body(request, BookingIdRequest)
        booking = get_booking_service().accept_booking(user_id, body.booking_id)
    except EscrowError as e:
        return error_response(e)
    return _booking_payload(booking)


@router.post("/complete-booking")
async def complete_booking(request: Request):
    """
    合作方调用：accepted / in_progress -> completed_pending，等待下单方确认；
    下单方调用：确认完成，托管放款给合作方。
    """
    user_id = get_request_user_id(request)
    try:
        body = await parse_body(request, BookingIdRequest)
        booking = get_booking_service().complete_booking(user_id, body.booking_id)
    except EscrowError as e:
        return error_response(e)
    return _booking_payload(booking)


@router.post("/cancel-booking")
async def cancel_booking(request: Request):
    user_id = get_request_user_id(request)
    try:
        body = await parse_body(request, BookingIdRequest)
        booking = get_booking_service().cancel_booking(user_id, body.booking_id)
    except EscrowError as e:
        return error_response(e)
    return _booking_payload(booking)


@router.get("/wallet")
async def wallet(request: Request):
    """当前用户的可用余额、托管余额和累计消费。"""
    user_id = get_request_user_id(request)
    try:
        if not user_id:
            raise UnauthorizedError("未提供有效的认证令牌")
        db = get_db()
        try:
            account = WalletLedger(db).get_account(user_id)
        finally:
            db.close()
    except EscrowError as e:
        return error_response(e)

    return {
        "userId": account.id,
        "availableBalance": account.available_balance,
        "escrowBalance": account.escrow_balance,
        "totalSpending": account.total_spending,
    }
