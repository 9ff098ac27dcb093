"""
通知服务：构建申诉相关的站内通知并写入 notifications 表。

通知在资金结算提交之后发送，写入失败只记录日志，不回滚已提交的结算。
推送通道（APNs / FCM 等）不在本服务范围内。
"""

import logging

from app.database import get_db
from app.models.schemas import (
    RESOLUTION_NO_ACTION,
    RESOLUTION_REFUND_FULL,
    RESOLUTION_REFUND_PARTIAL,
    RESOLUTION_RELEASE_TO_PARTNER,
    Booking,
    Dispute,
    Notification,
)
from app.services import records

logger = logging.getLogger(__name__)

DISPUTE_RESOLVED_TITLE = "申诉已处理"

# 裁决结果 -> (下单方文案, 合作方文案)
_RESOLUTION_MESSAGES = {
    RESOLUTION_REFUND_FULL: (
        "您的申诉已处理，订单金额 {refund} VND 已全额退回钱包。",
        "来自 {booker} 的申诉已处理，订单已取消。",
    ),
    RESOLUTION_REFUND_PARTIAL: (
        "您的申诉已处理，{refund} VND 已退回钱包。",
        "来自 {booker} 的申诉已处理（部分退款），您获得 {partner} VND。",
    ),
    RESOLUTION_RELEASE_TO_PARTNER: (
        "您的申诉已处理，订单款项已支付给合作方。",
        "来自 {booker} 的申诉已处理，{partner} VND 已计入您的钱包。",
    ),
    RESOLUTION_NO_ACTION: (
        "您的申诉已审核，未做资金处理，订单继续正常流转。",
        "来自 {booker} 的申诉已关闭，订单继续正常流转。",
    ),
}


def _fmt(amount: int) -> str:
    return f"{amount:,}"


def build_dispute_resolved_notifications(
    dispute: Dispute,
    booking: Booking,
    resolution: str,
    refund_amount: int = 0,
    partner_amount: int = 0,
    booker_name: str | None = None,
) -> list[Notification]:
    """按裁决类型生成下单方与合作方各一条通知。"""
    booker_tpl, partner_tpl = _RESOLUTION_MESSAGES[resolution]
    values = {
        "refund": _fmt(refund_amount),
        "partner": _fmt(partner_amount),
        "booker": booker_name or "用户",
    }
    data = {"disputeId": dispute.id, "bookingId": booking.id, "resolution": resolution}
    return [
        Notification(
            user_id=booking.user_id,
            type="dispute_resolved",
            title=DISPUTE_RESOLVED_TITLE,
            message=booker_tpl.format(**values),
            data=dict(data),
        ),
        Notification(
            user_id=booking.partner_id,
            type="dispute_resolved",
            title=DISPUTE_RESOLVED_TITLE,
            message=partner_tpl.format(**values),
            data=dict(data),
        ),
    ]


class NotificationEmitter:
    """站内通知发送器。"""

    def emit(self, notifications: list[Notification]) -> int:
        """写入通知，返回写入条数。"""
        if not notifications:
            return 0
        db = get_db()
        try:
            count = records.insert_notification_rows(db, notifications)
            db.commit()
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def emit_safely(self, notifications: list[Notification], context: str = "") -> int:
        """写入通知，失败时只记录日志（结算已提交，不能因通知失败回滚）。"""
        try:
            return self.emit(notifications)
        except Exception as e:
            logger.error("通知写入失败 (%s): %s", context, e)
            return 0
