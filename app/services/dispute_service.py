"""
申诉服务：下单方发起申诉、管理员裁决申诉。

裁决流程（resolve_dispute）：
1. 校验登录与管理员权限
2. 校验裁决类型（此前不读写任何钱包数据）
3. 在 BEGIN IMMEDIATE 事务内读取申诉与预订并完成全部校验
4. 条件更新申诉状态 open -> resolved（并发裁决的线性化点）
5. 执行托管结算分录、更新预订状态
6. 提交事务后发送双方通知（失败不影响结算结果）

事务内任一步骤失败都会整体回滚，并以 LedgerInconsistencyError 上报，
日志中包含 dispute_id、booking_id、裁决类型和失败步骤，供人工核对。
"""

import logging
import sqlite3

from app.database import get_db
from app.models.schemas import (
    BOOKING_COMPLETED_PENDING,
    BOOKING_DISPUTED,
    BOOKING_IN_PROGRESS,
    DISPUTE_OPEN,
    PAYOUT_HELD,
    Dispute,
    Notification,
)
from app.services import records
from app.services.auth import RolePolicy, UserRolePolicy, require_admin
from app.services.errors import (
    AlreadyResolvedError,
    DuplicateDisputeError,
    ForbiddenError,
    InvalidBookingStateError,
    InvalidRequestError,
    LedgerInconsistencyError,
    StorageError,
    UnauthorizedError,
)
from app.services.escrow import (
    plan_settlement,
    post_entries,
    update_booking_for,
    validate_resolution,
)
from app.services.notification_service import (
    NotificationEmitter,
    build_dispute_resolved_notifications,
)
from app.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

DISPUTE_REASONS = ("partner_no_show", "poor_service", "bad_attitude", "other")
DISPUTABLE_STATUSES = (BOOKING_IN_PROGRESS, BOOKING_COMPLETED_PENDING)


class DisputeService:
    """申诉服务：发起、裁决。"""

    def __init__(
        self,
        role_policy: RolePolicy | None = None,
        emitter: NotificationEmitter | None = None,
    ):
        self.role_policy = role_policy or UserRolePolicy()
        self.emitter = emitter or NotificationEmitter()

    def authorize_admin(self, user_id: str | None) -> None:
        """
        Raises:
            UnauthorizedError: 未登录。
            ForbiddenError: 非管理员。
        """
        require_admin(user_id, self.role_policy)

    # ── 裁决 ──────────────────────────────────────────────

    def resolve_dispute(
        self,
        admin_id: str | None,
        dispute_id: str,
        resolution: str,
        resolution_amount: int | None = None,
        resolution_notes: str | None = None,
    ) -> dict:
        """
        管理员裁决申诉，托管资金在同一事务内结算一次。

        Returns:
            裁决结果字典（dispute_id, booking_id, resolution, resolved_at,
            refund_amount, partner_amount, platform_amount, booking_status）。

        Raises:
            UnauthorizedError, ForbiddenError, InvalidResolutionError,
            NotFoundError, AlreadyResolvedError, InvalidResolutionAmountError,
            LedgerInconsistencyError, StorageError
        """
        self.authorize_admin(admin_id)
        return self.settle_dispute(
            admin_id, dispute_id, resolution,
            resolution_amount=resolution_amount,
            resolution_notes=resolution_notes,
        )

    def settle_dispute(
        self,
        admin_id: str,
        dispute_id: str,
        resolution: str,
        resolution_amount: int | None = None,
        resolution_notes: str | None = None,
    ) -> dict:
        """
        执行裁决结算，不再校验管理员身份。

        调用方必须已通过 authorize_admin（路由层在解析请求体之前完成校验）。
        """
        validate_resolution(resolution)

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")

            dispute = records.get_dispute_by_id(db, dispute_id)
            if dispute.status != DISPUTE_OPEN:
                raise AlreadyResolvedError("申诉已被处理")
            booking = records.get_booking_by_id(db, dispute.booking_id)
            settlement = plan_settlement(booking, resolution, resolution_amount)
            booker_name = records.get_user_name(db, booking.user_id)

            step = "dispute_status"
            try:
                resolved_at = records.update_dispute_resolution(
                    db, dispute.id, resolution, admin_id,
                    amount=settlement.refund_amount, notes=resolution_notes,
                )
                step = "ledger"
                post_entries(WalletLedger(db), booking, settlement)
                step = "booking_status"
                update_booking_for(WalletLedger(db), booking, settlement)
                step = "commit"
                db.commit()
            except AlreadyResolvedError:
                raise
            except Exception as e:
                logger.error(
                    "申诉结算失败，事务回滚: dispute_id=%s, booking_id=%s, "
                    "resolution=%s, step=%s, error=%s",
                    dispute.id, booking.id, resolution, step, e,
                )
                raise LedgerInconsistencyError(
                    "结算失败，请人工核对账本",
                    dispute_id=dispute.id,
                    booking_id=booking.id,
                    resolution=resolution,
                    step=step,
                ) from e
        except sqlite3.Error as e:
            # 加锁或读取阶段失败，尚未写入任何数据
            db.rollback()
            logger.error(
                "申诉裁决数据库不可用: dispute_id=%s, resolution=%s, error=%s",
                dispute_id, resolution, e,
            )
            raise StorageError("数据库繁忙，请稍后重试") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "申诉已裁决: dispute_id=%s, booking_id=%s, resolution=%s, admin=%s, "
            "refund=%d, partner=%d, platform=%d",
            dispute.id, booking.id, resolution, admin_id,
            settlement.refund_amount, settlement.partner_amount, settlement.platform_amount,
        )

        notifications = build_dispute_resolved_notifications(
            dispute, booking, resolution,
            refund_amount=settlement.refund_amount,
            partner_amount=settlement.partner_amount,
            booker_name=booker_name,
        )
        self.emitter.emit_safely(notifications, context=f"dispute_id={dispute.id}")

        return {
            "dispute_id": dispute.id,
            "booking_id": booking.id,
            "resolution": resolution,
            "resolved_at": resolved_at,
            "refund_amount": settlement.refund_amount,
            "partner_amount": settlement.partner_amount,
            "platform_amount": settlement.platform_amount,
            "booking_status": settlement.booking_status,
        }

    # ── 发起申诉 ──────────────────────────────────────────

    def file_dispute(
        self,
        user_id: str | None,
        booking_id: str,
        reason: str,
        description: str,
    ) -> Dispute:
        """
        下单方对进行中或待确认完成的预订发起申诉：
        创建 open 申诉、预订转为 disputed 并暂停自动完成、通知合作方和管理员。

        Raises:
            UnauthorizedError: 未登录。
            InvalidRequestError: 原因无效或缺少描述。
            NotFoundError: 预订不存在。
            ForbiddenError: 非该预订的下单方。
            InvalidBookingStateError: 预订状态不可申诉或资金已结算。
            DuplicateDisputeError: 已有未处理的申诉。
            StorageError: 数据库不可用。
        """
        if not user_id:
            raise UnauthorizedError("未提供有效的认证令牌")
        if reason not in DISPUTE_REASONS:
            raise InvalidRequestError("申诉原因无效，可选值: " + ", ".join(DISPUTE_REASONS))
        if not description or not description.strip():
            raise InvalidRequestError("缺少申诉描述")

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            booking = records.get_booking_by_id(db, booking_id)
            if booking.user_id != user_id:
                raise ForbiddenError("只有下单方可以对该预订发起申诉")
            if records.find_open_dispute(db, booking_id):
                raise DuplicateDisputeError("该预订已有未处理的申诉")
            if booking.status not in DISPUTABLE_STATUSES or booking.payout_status != PAYOUT_HELD:
                raise InvalidBookingStateError(
                    f"当前预订状态不可申诉: {booking.status}"
                )

            dispute = records.insert_dispute(db, booking_id, user_id, reason, description.strip())
            if not records.transition_booking(
                db, booking_id, DISPUTABLE_STATUSES, BOOKING_DISPUTED, pause=True
            ):
                raise InvalidBookingStateError("预订状态已变化，请刷新后重试")

            booker_name = records.get_user_name(db, user_id)
            admin_ids = records.list_admin_ids(db)
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            logger.error("发起申诉数据库不可用: booking_id=%s, user_id=%s, error=%s", booking_id, user_id, e)
            raise StorageError("数据库繁忙，请稍后重试") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "申诉已创建: dispute_id=%s, booking_id=%s, user_id=%s, reason=%s",
            dispute.id, booking_id, user_id, reason,
        )

        data = {"bookingId": booking_id, "disputeId": dispute.id}
        notifications = [
            Notification(
                user_id=booking.partner_id,
                type="dispute",
                title="订单被申诉",
                message=f"用户 {booker_name or '用户'} 对订单「{booking.activity or booking_id}」发起了申诉，请等待管理员处理。",
                data=dict(data),
            )
        ]
        notifications.extend(
            Notification(
                user_id=admin_id,
                type="admin_dispute",
                title="有新的申诉待处理",
                message=f"用户 {booker_name or '用户'} 发起申诉，原因: {reason}",
                data=dict(data),
            )
            for admin_id in admin_ids
        )
        self.emitter.emit_safely(notifications, context=f"dispute_id={dispute.id}")
        return dispute

