"""
预订生命周期服务：下单托管、接单、完成确认、取消、超时自动完成。

状态流转：
    pending -> accepted -> (in_progress) -> completed_pending -> completed
    pending | accepted -> cancelled
    in_progress | completed_pending -> disputed（见 DisputeService）

下单时总价从下单方可用余额转入托管余额；确认完成时托管转为消费，
合作方获得 partner_earning，平台服务费记入平台收入账户；取消时全额退回。
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal

from app.database import get_db
from app.models.schemas import (
    BOOKING_ACCEPTED,
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_COMPLETED_PENDING,
    BOOKING_IN_PROGRESS,
    BOOKING_PENDING,
    RESOLUTION_REFUND_FULL,
    RESOLUTION_RELEASE_TO_PARTNER,
    Booking,
    Notification,
)
from app.services import records
from app.services.errors import (
    ForbiddenError,
    InvalidAmountError,
    InvalidBookingStateError,
    InvalidRequestError,
    StorageError,
    UnauthorizedError,
)
from app.services.escrow import (
    apply_settlement,
    plan_settlement,
    round_half_up,
)
from app.services.notification_service import NotificationEmitter
from app.services.platform_config import get_auto_complete_hours, get_platform_fee_rate
from app.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

CONFIRMABLE_STATUSES = (BOOKING_COMPLETED_PENDING, BOOKING_IN_PROGRESS)
FINISHABLE_STATUSES = (BOOKING_ACCEPTED, BOOKING_IN_PROGRESS)
CANCELLABLE_STATUSES = (BOOKING_PENDING, BOOKING_ACCEPTED)


def split_amount(total_amount: int, fee_rate: Decimal) -> tuple[int, int]:
    """按服务费率拆分订单总额，返回 (partner_earning, platform_fee)。"""
    platform_fee = round_half_up(Decimal(total_amount) * fee_rate)
    return total_amount - platform_fee, platform_fee


def _storage_error(action: str, context: str, e: sqlite3.Error) -> StorageError:
    """记录加锁或读写失败，转换为可重试的业务异常。"""
    logger.error("%s失败，数据库不可用: %s, error=%s", action, context, e)
    return StorageError("数据库繁忙，请稍后重试")


class BookingService:
    """预订生命周期服务。"""

    def __init__(self, emitter: NotificationEmitter | None = None):
        self.emitter = emitter or NotificationEmitter()

    # ── 下单 ──────────────────────────────────────────────

    def create_booking(
        self,
        booker_id: str | None,
        partner_id: str,
        activity: str,
        total_amount: int,
    ) -> Booking:
        """
        创建预订并将总价转入下单方托管余额。

        Raises:
            UnauthorizedError: 未登录。
            InvalidRequestError: 预订自己或缺少合作方。
            InvalidAmountError: 金额不是正整数。
            WalletNotFoundError: 下单方或合作方不存在。
            InsufficientFundsError: 可用余额不足。
            StorageError: 数据库不可用。
        """
        if not booker_id:
            raise UnauthorizedError("未提供有效的认证令牌")
        if not partner_id:
            raise InvalidRequestError("缺少合作方")
        if partner_id == booker_id:
            raise InvalidRequestError("不能预订自己的服务")
        if isinstance(total_amount, bool) or not isinstance(total_amount, int) or total_amount <= 0:
            raise InvalidAmountError(f"订单金额必须为正整数: {total_amount!r}")

        partner_earning, platform_fee = split_amount(total_amount, get_platform_fee_rate())

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            ledger = WalletLedger(db)
            ledger.get_account(booker_id)
            ledger.get_account(partner_id)
            booking = records.insert_booking(
                db, booker_id, partner_id, activity, total_amount,
                partner_earning, platform_fee,
            )
            ledger.hold_escrow(
                booker_id, total_amount, booking.id,
                f"预订托管: {activity or booking.id}",
            )
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error("下单", f"booker={booker_id}, partner={partner_id}", e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "预订已创建: booking_id=%s, booker=%s, partner=%s, total=%d, fee=%d",
            booking.id, booker_id, partner_id, total_amount, platform_fee,
        )
        self.emitter.emit_safely(
            [Notification(
                user_id=partner_id,
                type="booking",
                title="您有新的预订",
                message=f"新预订「{activity or booking.id}」，预计收入 {partner_earning:,} VND。",
                data={"bookingId": booking.id},
            )],
            context=f"booking_id={booking.id}",
        )
        return booking

    # ── 状态流转 ──────────────────────────────────────────

    def _transition(
        self,
        caller_id: str | None,
        booking_id: str,
        role: str,
        from_statuses: tuple[str, ...],
        to_status: str,
    ) -> Booking:
        """不涉及资金的状态流转：校验调用方身份后做比较并交换。"""
        if not caller_id:
            raise UnauthorizedError("未提供有效的认证令牌")

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            booking = records.get_booking_by_id(db, booking_id)
            owner = booking.partner_id if role == "partner" else booking.user_id
            if owner != caller_id:
                raise ForbiddenError("无权操作该预订")
            if not records.transition_booking(db, booking_id, from_statuses, to_status):
                raise InvalidBookingStateError(
                    f"当前预订状态不允许该操作: {booking.status}"
                )
            booking = records.get_booking_by_id(db, booking_id)
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error("预订状态更新", f"booking_id={booking_id}", e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("预订状态更新: booking_id=%s, status=%s", booking_id, to_status)
        return booking

    def accept_booking(self, partner_id: str | None, booking_id: str) -> Booking:
        """合作方接单：pending -> accepted。"""
        return self._transition(
            partner_id, booking_id, "partner", (BOOKING_PENDING,), BOOKING_ACCEPTED
        )

    def mark_finished(self, partner_id: str | None, booking_id: str) -> Booking:
        """合作方标记服务完成，等待下单方确认：accepted | in_progress -> completed_pending。"""
        booking = self._transition(
            partner_id, booking_id, "partner", FINISHABLE_STATUSES, BOOKING_COMPLETED_PENDING
        )
        self.emitter.emit_safely(
            [Notification(
                user_id=booking.user_id,
                type="booking",
                title="服务已完成，请确认",
                message=f"订单「{booking.activity or booking.id}」已由合作方标记完成，请确认或发起申诉。",
                data={"bookingId": booking.id},
            )],
            context=f"booking_id={booking.id}",
        )
        return booking

    def confirm_completion(self, booker_id: str | None, booking_id: str) -> Booking:
        """
        下单方确认完成，托管资金放款给合作方。

        Raises:
            UnauthorizedError, NotFoundError, ForbiddenError, InvalidBookingStateError
        """
        if not booker_id:
            raise UnauthorizedError("未提供有效的认证令牌")

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            booking = records.get_booking_by_id(db, booking_id)
            if booking.user_id != booker_id:
                raise ForbiddenError("只有下单方可以确认完成")
            settlement = plan_settlement(booking, RESOLUTION_RELEASE_TO_PARTNER)
            if not records.transition_booking(
                db, booking_id, CONFIRMABLE_STATUSES, BOOKING_COMPLETED
            ):
                raise InvalidBookingStateError(
                    f"当前预订状态不可确认完成: {booking.status}"
                )
            apply_settlement(WalletLedger(db), booking, settlement)
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error("确认完成", f"booking_id={booking_id}", e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "预订已确认完成并放款: booking_id=%s, partner=%s, earning=%d, fee=%d",
            booking_id, booking.partner_id, settlement.partner_amount, settlement.platform_amount,
        )
        self.emitter.emit_safely(
            [Notification(
                user_id=booking.partner_id,
                type="booking_completed",
                title="订单已完成",
                message=f"订单「{booking.activity or booking.id}」已完成，{settlement.partner_amount:,} VND 已计入您的钱包。",
                data={"bookingId": booking.id},
            )],
            context=f"booking_id={booking.id}",
        )
        return load_booking(booking_id)

    def complete_booking(self, caller_id: str | None, booking_id: str) -> Booking:
        """
        完成预订的统一入口：合作方调用时标记完成待确认，下单方调用时确认放款。
        已完成的预订直接返回当前状态。
        """
        if not caller_id:
            raise UnauthorizedError("未提供有效的认证令牌")

        booking = load_booking(booking_id)
        if caller_id not in (booking.user_id, booking.partner_id):
            raise ForbiddenError("无权操作该预订")
        if booking.status == BOOKING_COMPLETED:
            return booking
        if caller_id == booking.partner_id and booking.status in FINISHABLE_STATUSES:
            return self.mark_finished(caller_id, booking_id)
        if caller_id == booking.user_id:
            return self.confirm_completion(caller_id, booking_id)
        raise InvalidBookingStateError(f"当前预订状态不允许该操作: {booking.status}")

    def cancel_booking(self, booker_id: str | None, booking_id: str) -> Booking:
        """下单方取消尚未开始的预订，托管全额退回。"""
        if not booker_id:
            raise UnauthorizedError("未提供有效的认证令牌")

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            booking = records.get_booking_by_id(db, booking_id)
            if booking.user_id != booker_id:
                raise ForbiddenError("只有下单方可以取消预订")
            settlement = plan_settlement(booking, RESOLUTION_REFUND_FULL)
            if not records.transition_booking(
                db, booking_id, CANCELLABLE_STATUSES, BOOKING_CANCELLED
            ):
                raise InvalidBookingStateError(
                    f"当前预订状态不可取消: {booking.status}"
                )
            apply_settlement(WalletLedger(db), booking, settlement)
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error("取消预订", f"booking_id={booking_id}", e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("预订已取消并退款: booking_id=%s, refund=%d", booking_id, settlement.refund_amount)
        self.emitter.emit_safely(
            [Notification(
                user_id=booking.partner_id,
                type="booking_cancelled",
                title="预订已取消",
                message=f"订单「{booking.activity or booking.id}」已被下单方取消。",
                data={"bookingId": booking.id},
            )],
            context=f"booking_id={booking.id}",
        )
        return load_booking(booking_id)

    # ── 自动完成 ──────────────────────────────────────────

    def auto_complete_bookings(self, now: datetime | None = None) -> dict:
        """
        待确认完成超过 auto_complete_hours 且未被申诉暂停的预订自动放款。

        每笔预订独立事务，单笔失败只记录日志，不影响其他预订。

        Returns:
            {"processed": 成功数, "failed": 失败数}
        """
        now = now or datetime.now()
        cutoff = (now - timedelta(hours=get_auto_complete_hours())).strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            candidates = records.list_auto_completable_bookings(db, cutoff)
        finally:
            db.close()

        processed = failed = 0
        for candidate in candidates:
            try:
                if self._auto_complete_one(candidate.id):
                    processed += 1
            except Exception as e:
                failed += 1
                logger.error("自动完成失败: booking_id=%s, error=%s", candidate.id, e)

        if candidates:
            logger.info("自动完成任务结束: processed=%d, failed=%d", processed, failed)
        return {"processed": processed, "failed": failed}

    def _auto_complete_one(self, booking_id: str) -> bool:
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            booking = records.get_booking_by_id(db, booking_id)
            # 扫描之后可能已被确认、申诉
            if booking.status != BOOKING_COMPLETED_PENDING or booking.dispute_paused_at:
                db.rollback()
                return False
            settlement = plan_settlement(booking, RESOLUTION_RELEASE_TO_PARTNER)
            apply_settlement(WalletLedger(db), booking, settlement, auto_completed=True)
            db.commit()
        except sqlite3.Error as e:
            db.rollback()
            raise _storage_error("自动完成", f"booking_id={booking_id}", e) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        label = booking.activity or booking.id
        self.emitter.emit_safely(
            [
                Notification(
                    user_id=booking.user_id,
                    type="booking_completed",
                    title="订单已自动完成",
                    message=f"订单「{label}」待确认超时，已自动完成，款项已支付给合作方。",
                    data={"bookingId": booking.id},
                ),
                Notification(
                    user_id=booking.partner_id,
                    type="booking_completed",
                    title="已收到自动结算款项",
                    message=f"订单「{label}」已自动完成，{settlement.partner_amount:,} VND 已计入您的钱包。",
                    data={"bookingId": booking.id},
                ),
            ],
            context=f"booking_id={booking.id}",
        )
        return True


def load_booking(booking_id: str) -> Booking:
    """在独立连接上读取预订最新状态。"""
    db = get_db()
    try:
        return records.get_booking_by_id(db, booking_id)
    finally:
        db.close()
