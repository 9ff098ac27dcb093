"""
预订与申诉记录的数据访问。

所有函数接收调用方的连接，不自行提交，便于与账本操作放在同一事务内。
update_dispute_resolution 是申诉裁决字段的唯一写入点，使用
WHERE status = 'open' 条件更新作为并发裁决的线性化点。
"""

import json
import sqlite3
import uuid
from datetime import datetime

from app.models.schemas import (
    BOOKING_COMPLETED_PENDING,
    DISPUTE_OPEN,
    DISPUTE_RESOLVED,
    PAYOUT_HELD,
    RESOLUTION_REFUND_PARTIAL,
    Booking,
    Dispute,
)
from app.services.errors import AlreadyResolvedError, NotFoundError


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def new_id() -> str:
    """生成记录主键。"""
    return uuid.uuid4().hex


# ── 读取 ──────────────────────────────────────────────────


def get_dispute_by_id(db: sqlite3.Connection, dispute_id: str) -> Dispute:
    row = db.execute(
        "SELECT * FROM disputes WHERE id = ?", (dispute_id,)
    ).fetchone()
    if not row:
        raise NotFoundError("申诉不存在")
    return Dispute(**dict(row))


def get_booking_by_id(db: sqlite3.Connection, booking_id: str) -> Booking:
    row = db.execute(
        "SELECT * FROM bookings WHERE id = ?", (booking_id,)
    ).fetchone()
    if not row:
        raise NotFoundError("预订不存在")
    return Booking(**dict(row))


def find_open_dispute(db: sqlite3.Connection, booking_id: str) -> Dispute | None:
    row = db.execute(
        "SELECT * FROM disputes WHERE booking_id = ? AND status = ?",
        (booking_id, DISPUTE_OPEN),
    ).fetchone()
    return Dispute(**dict(row)) if row else None


def list_auto_completable_bookings(db: sqlite3.Connection, cutoff: str) -> list[Booking]:
    """待确认完成、未被申诉暂停、且最后更新早于 cutoff 的预订。"""
    rows = db.execute(
        """SELECT * FROM bookings
           WHERE status = ?
             AND dispute_paused_at IS NULL
             AND updated_at < ?
           ORDER BY updated_at ASC""",
        (BOOKING_COMPLETED_PENDING, cutoff),
    ).fetchall()
    return [Booking(**dict(r)) for r in rows]


def list_admin_ids(db: sqlite3.Connection) -> list[str]:
    rows = db.execute("SELECT id FROM users WHERE role = 'admin'").fetchall()
    return [r["id"] for r in rows]


def get_user_name(db: sqlite3.Connection, user_id: str) -> str | None:
    row = db.execute("SELECT name FROM users WHERE id = ?", (user_id,)).fetchone()
    return row["name"] if row else None


# ── 写入 ──────────────────────────────────────────────────


def insert_booking(
    db: sqlite3.Connection,
    booker_id: str,
    partner_id: str,
    activity: str,
    total_amount: int,
    partner_earning: int,
    platform_fee: int,
) -> Booking:
    now = _now()
    booking = Booking(
        id=new_id(),
        user_id=booker_id,
        partner_id=partner_id,
        activity=activity,
        total_amount=total_amount,
        partner_earning=partner_earning,
        platform_fee=platform_fee,
        payout_status=PAYOUT_HELD,
        created_at=now,
        updated_at=now,
    )
    db.execute(
        """INSERT INTO bookings
           (id, user_id, partner_id, activity, total_amount, partner_earning,
            platform_fee, status, payout_status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (booking.id, booker_id, partner_id, activity, total_amount,
         partner_earning, platform_fee, booking.status, booking.payout_status,
         now, now),
    )
    return booking


def insert_dispute(
    db: sqlite3.Connection,
    booking_id: str,
    user_id: str,
    reason: str,
    description: str,
) -> Dispute:
    dispute = Dispute(
        id=new_id(),
        booking_id=booking_id,
        user_id=user_id,
        reason=reason,
        description=description,
        created_at=_now(),
    )
    db.execute(
        """INSERT INTO disputes (id, booking_id, user_id, reason, description, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (dispute.id, booking_id, user_id, reason, description,
         DISPUTE_OPEN, dispute.created_at),
    )
    return dispute


def update_booking_status(
    db: sqlite3.Connection,
    booking_id: str,
    status: str,
    payout_status: str | None = None,
    clear_pause: bool = False,
    completed: bool = False,
    auto_completed: bool = False,
) -> None:
    """更新预订状态；payout_status 为 None 时保持不变。"""
    now = _now()
    sets = ["status = ?", "updated_at = ?"]
    params: list = [status, now]
    if payout_status is not None:
        sets.append("payout_status = ?")
        params.append(payout_status)
    if clear_pause:
        sets.append("dispute_paused_at = NULL")
    if completed:
        sets.append("completed_at = ?")
        params.append(now)
    if auto_completed:
        sets.append("auto_completed = 1")
    params.append(booking_id)

    cursor = db.execute(
        f"UPDATE bookings SET {', '.join(sets)} WHERE id = ?", params
    )
    if cursor.rowcount == 0:
        raise NotFoundError("预订不存在")


def transition_booking(
    db: sqlite3.Connection,
    booking_id: str,
    from_statuses: tuple[str, ...],
    to_status: str,
    pause: bool = False,
) -> bool:
    """
    预订状态比较并交换：仅当当前状态在 from_statuses 中时更新。

    Returns:
        True 表示更新成功，False 表示状态已被其他请求改变。
    """
    now = _now()
    placeholders = ", ".join("?" for _ in from_statuses)
    pause_sql = ", dispute_paused_at = ?" if pause else ""
    params: list = [to_status, now]
    if pause:
        params.append(now)
    params.extend([booking_id, *from_statuses])
    cursor = db.execute(
        f"""UPDATE bookings SET status = ?, updated_at = ?{pause_sql}
            WHERE id = ? AND status IN ({placeholders})""",
        params,
    )
    return cursor.rowcount == 1


def update_dispute_resolution(
    db: sqlite3.Connection,
    dispute_id: str,
    resolution: str,
    resolved_by: str,
    amount: int | None = None,
    notes: str | None = None,
) -> str:
    """
    写入裁决结果并将申诉置为 resolved。

    条件更新仅匹配 status = 'open' 的记录；影响行数为 0 说明申诉已被处理
    （或在读取之后被并发请求抢先处理）。

    Returns:
        resolved_at 时间戳。

    Raises:
        AlreadyResolvedError: 申诉不再处于 open 状态。
    """
    resolved_at = _now()
    cursor = db.execute(
        """UPDATE disputes
           SET status = ?, resolution = ?, resolution_amount = ?,
               resolution_notes = ?, resolved_by = ?, resolved_at = ?
           WHERE id = ? AND status = ?""",
        (
            DISPUTE_RESOLVED,
            resolution,
            amount if resolution == RESOLUTION_REFUND_PARTIAL else None,
            notes,
            resolved_by,
            resolved_at,
            dispute_id,
            DISPUTE_OPEN,
        ),
    )
    if cursor.rowcount == 0:
        raise AlreadyResolvedError("申诉已被处理")
    return resolved_at


def insert_notification_rows(db: sqlite3.Connection, notifications) -> int:
    """批量写入站内通知，返回写入条数。"""
    now = _now()
    db.executemany(
        """INSERT INTO notifications (user_id, type, title, message, data, is_read, created_at)
           VALUES (?, ?, ?, ?, ?, 0, ?)""",
        [
            (n.user_id, n.type, n.title, n.message,
             json.dumps(n.data, ensure_ascii=False), now)
            for n in notifications
        ],
    )
    return len(notifications)
