"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
金额统一为整数（最小货币单位，VND）。
"""

from dataclasses import dataclass, field
from typing import Optional


# ── 状态常量 ──────────────────────────────────────────────

# 预订状态
BOOKING_PENDING = "pending"
BOOKING_ACCEPTED = "accepted"
BOOKING_IN_PROGRESS = "in_progress"
BOOKING_COMPLETED_PENDING = "completed_pending"
BOOKING_DISPUTED = "disputed"
BOOKING_COMPLETED = "completed"
BOOKING_CANCELLED = "cancelled"

# 资金结算状态
PAYOUT_HELD = "held"
PAYOUT_PAID = "paid"
PAYOUT_REFUNDED = "refunded"
PAYOUT_PARTIAL_REFUND = "partial_refund"

# 申诉状态
DISPUTE_OPEN = "open"
DISPUTE_RESOLVED = "resolved"

# 申诉裁决
RESOLUTION_REFUND_FULL = "refund_full"
RESOLUTION_REFUND_PARTIAL = "refund_partial"
RESOLUTION_RELEASE_TO_PARTNER = "release_to_partner"
RESOLUTION_NO_ACTION = "no_action"

VALID_RESOLUTIONS = (
    RESOLUTION_REFUND_FULL,
    RESOLUTION_REFUND_PARTIAL,
    RESOLUTION_RELEASE_TO_PARTNER,
    RESOLUTION_NO_ACTION,
)

# 交易流水类型
TX_REFUND = "refund"
TX_BOOKING_PAYMENT = "booking_payment"
TX_BOOKING_EARNING = "booking_earning"
TX_TOPUP = "topup"
TX_WITHDRAW = "withdraw"
TX_ESCROW = "escrow"
TX_PLATFORM_FEE = "platform_fee"

TRANSACTION_TYPES = (
    TX_REFUND,
    TX_BOOKING_PAYMENT,
    TX_BOOKING_EARNING,
    TX_TOPUP,
    TX_WITHDRAW,
    TX_ESCROW,
    TX_PLATFORM_FEE,
)


@dataclass
class WalletAccount:
    id: str
    name: Optional[str] = None
    role: str = "user"
    available_balance: int = 0
    escrow_balance: int = 0
    total_spending: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Transaction:
    id: int
    user_id: str
    type: str
    direction: str  # credit | debit
    balance_field: str  # available | escrow
    amount: int
    status: str = "completed"
    description: Optional[str] = None
    related_id: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Booking:
    id: str
    user_id: str  # 下单方（booker）
    partner_id: str
    total_amount: int
    partner_earning: int
    platform_fee: int
    activity: Optional[str] = None
    status: str = BOOKING_PENDING
    payout_status: str = PAYOUT_HELD
    dispute_paused_at: Optional[str] = None
    auto_completed: int = 0
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Dispute:
    id: str
    booking_id: str
    user_id: str  # 申诉发起人
    reason: str
    description: Optional[str] = None
    status: str = DISPUTE_OPEN
    resolution: Optional[str] = None
    resolution_amount: Optional[int] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Notification:
    user_id: str
    type: str
    title: str
    message: str
    data: dict = field(default_factory=dict)
