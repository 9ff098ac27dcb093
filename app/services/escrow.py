"""
托管资金结算状态机。

一笔预订的托管资金只能结算一次，结算路径由裁决类型决定：

    refund_full         托管全额退回下单方可用余额        -> cancelled / refunded
    refund_partial      部分退回下单方，剩余按原分成比例  -> completed / partial_refund
                        支付给合作方，差额为平台服务费
    release_to_partner  托管转为消费，合作方获得原定收入  -> completed / paid
    no_action           不动资金，恢复待确认完成并解除暂停 -> completed_pending

plan_settlement 为纯函数，只计算分录；apply_settlement 通过 WalletLedger
在调用方事务内执行分录并更新预订状态。
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from app.database import PLATFORM_ACCOUNT_ID
from app.models.schemas import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_COMPLETED_PENDING,
    PAYOUT_PAID,
    PAYOUT_PARTIAL_REFUND,
    PAYOUT_REFUNDED,
    RESOLUTION_NO_ACTION,
    RESOLUTION_REFUND_FULL,
    RESOLUTION_REFUND_PARTIAL,
    RESOLUTION_RELEASE_TO_PARTNER,
    TX_BOOKING_EARNING,
    TX_BOOKING_PAYMENT,
    TX_PLATFORM_FEE,
    TX_REFUND,
    VALID_RESOLUTIONS,
    Booking,
)
from app.services import records
from app.services.errors import InvalidResolutionAmountError, InvalidResolutionError
from app.services.wallet_ledger import CREDIT, DEBIT, WalletLedger


@dataclass
class LedgerEntry:
    user_id: str
    field: str  # available | escrow
    direction: str  # credit | debit
    amount: int
    tx_type: str
    description: str = ""

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == CREDIT else -self.amount


@dataclass
class Settlement:
    resolution: str
    booking_status: str
    payout_status: str | None  # None 表示保持不变
    entries: list[LedgerEntry] = field(default_factory=list)
    spending: int = 0  # 下单方累计消费增量
    clear_pause: bool = False
    refund_amount: int = 0
    partner_amount: int = 0
    platform_amount: int = 0

    def net_delta(self) -> int:
        """所有分录的带符号合计；资金守恒时恒为 0。"""
        return sum(e.signed_amount for e in self.entries)


def round_half_up(value: Decimal) -> int:
    """四舍五入到整数（0.5 向远离零方向进位）。"""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def partner_share(total_amount: int, partner_earning: int, partner_amount: int) -> int:
    """
    部分退款时合作方应得金额：按原始分成比例 partner_earning / total_amount
    折算剩余金额，保证平台服务费比例不变。
    """
    if total_amount <= 0:
        return 0
    return round_half_up(
        Decimal(partner_amount) * Decimal(partner_earning) / Decimal(total_amount)
    )


def validate_resolution(resolution) -> str:
    if resolution not in VALID_RESOLUTIONS:
        raise InvalidResolutionError(
            "裁决类型无效，可选值: " + ", ".join(VALID_RESOLUTIONS)
        )
    return resolution


def validate_refund_amount(refund_amount, total_amount: int) -> int:
    """
    部分退款金额必须为整数且 0 < 金额 <= 订单总额，不做截断。

    JSON 数字可能以 400000.0 的形式到达，整数值的浮点数按整数处理；
    其余非整数（含布尔值）一律拒绝。
    """
    if isinstance(refund_amount, float) and refund_amount.is_integer():
        refund_amount = int(refund_amount)
    if refund_amount is None or isinstance(refund_amount, bool) or not isinstance(refund_amount, int):
        raise InvalidResolutionAmountError("部分退款需提供整数退款金额")
    if refund_amount <= 0 or refund_amount > total_amount:
        raise InvalidResolutionAmountError(
            f"退款金额必须大于 0 且不超过订单总额 {total_amount}"
        )
    return refund_amount


def plan_settlement(booking: Booking, resolution: str, refund_amount: int | None = None) -> Settlement:
    """
    根据裁决类型计算结算分录。

    Raises:
        InvalidResolutionError: 裁决类型无效。
        InvalidResolutionAmountError: 部分退款金额无效。
    """
    validate_resolution(resolution)

    total = booking.total_amount
    booker = booking.user_id
    partner = booking.partner_id
    label = booking.activity or booking.id

    if resolution == RESOLUTION_REFUND_FULL:
        return Settlement(
            resolution=resolution,
            booking_status=BOOKING_CANCELLED,
            payout_status=PAYOUT_REFUNDED,
            entries=[
                LedgerEntry(booker, "escrow", DEBIT, total, TX_REFUND, f"全额退款释放托管: {label}"),
                LedgerEntry(booker, "available", CREDIT, total, TX_REFUND, f"全额退款: {label}"),
            ],
            refund_amount=total,
        )

    if resolution == RESOLUTION_REFUND_PARTIAL:
        refund = validate_refund_amount(refund_amount, total)
        remaining = total - refund
        partner_amount = partner_share(total, booking.partner_earning, remaining)
        platform_amount = remaining - partner_amount
        settlement = Settlement(
            resolution=resolution,
            booking_status=BOOKING_COMPLETED,
            payout_status=PAYOUT_PARTIAL_REFUND,
            entries=[
                LedgerEntry(booker, "escrow", DEBIT, total, TX_BOOKING_PAYMENT, f"部分退款结算托管: {label}"),
                LedgerEntry(booker, "available", CREDIT, refund, TX_REFUND, f"部分退款: {label}"),
            ],
            refund_amount=refund,
            partner_amount=partner_amount,
            platform_amount=platform_amount,
        )
        if partner_amount > 0:
            settlement.entries.append(
                LedgerEntry(partner, "available", CREDIT, partner_amount, TX_BOOKING_EARNING,
                            f"部分退款后服务收入: {label}")
            )
        if platform_amount > 0:
            settlement.entries.append(
                LedgerEntry(PLATFORM_ACCOUNT_ID, "available", CREDIT, platform_amount, TX_PLATFORM_FEE,
                            f"平台服务费: {label}")
            )
        return settlement

    if resolution == RESOLUTION_RELEASE_TO_PARTNER:
        settlement = Settlement(
            resolution=resolution,
            booking_status=BOOKING_COMPLETED,
            payout_status=PAYOUT_PAID,
            entries=[
                LedgerEntry(booker, "escrow", DEBIT, total, TX_BOOKING_PAYMENT, f"服务付款: {label}"),
            ],
            spending=total,
            partner_amount=booking.partner_earning,
            platform_amount=total - booking.partner_earning,
        )
        if booking.partner_earning > 0:
            settlement.entries.append(
                LedgerEntry(partner, "available", CREDIT, booking.partner_earning, TX_BOOKING_EARNING,
                            f"服务收入: {label}")
            )
        if settlement.platform_amount > 0:
            settlement.entries.append(
                LedgerEntry(PLATFORM_ACCOUNT_ID, "available", CREDIT, settlement.platform_amount,
                            TX_PLATFORM_FEE, f"平台服务费: {label}")
            )
        return settlement

    # no_action
    return Settlement(
        resolution=RESOLUTION_NO_ACTION,
        booking_status=BOOKING_COMPLETED_PENDING,
        payout_status=None,
        clear_pause=True,
    )


def post_entries(ledger: WalletLedger, booking: Booking, settlement: Settlement) -> None:
    """执行结算分录并累加下单方消费额。"""
    for entry in settlement.entries:
        if entry.direction == DEBIT:
            ledger.debit(entry.user_id, entry.field, entry.amount, entry.tx_type,
                         booking.id, entry.description)
        else:
            ledger.credit(entry.user_id, entry.field, entry.amount, entry.tx_type,
                          booking.id, entry.description)

    if settlement.spending > 0:
        ledger.add_spending(booking.user_id, settlement.spending)


def update_booking_for(
    ledger: WalletLedger,
    booking: Booking,
    settlement: Settlement,
    auto_completed: bool = False,
) -> None:
    records.update_booking_status(
        ledger.db,
        booking.id,
        settlement.booking_status,
        payout_status=settlement.payout_status,
        clear_pause=settlement.clear_pause,
        completed=settlement.booking_status == BOOKING_COMPLETED,
        auto_completed=auto_completed,
    )


def apply_settlement(
    ledger: WalletLedger,
    booking: Booking,
    settlement: Settlement,
    auto_completed: bool = False,
) -> None:
    """在调用方事务内执行分录、累计消费和预订状态更新。"""
    post_entries(ledger, booking, settlement)
    update_booking_for(ledger, booking, settlement, auto_completed=auto_completed)
