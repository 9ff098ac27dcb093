"""
钱包账本：可用余额、托管余额的唯一写入入口。

每次余额变动都在同一连接上追加一条交易流水，二者随调用方事务一起提交或回滚。
交易流水只追加不修改，缓存余额必须始终等于流水按方向累加的结果（见 reconcile）。
"""

import logging
import sqlite3
from datetime import datetime

from app.models.schemas import TRANSACTION_TYPES, TX_ESCROW, Transaction, WalletAccount
from app.services.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    WalletNotFoundError,
)

logger = logging.getLogger(__name__)

# 账本字段名 -> users 表列名
BALANCE_FIELDS = {
    "available": "available_balance",
    "escrow": "escrow_balance",
}

CREDIT = "credit"
DEBIT = "debit"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _column(field: str) -> str:
    try:
        return BALANCE_FIELDS[field]
    except KeyError:
        raise ValueError(f"未知余额字段: {field}") from None


def _check_amount(amount) -> None:
    # bool 是 int 的子类，单独排除
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"金额必须为正整数: {amount!r}")


class WalletLedger:
    """绑定到单个数据库连接的账本操作，调用方负责 commit / rollback。"""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    def get_account(self, user_id: str) -> WalletAccount:
        """读取钱包账户。

        Raises:
            WalletNotFoundError: 用户不存在。
        """
        row = self.db.execute(
            "SELECT * FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if not row:
            raise WalletNotFoundError(f"钱包不存在: user_id={user_id}")
        return WalletAccount(**dict(row))

    def credit(
        self,
        user_id: str,
        field: str,
        amount: int,
        tx_type: str,
        related_id: str | None = None,
        description: str = "",
    ) -> int:
        """增加指定余额字段并记录流水，返回流水 ID。"""
        column = _column(field)
        _check_amount(amount)

        cursor = self.db.execute(
            f"UPDATE users SET {column} = {column} + ?, updated_at = ? WHERE id = ?",
            (amount, _now(), user_id),
        )
        if cursor.rowcount == 0:
            raise WalletNotFoundError(f"钱包不存在: user_id={user_id}")

        return self.record_transaction(
            user_id, tx_type, amount, related_id, description, field, CREDIT
        )

    def debit(
        self,
        user_id: str,
        field: str,
        amount: int,
        tx_type: str,
        related_id: str | None = None,
        description: str = "",
    ) -> int:
        """
        扣减指定余额字段并记录流水，返回流水 ID。

        使用条件更新（WHERE 余额 >= 金额），余额不足时不做任何修改。

        Raises:
            InsufficientFundsError: 扣减后余额将为负。
            WalletNotFoundError: 用户不存在。
        """
        column = _column(field)
        _check_amount(amount)

        cursor = self.db.execute(
            f"""UPDATE users SET {column} = {column} - ?, updated_at = ?
                WHERE id = ? AND {column} >= ?""",
            (amount, _now(), user_id, amount),
        )
        if cursor.rowcount == 0:
            account = self.get_account(user_id)
            raise InsufficientFundsError(
                f"余额不足: user_id={user_id}, field={field}, "
                f"balance={getattr(account, column)}, amount={amount}"
            )

        return self.record_transaction(
            user_id, tx_type, amount, related_id, description, field, DEBIT
        )

    def record_transaction(
        self,
        user_id: str,
        tx_type: str,
        amount: int,
        related_id: str | None,
        description: str,
        field: str,
        direction: str,
    ) -> int:
        """追加一条不可变交易流水（status 固定为 completed）。"""
        if tx_type not in TRANSACTION_TYPES:
            raise ValueError(f"未知交易类型: {tx_type}")
        if direction not in (CREDIT, DEBIT):
            raise ValueError(f"未知记账方向: {direction}")
        _column(field)
        _check_amount(amount)

        cursor = self.db.execute(
            """INSERT INTO transactions
               (user_id, type, direction, balance_field, amount, status,
                description, related_id, created_at)
               VALUES (?, ?, ?, ?, ?, 'completed', ?, ?, ?)""",
            (user_id, tx_type, direction, field, amount,
             description, related_id, _now()),
        )
        return cursor.lastrowid

    def add_spending(self, user_id: str, amount: int) -> None:
        """累加累计消费额（仅用于统计，不参与结算）。"""
        _check_amount(amount)
        cursor = self.db.execute(
            "UPDATE users SET total_spending = total_spending + ?, updated_at = ? WHERE id = ?",
            (amount, _now(), user_id),
        )
        if cursor.rowcount == 0:
            raise WalletNotFoundError(f"钱包不存在: user_id={user_id}")

    def hold_escrow(
        self, user_id: str, amount: int, booking_id: str, description: str = ""
    ) -> None:
        """下单托管：可用余额转入托管余额。"""
        self.debit(user_id, "available", amount, TX_ESCROW, booking_id, description)
        self.credit(user_id, "escrow", amount, TX_ESCROW, booking_id, description)

    def list_transactions(
        self, user_id: str, related_id: str | None = None
    ) -> list[Transaction]:
        """按时间顺序列出用户流水，可按关联预订过滤。"""
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if related_id is not None:
            sql += " AND related_id = ?"
            params.append(related_id)
        sql += " ORDER BY id ASC"
        rows = self.db.execute(sql, params).fetchall()
        return [Transaction(**dict(r)) for r in rows]

    def reconcile(self, user_id: str) -> dict:
        """
        用交易流水重算余额并与缓存余额对比。

        Returns:
            {"available": (缓存, 重算), "escrow": (缓存, 重算), "consistent": bool}
        """
        account = self.get_account(user_id)
        rows = self.db.execute(
            """SELECT balance_field,
                      COALESCE(SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END), 0) AS net
               FROM transactions WHERE user_id = ?
               GROUP BY balance_field""",
            (user_id,),
        ).fetchall()
        replayed = {"available": 0, "escrow": 0}
        for r in rows:
            replayed[r["balance_field"]] = r["net"]

        result = {
            "available": (account.available_balance, replayed["available"]),
            "escrow": (account.escrow_balance, replayed["escrow"]),
        }
        result["consistent"] = all(cached == calc for cached, calc in (
            result["available"], result["escrow"],
        ))
        if not result["consistent"]:
            logger.warning("钱包余额与流水不一致: user_id=%s, detail=%s", user_id, result)
        return result
