"""申诉服务单元测试：裁决结算、并发、失败回滚、发起申诉。"""

import os
import sqlite3
import tempfile
import threading

import pytest

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="dispute_service_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-dispute-service"

import app.database as _db_mod
from app.database import PLATFORM_ACCOUNT_ID, get_db, init_db
from app.models.schemas import TX_TOPUP
from app.services.auth import RolePolicy
from app.services.booking_service import BookingService
from app.services.dispute_service import DisputeService
from app.services.errors import (
    AlreadyResolvedError,
    DuplicateDisputeError,
    ForbiddenError,
    InvalidBookingStateError,
    InvalidRequestError,
    InvalidResolutionAmountError,
    InvalidResolutionError,
    LedgerInconsistencyError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
)
from app.services.notification_service import NotificationEmitter
from app.services.wallet_ledger import WalletLedger


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS notifications;
        DROP TABLE IF EXISTS disputes;
        DROP TABLE IF EXISTS transactions;
        DROP TABLE IF EXISTS bookings;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS system_config;
    """)
    conn.close()
    init_db()
    yield


class StaticRolePolicy(RolePolicy):
    def __init__(self, admins=("admin",)):
        self.admins = set(admins)

    def is_admin(self, user_id):
        return user_id in self.admins


class CountingRolePolicy(StaticRolePolicy):
    def __init__(self, admins=("admin",)):
        super().__init__(admins)
        self.calls = 0

    def is_admin(self, user_id):
        self.calls += 1
        return super().is_admin(user_id)


class WriteLock:
    """在另一连接上持有 BEGIN IMMEDIATE 写锁，模拟并发写入方长时间占用数据库。"""

    def __init__(self):
        self.conn = sqlite3.connect(_tmp.name, isolation_level=None)
        self.conn.execute("BEGIN IMMEDIATE")

    def release(self):
        self.conn.execute("ROLLBACK")
        self.conn.close()


class FailingEmitter(NotificationEmitter):
    def __init__(self):
        self.calls = 0

    def emit(self, notifications):
        self.calls += 1
        raise RuntimeError("通知服务不可用")


TOTAL = 1_000_000  # 默认费率 0.3 -> earning 700,000, fee 300,000


def _create_users(balance=TOTAL):
    db = get_db()
    try:
        db.executemany(
            "INSERT INTO users (id, name, role) VALUES (?, ?, ?)",
            [("booker", "小明", "user"), ("partner", "小红", "partner"), ("admin", "管理员", "admin")],
        )
        WalletLedger(db).credit("booker", "available", balance, TX_TOPUP, description="充值")
        db.commit()
    finally:
        db.close()


def _open_dispute(total=TOTAL, status="completed_pending") -> tuple[str, str]:
    """下单托管 -> 推进到指定状态 -> 发起申诉，返回 (booking_id, dispute_id)。"""
    _create_users(total)
    booking = BookingService().create_booking("booker", "partner", "咖啡陪聊", total)
    db = get_db()
    try:
        db.execute("UPDATE bookings SET status = ? WHERE id = ?", (status, booking.id))
        db.commit()
    finally:
        db.close()
    dispute = DisputeService(role_policy=StaticRolePolicy()).file_dispute(
        "booker", booking.id, "poor_service", "服务态度差"
    )
    return booking.id, dispute.id


def _balances() -> dict:
    db = get_db()
    try:
        rows = db.execute(
            "SELECT id, available_balance, escrow_balance, total_spending FROM users"
        ).fetchall()
        return {r["id"]: (r["available_balance"], r["escrow_balance"], r["total_spending"]) for r in rows}
    finally:
        db.close()


def _row(table, row_id):
    db = get_db()
    try:
        return dict(db.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone())
    finally:
        db.close()


def _count(table, where="1=1", params=()):
    db = get_db()
    try:
        return db.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()["cnt"]
    finally:
        db.close()


def _money_sum(balances) -> int:
    return sum(avail + escrow for avail, escrow, _ in balances.values())


@pytest.fixture
def svc():
    return DisputeService(role_policy=StaticRolePolicy())


# ── 权限 ──────────────────────────────────────────────────


class TestAuthorization:
    """登录与管理员权限校验。"""

    def test_unauthenticated(self, svc):
        booking_id, dispute_id = _open_dispute()
        with pytest.raises(UnauthorizedError):
            svc.resolve_dispute(None, dispute_id, "refund_full")

    def test_non_admin_forbidden(self, svc):
        booking_id, dispute_id = _open_dispute()
        before = _balances()
        with pytest.raises(ForbiddenError):
            svc.resolve_dispute("booker", dispute_id, "refund_full")
        assert _balances() == before
        assert _row("disputes", dispute_id)["status"] == "open"

    def test_user_role_policy_reads_users_table(self):
        _create_users()
        svc = DisputeService()
        svc.authorize_admin("admin")
        with pytest.raises(ForbiddenError):
            svc.authorize_admin("partner")

    def test_role_checked_once_per_resolution(self):
        booking_id, dispute_id = _open_dispute()
        policy = CountingRolePolicy()
        DisputeService(role_policy=policy).resolve_dispute("admin", dispute_id, "refund_full")
        assert policy.calls == 1

    def test_settle_dispute_skips_role_check(self):
        """settle_dispute 供已完成授权的调用方使用，不再查询角色。"""
        booking_id, dispute_id = _open_dispute()
        policy = CountingRolePolicy()
        result = DisputeService(role_policy=policy).settle_dispute("admin", dispute_id, "no_action")
        assert result["resolution"] == "no_action"
        assert policy.calls == 0
        assert _row("disputes", dispute_id)["resolved_by"] == "admin"


# ── 裁决路径 ──────────────────────────────────────────────


class TestResolutionPaths:
    """四种裁决路径的资金与状态变化。"""

    def test_refund_full(self, svc):
        booking_id, dispute_id = _open_dispute()
        result = svc.resolve_dispute("admin", dispute_id, "refund_full", resolution_notes="合作方未到场")

        assert result["resolution"] == "refund_full"
        balances = _balances()
        assert balances["booker"] == (TOTAL, 0, 0)
        assert balances["partner"][0] == 0
        booking = _row("bookings", booking_id)
        assert booking["status"] == "cancelled"
        assert booking["payout_status"] == "refunded"
        dispute = _row("disputes", dispute_id)
        assert dispute["status"] == "resolved"
        assert dispute["resolution"] == "refund_full"
        assert dispute["resolved_by"] == "admin"
        assert dispute["resolution_notes"] == "合作方未到场"
        assert dispute["resolution_amount"] is None
        assert dispute["resolved_at"]

    def test_refund_partial_proportional(self, svc):
        booking_id, dispute_id = _open_dispute()
        result = svc.resolve_dispute("admin", dispute_id, "refund_partial", resolution_amount=400_000)

        assert result["partner_amount"] == 420_000
        assert result["platform_amount"] == 180_000
        balances = _balances()
        assert balances["booker"] == (400_000, 0, 0)
        assert balances["partner"][0] == 420_000
        assert balances[PLATFORM_ACCOUNT_ID][0] == 180_000
        booking = _row("bookings", booking_id)
        assert booking["status"] == "completed"
        assert booking["payout_status"] == "partial_refund"
        assert booking["completed_at"]
        assert _row("disputes", dispute_id)["resolution_amount"] == 400_000

    def test_release_to_partner(self, svc):
        booking_id, dispute_id = _open_dispute()
        svc.resolve_dispute("admin", dispute_id, "release_to_partner")

        balances = _balances()
        assert balances["booker"] == (0, 0, TOTAL)
        assert balances["partner"][0] == 700_000
        assert balances[PLATFORM_ACCOUNT_ID][0] == 300_000
        booking = _row("bookings", booking_id)
        assert booking["status"] == "completed"
        assert booking["payout_status"] == "paid"

    def test_no_action(self, svc):
        booking_id, dispute_id = _open_dispute()
        before = _balances()
        svc.resolve_dispute("admin", dispute_id, "no_action")

        assert _balances() == before
        booking = _row("bookings", booking_id)
        assert booking["status"] == "completed_pending"
        assert booking["payout_status"] == "held"
        assert booking["dispute_paused_at"] is None
        assert _row("disputes", dispute_id)["status"] == "resolved"

    @pytest.mark.parametrize("resolution,amount", [
        ("refund_full", None),
        ("refund_partial", 1),
        ("refund_partial", 333_333),
        ("refund_partial", TOTAL),
        ("release_to_partner", None),
        ("no_action", None),
    ])
    def test_money_is_conserved(self, svc, resolution, amount):
        booking_id, dispute_id = _open_dispute()
        before = _money_sum(_balances())
        svc.resolve_dispute("admin", dispute_id, resolution, resolution_amount=amount)
        assert _money_sum(_balances()) == before

    @pytest.mark.parametrize("resolution,amount", [
        ("refund_full", None),
        ("refund_partial", 123_457),
        ("release_to_partner", None),
    ])
    def test_balances_match_transaction_log(self, svc, resolution, amount):
        booking_id, dispute_id = _open_dispute()
        svc.resolve_dispute("admin", dispute_id, resolution, resolution_amount=amount)
        db = get_db()
        try:
            ledger = WalletLedger(db)
            for user_id in ("booker", "partner", PLATFORM_ACCOUNT_ID):
                assert ledger.reconcile(user_id)["consistent"] is True
        finally:
            db.close()


# ── 校验 ──────────────────────────────────────────────────


class TestValidation:
    """无效输入不产生任何副作用。"""

    def test_invalid_resolution(self, svc):
        booking_id, dispute_id = _open_dispute()
        before = _balances()
        tx_before = _count("transactions")
        with pytest.raises(InvalidResolutionError):
            svc.resolve_dispute("admin", dispute_id, "foo")
        assert _balances() == before
        assert _count("transactions") == tx_before
        assert _row("disputes", dispute_id)["status"] == "open"

    @pytest.mark.parametrize("amount", [None, 0, -100, TOTAL + 1, 10.5])
    def test_invalid_partial_amount(self, svc, amount):
        booking_id, dispute_id = _open_dispute()
        before = _balances()
        tx_before = _count("transactions")
        with pytest.raises(InvalidResolutionAmountError):
            svc.resolve_dispute("admin", dispute_id, "refund_partial", resolution_amount=amount)
        assert _balances() == before
        assert _count("transactions") == tx_before
        assert _row("disputes", dispute_id)["status"] == "open"
        assert _row("bookings", booking_id)["status"] == "disputed"

    def test_integer_valued_float_amount(self, svc):
        booking_id, dispute_id = _open_dispute()
        result = svc.resolve_dispute("admin", dispute_id, "refund_partial", resolution_amount=400_000.0)
        assert result["refund_amount"] == 400_000
        assert result["partner_amount"] == 420_000
        assert _row("disputes", dispute_id)["resolution_amount"] == 400_000
        assert _balances()["booker"] == (400_000, 0, 0)

    def test_dispute_not_found(self, svc):
        _create_users()
        with pytest.raises(NotFoundError):
            svc.resolve_dispute("admin", "missing", "refund_full")


# ── 只结算一次 ────────────────────────────────────────────


class TestExactlyOnce:
    """同一申诉只能裁决一次。"""

    def test_second_resolution_rejected(self, svc):
        booking_id, dispute_id = _open_dispute()
        svc.resolve_dispute("admin", dispute_id, "refund_full")
        after_first = _balances()
        tx_after_first = _count("transactions")

        with pytest.raises(AlreadyResolvedError):
            svc.resolve_dispute("admin", dispute_id, "release_to_partner")
        assert _balances() == after_first
        assert _count("transactions") == tx_after_first
        assert _row("disputes", dispute_id)["resolution"] == "refund_full"

    def test_concurrent_resolutions(self):
        booking_id, dispute_id = _open_dispute()
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def worker(resolution):
            svc = DisputeService(role_policy=StaticRolePolicy())
            barrier.wait()
            try:
                svc.resolve_dispute("admin", dispute_id, resolution)
                result = "ok"
            except AlreadyResolvedError:
                result = "already_resolved"
            with lock:
                outcomes.append((resolution, result))

        threads = [
            threading.Thread(target=worker, args=("refund_full",)),
            threading.Thread(target=worker, args=("release_to_partner",)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(r for _, r in outcomes) == ["already_resolved", "ok"]
        winner = next(res for res, r in outcomes if r == "ok")
        assert _row("disputes", dispute_id)["resolution"] == winner
        # 托管只被扣减一次
        assert _count("transactions", "user_id = 'booker' AND balance_field = 'escrow' AND direction = 'debit'") == 1
        assert _balances()["booker"][1] == 0


# ── 失败处理 ──────────────────────────────────────────────


class TestFailureHandling:
    """账本失败回滚、通知失败不影响结算。"""

    def test_ledger_failure_rolls_back(self, svc):
        booking_id, dispute_id = _open_dispute()
        db = get_db()
        try:
            # 托管余额被外部改小，扣减托管时失败
            db.execute("UPDATE users SET escrow_balance = 10 WHERE id = 'booker'")
            db.commit()
        finally:
            db.close()
        before = _balances()
        tx_before = _count("transactions")

        with pytest.raises(LedgerInconsistencyError) as exc_info:
            svc.resolve_dispute("admin", dispute_id, "release_to_partner")

        assert exc_info.value.status_code == 500
        assert exc_info.value.dispute_id == dispute_id
        assert exc_info.value.booking_id == booking_id
        assert exc_info.value.step == "ledger"
        assert _balances() == before
        assert _count("transactions") == tx_before
        assert _row("disputes", dispute_id)["status"] == "open"
        assert _row("bookings", booking_id)["status"] == "disputed"

    def test_ledger_failure_is_logged(self, svc, caplog):
        booking_id, dispute_id = _open_dispute()
        db = get_db()
        try:
            db.execute("UPDATE users SET escrow_balance = 0 WHERE id = 'booker'")
            db.commit()
        finally:
            db.close()

        with caplog.at_level("ERROR", logger="app.services.dispute_service"):
            with pytest.raises(LedgerInconsistencyError):
                svc.resolve_dispute("admin", dispute_id, "refund_full")
        assert dispute_id in caplog.text
        assert booking_id in caplog.text
        assert "refund_full" in caplog.text

    def test_locked_database_raises_storage_error(self, svc, monkeypatch, caplog):
        booking_id, dispute_id = _open_dispute()
        before = _balances()
        monkeypatch.setattr(_db_mod, "DB_TIMEOUT", 0.2)

        lock = WriteLock()
        try:
            with caplog.at_level("ERROR", logger="app.services.dispute_service"):
                with pytest.raises(StorageError) as exc_info:
                    svc.resolve_dispute("admin", dispute_id, "refund_full")
        finally:
            lock.release()

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "storage_unavailable"
        assert dispute_id in caplog.text
        assert _balances() == before
        assert _row("disputes", dispute_id)["status"] == "open"

        # 锁释放后可以正常裁决
        svc.resolve_dispute("admin", dispute_id, "refund_full")
        assert _row("disputes", dispute_id)["status"] == "resolved"

    def test_notification_failure_does_not_roll_back(self):
        booking_id, dispute_id = _open_dispute()
        emitter = FailingEmitter()
        svc = DisputeService(role_policy=StaticRolePolicy(), emitter=emitter)

        result = svc.resolve_dispute("admin", dispute_id, "refund_full")

        assert result["resolution"] == "refund_full"
        assert emitter.calls == 1
        assert _row("disputes", dispute_id)["status"] == "resolved"
        assert _balances()["booker"] == (TOTAL, 0, 0)


# ── 通知 ──────────────────────────────────────────────────


class TestNotifications:
    """裁决后通知下单方和合作方。"""

    def test_both_parties_notified(self, svc):
        booking_id, dispute_id = _open_dispute()
        svc.resolve_dispute("admin", dispute_id, "refund_partial", resolution_amount=400_000)

        db = get_db()
        try:
            rows = db.execute(
                "SELECT user_id, title, message, data FROM notifications WHERE type = 'dispute_resolved'"
            ).fetchall()
        finally:
            db.close()
        assert {r["user_id"] for r in rows} == {"booker", "partner"}
        by_user = {r["user_id"]: r for r in rows}
        assert "400,000" in by_user["booker"]["message"]
        assert "420,000" in by_user["partner"]["message"]
        assert dispute_id in by_user["booker"]["data"]


# ── 发起申诉 ──────────────────────────────────────────────


class TestFileDispute:
    """下单方发起申诉。"""

    def _booking(self, status="in_progress"):
        _create_users()
        booking = BookingService().create_booking("booker", "partner", "咖啡陪聊", TOTAL)
        db = get_db()
        try:
            db.execute("UPDATE bookings SET status = ? WHERE id = ?", (status, booking.id))
            db.commit()
        finally:
            db.close()
        return booking.id

    def test_creates_open_dispute_and_pauses_booking(self, svc):
        booking_id = self._booking()
        dispute = svc.file_dispute("booker", booking_id, "partner_no_show", "合作方没来")

        assert dispute.status == "open"
        booking = _row("bookings", booking_id)
        assert booking["status"] == "disputed"
        assert booking["dispute_paused_at"]
        # 合作方和管理员收到通知
        assert _count("notifications", "user_id = 'partner' AND type = 'dispute'") == 1
        assert _count("notifications", "user_id = 'admin' AND type = 'admin_dispute'") == 1

    def test_only_booker_can_file(self, svc):
        booking_id = self._booking()
        with pytest.raises(ForbiddenError):
            svc.file_dispute("partner", booking_id, "other", "x")

    def test_unauthenticated(self, svc):
        booking_id = self._booking()
        with pytest.raises(UnauthorizedError):
            svc.file_dispute(None, booking_id, "other", "x")

    def test_invalid_reason(self, svc):
        booking_id = self._booking()
        with pytest.raises(InvalidRequestError):
            svc.file_dispute("booker", booking_id, "bored", "x")

    def test_pending_booking_not_disputable(self, svc):
        booking_id = self._booking(status="pending")
        with pytest.raises(InvalidBookingStateError):
            svc.file_dispute("booker", booking_id, "other", "x")
        assert _count("disputes") == 0

    def test_duplicate_open_dispute(self, svc):
        booking_id = self._booking()
        svc.file_dispute("booker", booking_id, "other", "第一次")
        with pytest.raises(DuplicateDisputeError):
            svc.file_dispute("booker", booking_id, "other", "第二次")
        assert _count("disputes") == 1

    def test_booking_not_found(self, svc):
        _create_users()
        with pytest.raises(NotFoundError):
            svc.file_dispute("booker", "missing", "other", "x")

    def test_locked_database_raises_storage_error(self, svc, monkeypatch, caplog):
        booking_id = self._booking()
        monkeypatch.setattr(_db_mod, "DB_TIMEOUT", 0.2)

        lock = WriteLock()
        try:
            with caplog.at_level("ERROR", logger="app.services.dispute_service"):
                with pytest.raises(StorageError):
                    svc.file_dispute("booker", booking_id, "other", "x")
        finally:
            lock.release()

        assert booking_id in caplog.text
        assert _count("disputes") == 0
        assert _row("bookings", booking_id)["status"] == "in_progress"
