"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
钱包余额、交易流水、预订、申诉、通知均存放在同一个库中，
资金结算依赖单连接上的 BEGIN IMMEDIATE 事务保证原子性。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/escrow.db")

# 等待其他连接释放写锁的秒数，超时抛出 sqlite3.OperationalError
DB_TIMEOUT = float(os.getenv("DB_TIMEOUT", "10"))

# 平台收入伪账户：平台服务费留存记入该账户的可用余额
PLATFORM_ACCOUNT_ID = "platform"


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=DB_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id                VARCHAR(64)  PRIMARY KEY,
    name              VARCHAR(128),
    role              VARCHAR(16)  NOT NULL DEFAULT 'user',
    available_balance INTEGER      NOT NULL DEFAULT 0 CHECK (available_balance >= 0),
    escrow_balance    INTEGER      NOT NULL DEFAULT 0 CHECK (escrow_balance >= 0),
    total_spending    INTEGER      NOT NULL DEFAULT 0,
    created_at        DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at        DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL REFERENCES users(id),
    type            VARCHAR(32)  NOT NULL,
    direction       VARCHAR(8)   NOT NULL,
    balance_field   VARCHAR(16)  NOT NULL,
    amount          INTEGER      NOT NULL CHECK (amount > 0),
    status          VARCHAR(16)  NOT NULL DEFAULT 'completed',
    description     TEXT,
    related_id      VARCHAR(64),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bookings (
    id                VARCHAR(64)  PRIMARY KEY,
    user_id           VARCHAR(64)  NOT NULL REFERENCES users(id),
    partner_id        VARCHAR(64)  NOT NULL REFERENCES users(id),
    activity          VARCHAR(256),
    total_amount      INTEGER      NOT NULL,
    partner_earning   INTEGER      NOT NULL,
    platform_fee      INTEGER      NOT NULL,
    status            VARCHAR(32)  NOT NULL DEFAULT 'pending',
    payout_status     VARCHAR(32)  NOT NULL DEFAULT 'held',
    dispute_paused_at DATETIME,
    auto_completed    INTEGER      NOT NULL DEFAULT 0,
    completed_at      DATETIME,
    created_at        DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at        DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS disputes (
    id                VARCHAR(64)  PRIMARY KEY,
    booking_id        VARCHAR(64)  NOT NULL REFERENCES bookings(id),
    user_id           VARCHAR(64)  NOT NULL REFERENCES users(id),
    reason            VARCHAR(32)  NOT NULL,
    description       TEXT,
    status            VARCHAR(16)  NOT NULL DEFAULT 'open',
    resolution        VARCHAR(32),
    resolution_amount INTEGER,
    resolution_notes  TEXT,
    resolved_by       VARCHAR(64),
    resolved_at       DATETIME,
    created_at        DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notifications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    type            VARCHAR(32)  NOT NULL,
    title           VARCHAR(256) NOT NULL,
    message         TEXT         NOT NULL,
    data            TEXT,
    is_read         INTEGER      NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_transactions_user
    ON transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_transactions_related
    ON transactions(related_id);
CREATE INDEX IF NOT EXISTS idx_bookings_status
    ON bookings(status);
CREATE INDEX IF NOT EXISTS idx_bookings_partner_status
    ON bookings(partner_id, status);
CREATE INDEX IF NOT EXISTS idx_disputes_booking
    ON disputes(booking_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_booking_open
    ON disputes(booking_id) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON notifications(user_id, is_read);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并初始化平台收入账户和默认管理员。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        _create_platform_account(conn)

        # 首次启动：通过环境变量指定默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _create_platform_account(conn: sqlite3.Connection) -> None:
    """创建平台收入伪账户（幂等操作）。"""
    conn.execute(
        "INSERT OR IGNORE INTO users (id, name, role) VALUES (?, ?, 'system')",
        (PLATFORM_ACCOUNT_ID, "Platform Revenue"),
    )


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果设置了 ADMIN_USER_ID，则确保该用户存在且角色为 admin。"""
    admin_id = os.getenv("ADMIN_USER_ID")
    if not admin_id:
        return

    conn.execute(
        "INSERT OR IGNORE INTO users (id, name, role) VALUES (?, ?, 'admin')",
        (admin_id, os.getenv("ADMIN_NAME", "admin")),
    )
    conn.execute("UPDATE users SET role = 'admin' WHERE id = ?", (admin_id,))
