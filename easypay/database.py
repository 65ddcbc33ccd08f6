"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/easypay.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS menus (
    menu_id         INTEGER PRIMARY KEY AUTOINCREMENT,
    store_id        INTEGER      NOT NULL,
    menu_name       VARCHAR(128) NOT NULL,
    price           INTEGER      NOT NULL CHECK (price >= 0),
    is_available    INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    order_id        VARCHAR(32)  PRIMARY KEY,
    user_id         INTEGER      NOT NULL,
    store_id        INTEGER      NOT NULL,
    total_amount    INTEGER      NOT NULL,
    discount_amount INTEGER      DEFAULT 0,
    point_used      INTEGER      DEFAULT 0,
    final_amount    INTEGER      NOT NULL CHECK (final_amount >= 0),
    status          VARCHAR(16)  NOT NULL DEFAULT 'PENDING',
    cancel_reason   TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    completed_at    DATETIME,
    cancelled_at    DATETIME
);

CREATE TABLE IF NOT EXISTS order_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        VARCHAR(32)  NOT NULL REFERENCES orders(order_id),
    menu_id         INTEGER      NOT NULL,
    menu_name       VARCHAR(128),
    quantity        INTEGER      NOT NULL CHECK (quantity > 0),
    unit_price      INTEGER      NOT NULL,
    total_price     INTEGER      NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_history (
    payment_id      VARCHAR(32)  PRIMARY KEY,
    order_id        VARCHAR(32)  NOT NULL REFERENCES orders(order_id),
    user_id         INTEGER      NOT NULL,
    method_id       VARCHAR(64),
    payment_method  VARCHAR(16)  NOT NULL,
    payment_amount  INTEGER      NOT NULL,
    point_used      INTEGER      DEFAULT 0,
    point_earned    INTEGER      DEFAULT 0,
    status          VARCHAR(16)  NOT NULL,
    external_transaction_id VARCHAR(128),
    failure_reason  TEXT,
    paid_at         DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_wallet (
    wallet_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL UNIQUE,
    point_balance   INTEGER      NOT NULL DEFAULT 0 CHECK (point_balance >= 0),
    total_earned_points INTEGER  NOT NULL DEFAULT 0,
    total_used_points   INTEGER  NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS point_history (
    history_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL,
    payment_id      VARCHAR(32)  REFERENCES payment_history(payment_id),
    transaction_type VARCHAR(16) NOT NULL,
    amount          INTEGER      NOT NULL,
    balance_after   INTEGER      NOT NULL CHECK (balance_after >= 0),
    description     TEXT,
    expired_at      DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payment_refunds (
    refund_id       VARCHAR(32)  PRIMARY KEY,
    payment_id      VARCHAR(32)  NOT NULL REFERENCES payment_history(payment_id),
    order_id        VARCHAR(32)  NOT NULL REFERENCES orders(order_id),
    user_id         INTEGER      NOT NULL,
    refund_amount   INTEGER      NOT NULL DEFAULT 0,
    point_refunded  INTEGER      NOT NULL DEFAULT 0,
    point_reclaimed INTEGER      NOT NULL DEFAULT 0,
    status          VARCHAR(16)  NOT NULL,
    reason          TEXT,
    expected_at     DATETIME,
    completed_at    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_auth_settings (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL UNIQUE,
    pin_hash        VARCHAR(128),
    pattern_hash    VARCHAR(128),
    is_fingerprint_enabled INTEGER DEFAULT 0,
    is_face_id_enabled     INTEGER DEFAULT 0,
    max_auth_attempts INTEGER    DEFAULT 5,
    lockout_duration  INTEGER    DEFAULT 300,
    is_locked       INTEGER      DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS auth_attempts (
    attempt_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL,
    auth_type       VARCHAR(16),
    is_success      INTEGER      NOT NULL,
    failure_reason  VARCHAR(32),
    device_info     TEXT,
    attempted_at    DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_user
    ON orders(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_orders_store
    ON orders(store_id, created_at);
CREATE INDEX IF NOT EXISTS idx_order_items_order
    ON order_items(order_id);
CREATE INDEX IF NOT EXISTS idx_payment_history_user
    ON payment_history(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_payment_history_order
    ON payment_history(order_id, status);
CREATE INDEX IF NOT EXISTS idx_point_history_user
    ON point_history(user_id, history_id);
CREATE INDEX IF NOT EXISTS idx_payment_refunds_status
    ON payment_refunds(status, expected_at);
CREATE INDEX IF NOT EXISTS idx_auth_attempts_user
    ON auth_attempts(user_id, attempted_at);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表和索引（幂等操作）。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.commit()
    finally:
        conn.close()
