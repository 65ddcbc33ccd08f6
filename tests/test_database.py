"""easypay/database.py 的单元测试。"""

import os
import sqlite3
import tempfile

import pytest

# 在导入 database 之前设置临时 DB_PATH
_tmp = tempfile.mkdtemp()
_test_db = os.path.join(_tmp, "test.db")
os.environ["DB_PATH"] = _test_db

import easypay.database as _db_mod
from easypay.database import get_db, init_db


class TestInitDB:
    """数据库初始化测试。"""

    def setup_method(self):
        # 确保 DB_PATH 指向测试数据库（其他测试文件的 fixture 可能修改了它）
        os.environ["DB_PATH"] = _test_db
        _db_mod.DB_PATH = _test_db
        if os.path.exists(_test_db):
            os.remove(_test_db)

    def test_creates_all_tables(self):
        init_db()
        conn = get_db()
        tables = {
            row["name"]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        conn.close()
        expected = {
            "menus", "orders", "order_items", "payment_history", "user_wallet",
            "point_history", "payment_refunds", "user_auth_settings", "auth_attempts",
        }
        assert expected.issubset(tables)

    def test_init_is_idempotent(self):
        init_db()
        init_db()
        conn = get_db()
        count = conn.execute(
            "SELECT COUNT(*) AS cnt FROM sqlite_master WHERE type='table' AND name='orders'"
        ).fetchone()["cnt"]
        conn.close()
        assert count == 1

    def test_creates_parent_directory(self):
        nested = os.path.join(_tmp, "nested", "dir", "easypay.db")
        _db_mod.DB_PATH = nested
        init_db()
        assert os.path.exists(nested)

    def test_row_factory_returns_rows(self):
        init_db()
        conn = get_db()
        row = conn.execute("SELECT 1 AS one").fetchone()
        conn.close()
        assert row["one"] == 1


class TestConstraints:
    """表约束测试：余额、最终金额、数量均不允许为负。"""

    def setup_method(self):
        os.environ["DB_PATH"] = _test_db
        _db_mod.DB_PATH = _test_db
        if os.path.exists(_test_db):
            os.remove(_test_db)
        init_db()

    def test_wallet_balance_cannot_be_negative(self):
        conn = get_db()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO user_wallet (user_id, point_balance) VALUES (1, -1)"
                )
        finally:
            conn.close()

    def test_final_amount_cannot_be_negative(self):
        conn = get_db()
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    """INSERT INTO orders (order_id, user_id, store_id, total_amount, final_amount)
                       VALUES ('ORDX', 1, 1, 100, -1)"""
                )
        finally:
            conn.close()

    def test_duplicate_order_id_rejected(self):
        conn = get_db()
        try:
            conn.execute(
                """INSERT INTO orders (order_id, user_id, store_id, total_amount, final_amount)
                   VALUES ('ORDX', 1, 1, 100, 100)"""
            )
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    """INSERT INTO orders (order_id, user_id, store_id, total_amount, final_amount)
                       VALUES ('ORDX', 2, 1, 100, 100)"""
                )
        finally:
            conn.close()
