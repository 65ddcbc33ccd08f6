"""积分账本单元测试。"""

import os
import sqlite3
import tempfile

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="ledger_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import easypay.database as _db_mod
from easypay.database import get_db, init_db
from easypay.models.schemas import PointTransactionType
from easypay.services import point_ledger
from easypay.services.errors import InsufficientPointsError, NotFoundError


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS payment_refunds;
        DROP TABLE IF EXISTS point_history;
        DROP TABLE IF EXISTS payment_history;
        DROP TABLE IF EXISTS order_items;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS menus;
        DROP TABLE IF EXISTS user_wallet;
        DROP TABLE IF EXISTS auth_attempts;
        DROP TABLE IF EXISTS user_auth_settings;
    """)
    conn.close()
    init_db()
    yield


@pytest.fixture
def db():
    conn = get_db()
    yield conn
    conn.close()


class TestWallet:

    def test_ensure_creates_once(self, db):
        wallet, created = point_ledger.ensure_wallet(db, 1)
        assert created is True
        assert wallet.point_balance == 0
        _, created = point_ledger.ensure_wallet(db, 1)
        assert created is False

    def test_get_missing(self, db):
        with pytest.raises(NotFoundError):
            point_ledger.get_wallet(db, 1)


class TestLedger:

    def test_earn_then_use(self, db):
        earned = point_ledger.earn_points(db, 1, 500, None, expiry_days=30)
        assert earned.amount == 500
        assert earned.balance_after == 500
        assert earned.expired_at is not None

        used = point_ledger.use_points(db, 1, 200, None)
        assert used.transaction_type == PointTransactionType.USE
        assert used.amount == -200
        assert used.balance_after == 300

        wallet = point_ledger.get_wallet(db, 1)
        assert wallet.total_earned_points == 500
        assert wallet.total_used_points == 200
        assert point_ledger.reconcile(db, 1) == (300, 300)

    def test_use_more_than_balance(self, db):
        point_ledger.earn_points(db, 1, 100, None)
        with pytest.raises(InsufficientPointsError):
            point_ledger.use_points(db, 1, 101, None)
        assert point_ledger.get_wallet(db, 1).point_balance == 100
        assert len(point_ledger.get_history(db, 1)) == 1

    def test_refund_and_reclaim(self, db):
        point_ledger.earn_points(db, 1, 100, None)
        point_ledger.use_points(db, 1, 60, None)
        point_ledger.refund_points(db, 1, 60, None)
        assert point_ledger.get_wallet(db, 1).total_used_points == 0

        reclaimed = point_ledger.reclaim_points(db, 1, 150, None)
        assert reclaimed == 100
        assert point_ledger.get_wallet(db, 1).point_balance == 0
        assert point_ledger.reclaim_points(db, 1, 10, None) == 0

        history = point_ledger.get_history(db, 1)
        assert [h.amount for h in history] == [-100, 60, -60, 100]
        assert all(h.balance_after >= 0 for h in history)
        assert point_ledger.reconcile(db, 1) == (0, 0)

    def test_reconcile_missing_wallet(self, db):
        assert point_ledger.reconcile(db, 404) == (0, 0)
