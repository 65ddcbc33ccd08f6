"""easypay/main.py 启动配置和路由注册测试。"""

import asyncio
import os
import sqlite3
import tempfile
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="main_test_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["TESTING"] = "1"

import easypay.database as _db_mod
from easypay.database import get_db, init_db
from easypay.main import _refund_settlement_task, app


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
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
def client():
    return TestClient(app)


class TestHealthEndpoint:

    def test_health_returns_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestRouteRegistration:
    """路由注册验证：返回业务错误而非 404。"""

    def test_orders_route_registered(self, client):
        resp = client.get("/v1/orders/ORD_NOPE")
        assert resp.status_code == 200
        assert resp.json()["code"] == -1

    def test_payments_route_registered(self, client):
        resp = client.get("/v1/payments/wallet/1")
        assert resp.status_code == 200
        assert resp.json()["error"] == "NOT_FOUND"

    def test_users_route_registered(self, client):
        resp = client.get("/v1/users/1/auth-settings")
        assert resp.status_code == 200
        assert resp.json()["code"] == -1

    def test_unknown_path_404(self, client):
        assert client.get("/some-random-page").status_code == 404


class TestStartupEvent:

    def test_init_db_called_on_startup(self):
        """应用启动时调用 init_db（删除表后重新启动，表应被重建）。"""
        conn = sqlite3.connect(_tmp.name)
        conn.execute("DROP TABLE payment_refunds")
        conn.close()

        with TestClient(app):
            db = get_db()
            try:
                row = db.execute(
                    "SELECT COUNT(*) AS cnt FROM sqlite_master WHERE type='table' AND name='payment_refunds'"
                ).fetchone()
                assert row["cnt"] == 1
            finally:
                db.close()

    def test_background_tasks_skipped_in_testing(self):
        """测试模式下不启动后台任务。"""
        with patch("easypay.main._refund_settlement_task") as mock_task:
            with TestClient(app):
                mock_task.assert_not_called()


class TestRefundSettlementTask:

    def test_task_survives_errors(self):
        """结转异常只记日志，循环继续；CancelledError 结束任务。"""
        svc = MagicMock()
        svc.settle_due_refunds.side_effect = [RuntimeError("db locked"), 0]

        sleep_calls = []

        async def _sleep(seconds):
            sleep_calls.append(seconds)
            if len(sleep_calls) >= 2:
                raise asyncio.CancelledError()

        with patch("easypay.services.cancel_service.CancelService", return_value=svc), \
                patch("easypay.main.asyncio.sleep", side_effect=_sleep):
            with pytest.raises(asyncio.CancelledError):
                asyncio.run(_refund_settlement_task())

        assert svc.settle_due_refunds.call_count == 2
        assert sleep_calls == [60, 60]
