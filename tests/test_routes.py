"""HTTP 接口测试：订单、结算、身份验证路由。"""

import os
import sqlite3
import tempfile

import pytest
from fastapi.testclient import TestClient

# 在导入 app 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import easypay.database as _db_mod
from easypay.database import get_db, init_db
from easypay.main import app
from easypay.services import point_ledger


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


@pytest.fixture
def menu_id():
    db = get_db()
    try:
        cursor = db.execute(
            "INSERT INTO menus (store_id, menu_name, price, is_available) VALUES (1, '아메리카노', 4500, 1)"
        )
        db.commit()
        return cursor.lastrowid
    finally:
        db.close()


def _fund(user_id: int, amount: int):
    db = get_db()
    try:
        db.execute("BEGIN IMMEDIATE")
        point_ledger.earn_points(db, user_id, amount, None)
        db.commit()
    finally:
        db.close()


def _create_order(client, menu_id, quantity=2, point_used=0, user_id=1):
    resp = client.post("/v1/orders", json={
        "user_id": user_id,
        "store_id": 1,
        "items": [{"menu_id": menu_id, "quantity": quantity}],
        "point_used": point_used,
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["code"] == 1
    return data["order"]


# ── 订单 ──────────────────────────────────────────────────


class TestOrderRoutes:

    def test_create_and_get(self, client, menu_id):
        order = _create_order(client, menu_id, quantity=2, point_used=1000)
        assert order["total_amount"] == 9000
        assert order["final_amount"] == 8000
        assert order["status"] == "PENDING"
        assert order["items"][0]["menu_name"] == "아메리카노"

        resp = client.get(f"/v1/orders/{order['order_id']}")
        assert resp.json()["order"]["order_id"] == order["order_id"]

    def test_create_with_missing_menu(self, client):
        resp = client.post("/v1/orders", json={
            "user_id": 1, "store_id": 1, "items": [{"menu_id": 999, "quantity": 1}],
        })
        data = resp.json()
        assert data["code"] == -1
        assert data["error"] == "NOT_FOUND"

    def test_create_with_bad_quantity(self, client, menu_id):
        resp = client.post("/v1/orders", json={
            "user_id": 1, "store_id": 1, "items": [{"menu_id": menu_id, "quantity": 0}],
        })
        assert resp.json()["error"] == "INVALID_REQUEST"

    def test_body_validation(self, client):
        resp = client.post("/v1/orders", json={"user_id": 1})
        assert resp.status_code == 422

    def test_list_orders(self, client, menu_id):
        _create_order(client, menu_id)
        _create_order(client, menu_id, user_id=2)
        resp = client.get("/v1/orders/user/1")
        assert len(resp.json()["orders"]) == 1
        resp = client.get("/v1/orders/store/1")
        assert len(resp.json()["orders"]) == 2

    def test_cancel_pending(self, client, menu_id):
        order = _create_order(client, menu_id)
        resp = client.post(f"/v1/orders/{order['order_id']}/cancel", json={"reason": "변심"})
        data = resp.json()
        assert data["code"] == 1
        assert data["result"]["status"] == "CANCELLED"
        assert data["result"]["refund"] is None

        resp = client.post(f"/v1/orders/{order['order_id']}/cancel", json={})
        assert resp.json()["error"] == "INVALID_STATE"


# ── 结算 ──────────────────────────────────────────────────


class TestPaymentRoutes:

    def test_pay_and_refund(self, client, menu_id):
        _fund(1, 3000)
        order = _create_order(client, menu_id, quantity=2, point_used=1000)
        resp = client.post("/v1/payments", json={
            "order_id": order["order_id"],
            "user_id": 1,
            "payment_method": "CARD",
            "payment_amount": 8000,
            "point_used": 1000,
            "method_id": "card_1",
        })
        data = resp.json()
        assert data["code"] == 1
        assert data["payment"]["status"] == "COMPLETED"
        assert data["payment"]["point_earned"] == 80

        wallet = client.get("/v1/payments/wallet/1").json()["wallet"]
        assert wallet["point_balance"] == 3000 - 1000 + 80

        history = client.get("/v1/payments/history/1").json()["payments"]
        assert len(history) == 1
        points = client.get("/v1/payments/points/1").json()["history"]
        assert [p["transaction_type"] for p in points] == ["EARN", "USE", "EARN"]

        resp = client.post(f"/v1/orders/{order['order_id']}/cancel", json={"reason": "품절"})
        refund = resp.json()["result"]["refund"]
        assert refund["status"] == "REQUESTED"
        assert refund["refund_amount"] == 8000

        refunds = client.get(f"/v1/orders/{order['order_id']}/refunds").json()["refunds"]
        assert refunds[0]["refund_id"] == refund["refund_id"]
        wallet = client.get("/v1/payments/wallet/1").json()["wallet"]
        assert wallet["point_balance"] == 3000

    def test_amount_mismatch(self, client, menu_id):
        order = _create_order(client, menu_id)
        resp = client.post("/v1/payments", json={
            "order_id": order["order_id"],
            "user_id": 1,
            "payment_method": "CARD",
            "payment_amount": 1,
        })
        data = resp.json()
        assert data["code"] == -1
        assert data["error"] == "AMOUNT_MISMATCH"

    def test_already_processed(self, client, menu_id):
        order = _create_order(client, menu_id, quantity=1)
        body = {
            "order_id": order["order_id"],
            "user_id": 1,
            "payment_method": "CARD",
            "payment_amount": 4500,
        }
        assert client.post("/v1/payments", json=body).json()["code"] == 1
        assert client.post("/v1/payments", json=body).json()["error"] == "ALREADY_PROCESSED"

    def test_authenticate_and_pay(self, client, menu_id):
        client.post("/v1/users/1/auth-settings", json={"pin": "123456"})
        order = _create_order(client, menu_id, quantity=1)
        body = {
            "order_id": order["order_id"],
            "user_id": 1,
            "payment_method": "CARD",
            "payment_amount": 4500,
            "auth_type": "PIN",
            "auth_value": "000000",
        }
        data = client.post("/v1/payments/authenticate-and-pay", json=body).json()
        assert data["code"] == -1
        assert data["result"]["auth_success"] is False
        assert data["result"]["auth_result"]["remaining_attempts"] == 3

        body["auth_value"] = "123456"
        data = client.post("/v1/payments/authenticate-and-pay", json=body).json()
        assert data["code"] == 1
        assert data["result"]["payment_success"] is True
        assert data["result"]["payment_result"]["point_earned"] == 45


# ── 身份验证 ──────────────────────────────────────────────


class TestUserRoutes:

    def test_settings_lifecycle(self, client):
        resp = client.post("/v1/users/1/auth-settings", json={"pin": "123456"})
        data = resp.json()
        assert data["code"] == 1
        assert data["settings"]["has_pin"] is True
        assert "pin_hash" not in data["settings"]

        resp = client.post("/v1/users/1/auth-settings", json={"pin": "000000"})
        assert resp.json()["error"] == "INVALID_REQUEST"

        resp = client.put("/v1/users/1/auth-settings", json={"is_face_id_enabled": True})
        assert resp.json()["settings"]["is_face_id_enabled"] is True

        resp = client.get("/v1/users/1/auth-settings")
        assert resp.json()["settings"]["is_face_id_enabled"] is True

    def test_authenticate_and_lockout(self, client):
        client.post("/v1/users/1/auth-settings", json={"pin": "123456"})
        body = {"user_id": 1, "auth_type": "PIN", "auth_value": "000000", "device_info": "web"}

        data = client.post("/v1/users/authenticate", json=body).json()
        assert data["code"] == -1
        assert data["msg"] == "PIN 码不正确"
        assert data["result"]["remaining_attempts"] == 3

        for _ in range(3):
            data = client.post("/v1/users/authenticate", json=body).json()
        assert data["result"]["locked"] is True
        assert data["result"]["failure_reason"] == "ACCOUNT_LOCKED"

        body["auth_value"] = "123456"
        data = client.post("/v1/users/authenticate", json=body).json()
        assert data["code"] == -1
        assert data["result"]["failure_reason"] == "ACCOUNT_LOCKED"

        attempts = client.get("/v1/users/1/auth-attempts?limit=2").json()["attempts"]
        assert len(attempts) == 2
        assert attempts[0]["failure_reason"] == "ACCOUNT_LOCKED"
        assert attempts[0]["device_info"] == "web"

    def test_authenticate_success(self, client):
        client.post("/v1/users/1/auth-settings", json={"pin": "123456"})
        data = client.post("/v1/users/authenticate", json={
            "user_id": 1, "auth_type": "PIN", "auth_value": "123456",
        }).json()
        assert data["code"] == 1
        assert data["result"]["success"] is True

    def test_authenticate_unconfigured(self, client):
        data = client.post("/v1/users/authenticate", json={
            "user_id": 9, "auth_type": "PIN", "auth_value": "1",
        }).json()
        assert data["error"] == "NOT_FOUND"

    def test_long_pin_rejected(self, client):
        resp = client.post("/v1/users/1/auth-settings", json={"pin": "9" * 100})
        assert resp.status_code == 200
        assert resp.json()["error"] == "INVALID_REQUEST"

        client.post("/v1/users/1/auth-settings", json={"pin": "123456"})
        data = client.post("/v1/users/authenticate", json={
            "user_id": 1, "auth_type": "PIN", "auth_value": "9" * 100,
        }).json()
        assert data["code"] == -1
        assert data["result"]["failure_reason"] == "WRONG_PIN"
