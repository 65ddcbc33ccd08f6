"""
订单服务模块：按菜单计价创建订单、订单号生成、订单查询。
"""

import logging
import sqlite3
from datetime import datetime

from easypay.database import get_db
from easypay.models.schemas import Order, OrderItem, OrderStatus, from_row
from easypay.services.errors import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


class OrderService:
    """订单服务：创建订单、查询订单。"""

    MAX_ID_ATTEMPTS = 5

    def __init__(self, db_factory=get_db):
        self._db_factory = db_factory

    def generate_order_id(self, db: sqlite3.Connection, offset: int = 0) -> str:
        """
        生成订单号：ORD + YYYYMMDD + 3 位序号。
        序号为当天已有订单数 + 1 + offset；冲突由主键约束发现，
        create_order 重新计数并递增 offset 重试。
        """
        date_str = datetime.now().strftime("%Y%m%d")
        row = db.execute(
            "SELECT COUNT(*) AS cnt FROM orders WHERE order_id LIKE ?",
            (f"ORD{date_str}%",),
        ).fetchone()
        return f"ORD{date_str}{row['cnt'] + 1 + offset:03d}"

    def _get_menu(self, db: sqlite3.Connection, menu_id: int) -> sqlite3.Row:
        """读取菜单当前价格和可售状态（下单时重新校验，列表页状态可能已过期）。"""
        menu = db.execute(
            "SELECT menu_id, menu_name, price, is_available FROM menus WHERE menu_id = ?",
            (menu_id,),
        ).fetchone()
        if not menu:
            raise NotFoundError(f"菜单不存在: menu_id={menu_id}")
        if not menu["is_available"]:
            raise InvalidStateError(f"菜单已停售: menu_id={menu_id}")
        return menu

    def _price_items(self, db: sqlite3.Connection, items) -> tuple[int, list[OrderItem]]:
        total_amount = 0
        priced = []
        for item in items:
            menu = self._get_menu(db, item["menu_id"])
            quantity = item["quantity"]
            line_total = menu["price"] * quantity
            total_amount += line_total
            priced.append(OrderItem(
                menu_id=menu["menu_id"],
                quantity=quantity,
                unit_price=menu["price"],
                total_price=line_total,
                menu_name=menu["menu_name"],
            ))
        return total_amount, priced

    def create_order(self, user_id: int, store_id: int, items, point_used: int = 0) -> Order:
        """
        创建订单：
        1. 校验数量、积分参数
        2. 逐项读取菜单，按当前价格计价（单价快照写入订单明细）
        3. final_amount = max(0, total_amount - point_used)
        4. 在同一事务中写入订单和明细，状态 PENDING

        积分余额不在此处校验，结算时由 SettlementService 检查。

        Args:
            items: [{"menu_id": int, "quantity": int}, ...]

        Raises:
            InvalidRequestError: 明细为空、数量小于 1、积分为负。
            NotFoundError: 菜单不存在。
            InvalidStateError: 菜单已停售。
            ConflictError: 订单号连续冲突。
        """
        items = list(items)
        if not items:
            raise InvalidRequestError("订单明细不能为空")
        if any(item["quantity"] < 1 for item in items):
            raise InvalidRequestError("商品数量必须大于 0")
        if point_used < 0:
            raise InvalidRequestError("使用积分不能为负数")

        db = self._db_factory()
        try:
            total_amount, priced = self._price_items(db, items)
            final_amount = max(0, total_amount - point_used)

            order_id = None
            for attempt in range(self.MAX_ID_ATTEMPTS):
                now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
                try:
                    db.execute("BEGIN IMMEDIATE")
                    order_id = self.generate_order_id(db, offset=attempt)
                    db.execute(
                        """INSERT INTO orders
                           (order_id, user_id, store_id, total_amount, discount_amount,
                            point_used, final_amount, status, created_at)
                           VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                        (order_id, user_id, store_id, total_amount,
                         point_used, final_amount, OrderStatus.PENDING, now),
                    )
                    db.executemany(
                        """INSERT INTO order_items
                           (order_id, menu_id, menu_name, quantity, unit_price, total_price)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        [
                            (order_id, i.menu_id, i.menu_name, i.quantity,
                             i.unit_price, i.total_price)
                            for i in priced
                        ],
                    )
                    db.commit()
                    break
                except sqlite3.IntegrityError as e:
                    db.rollback()
                    logger.warning(
                        "订单号冲突，重新计数: order_id=%s, attempt=%d, error=%s",
                        order_id, attempt + 1, e,
                    )
                    order_id = None
            if order_id is None:
                raise ConflictError("订单号生成冲突，请稍后重试")
        finally:
            db.close()

        logger.info(
            "订单创建成功: order_id=%s, user_id=%s, total=%d, point_used=%d, final=%d",
            order_id, user_id, total_amount, point_used, final_amount,
        )
        return self.get_order_summary(order_id)

    def get_order(self, order_id: str) -> Order:
        """读取订单基本信息（不含明细）。"""
        db = self._db_factory()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE order_id = ?", (order_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"订单不存在: {order_id}")
        return from_row(Order, row)

    def get_order_summary(self, order_id: str) -> Order:
        """读取订单及其明细。"""
        order = self.get_order(order_id)
        db = self._db_factory()
        try:
            rows = db.execute(
                "SELECT * FROM order_items WHERE order_id = ? ORDER BY id",
                (order_id,),
            ).fetchall()
        finally:
            db.close()
        order.items = [from_row(OrderItem, r) for r in rows]
        return order

    def _list_orders(self, column: str, value: int) -> list[Order]:
        db = self._db_factory()
        try:
            rows = db.execute(
                f"""SELECT order_id FROM orders
                    WHERE {column} = ?
                    ORDER BY created_at DESC, order_id DESC""",
                (value,),
            ).fetchall()
        finally:
            db.close()
        return [self.get_order_summary(r["order_id"]) for r in rows]

    def get_user_orders(self, user_id: int) -> list[Order]:
        """用户订单列表，按创建时间倒序。"""
        return self._list_orders("user_id", user_id)

    def get_store_orders(self, store_id: int) -> list[Order]:
        """门店订单列表，按创建时间倒序。"""
        return self._list_orders("store_id", store_id)
