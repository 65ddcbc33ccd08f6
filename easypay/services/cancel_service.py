"""
订单取消与退款服务。

- 待支付订单：只改状态
- 已完成订单：以新增记录冲正，不删除任何历史支付 / 积分记录
  - 使用的积分立即退回（REFUND +）
  - 赠送的积分收回（REFUND -，最多收回当前余额）
  - 非积分部分按 3~5 个工作日到账处理：生成 REQUESTED 退款单，
    到期后由 settle_due_refunds 标记完成
"""

import logging
import sqlite3
from datetime import datetime, timedelta

from easypay.config import Settings
from easypay.database import get_db
from easypay.models.schemas import (
    CancelResult,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
    from_row,
)
from easypay.services import point_ledger
from easypay.services.errors import ConflictError, InvalidStateError, NotFoundError
from easypay.services.settlement_service import generate_token

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def add_business_days(start: datetime, days: int) -> datetime:
    """在 start 基础上顺延 days 个工作日（跳过周六、周日）。"""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


class CancelService:
    """订单取消、退款登记、到期退款结转。"""

    def __init__(self, settings: Settings | None = None, db_factory=get_db):
        self.settings = settings or Settings()
        self._db_factory = db_factory

    def _reverse_payment(
        self,
        db: sqlite3.Connection,
        payment: sqlite3.Row,
        reason: str | None,
        now: datetime,
    ) -> RefundRecord:
        """冲正一笔已完成的支付，返回退款单。调用方负责事务。"""
        payment_id = payment["payment_id"]
        user_id = payment["user_id"]

        point_refunded = payment["point_used"] or 0
        if point_refunded > 0:
            point_ledger.refund_points(db, user_id, point_refunded, payment_id)

        point_reclaimed = 0
        if payment["point_earned"]:
            point_reclaimed = point_ledger.reclaim_points(
                db, user_id, payment["point_earned"], payment_id
            )

        refund_amount = payment["payment_amount"] or 0
        instant = refund_amount == 0 or payment["payment_method"] == PaymentMethod.POINT
        now_str = now.strftime(_TS_FORMAT)

        if instant:
            refund_status = RefundStatus.COMPLETED
            expected_at = now_str
            completed_at = now_str
            payment_status = PaymentStatus.REFUNDED
        else:
            refund_status = RefundStatus.REQUESTED
            expected_at = add_business_days(now, self.settings.refund_business_days).strftime(_TS_FORMAT)
            completed_at = None
            payment_status = PaymentStatus.CANCELLED

        refund = RefundRecord(
            refund_id=generate_token("RFD"),
            payment_id=payment_id,
            order_id=payment["order_id"],
            user_id=user_id,
            status=refund_status,
            refund_amount=refund_amount,
            point_refunded=point_refunded,
            point_reclaimed=point_reclaimed,
            reason=reason,
            expected_at=expected_at,
            completed_at=completed_at,
            created_at=now_str,
        )
        db.execute(
            """INSERT INTO payment_refunds
               (refund_id, payment_id, order_id, user_id, refund_amount,
                point_refunded, point_reclaimed, status, reason,
                expected_at, completed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (refund.refund_id, refund.payment_id, refund.order_id, refund.user_id,
             refund.refund_amount, refund.point_refunded, refund.point_reclaimed,
             refund.status, refund.reason, refund.expected_at, refund.completed_at,
             refund.created_at),
        )
        db.execute(
            "UPDATE payment_history SET status = ? WHERE payment_id = ? AND status = ?",
            (payment_status, payment_id, PaymentStatus.COMPLETED),
        )
        return refund

    def cancel_order(self, order_id: str, reason: str | None = None) -> CancelResult:
        """
        取消订单。

        状态条件更新与冲正写入在同一写事务中，与结算互斥：
        结算中的订单要么先被结算完成（随后按已完成订单退款），
        要么先被取消（结算的条件更新失败）。

        Raises:
            NotFoundError: 订单不存在。
            InvalidStateError: 订单已取消。
            ConflictError: 状态条件更新失败。
        """
        now = datetime.now()
        now_str = now.strftime(_TS_FORMAT)
        db = self._db_factory()
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(
                "SELECT order_id, status FROM orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            if not row:
                raise NotFoundError(f"订单不存在: {order_id}")
            previous_status = row["status"]
            if previous_status == OrderStatus.CANCELLED:
                raise InvalidStateError(f"订单已取消: {order_id}")

            cursor = db.execute(
                """UPDATE orders
                   SET status = ?, cancel_reason = ?, cancelled_at = ?
                   WHERE order_id = ? AND status = ?""",
                (OrderStatus.CANCELLED, reason, now_str, order_id, previous_status),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"订单状态已被其他请求修改: {order_id}")

            refund = None
            if previous_status == OrderStatus.COMPLETED:
                payment = db.execute(
                    """SELECT * FROM payment_history
                       WHERE order_id = ? AND status = ?
                       ORDER BY created_at DESC LIMIT 1""",
                    (order_id, PaymentStatus.COMPLETED),
                ).fetchone()
                if payment:
                    refund = self._reverse_payment(db, payment, reason, now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "订单已取消: order_id=%s, previous=%s, refund=%s",
            order_id, previous_status, refund.refund_id if refund else None,
        )
        return CancelResult(
            order_id=order_id,
            status=OrderStatus.CANCELLED,
            previous_status=previous_status,
            reason=reason,
            cancelled_at=now_str,
            refund=refund,
        )

    def settle_due_refunds(self) -> int:
        """
        将到期的 REQUESTED 退款单标记为 COMPLETED，对应支付记录改为 REFUNDED。

        Returns:
            本次结转的退款单数量。
        """
        now_str = datetime.now().strftime(_TS_FORMAT)
        db = self._db_factory()
        try:
            db.execute("BEGIN IMMEDIATE")
            rows = db.execute(
                """SELECT refund_id, payment_id FROM payment_refunds
                   WHERE status = ? AND expected_at <= ?""",
                (RefundStatus.REQUESTED, now_str),
            ).fetchall()
            for row in rows:
                db.execute(
                    """UPDATE payment_refunds SET status = ?, completed_at = ?
                       WHERE refund_id = ? AND status = ?""",
                    (RefundStatus.COMPLETED, now_str, row["refund_id"], RefundStatus.REQUESTED),
                )
                db.execute(
                    "UPDATE payment_history SET status = ? WHERE payment_id = ? AND status = ?",
                    (PaymentStatus.REFUNDED, row["payment_id"], PaymentStatus.CANCELLED),
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if rows:
            logger.info("退款已到账: %d 笔", len(rows))
        return len(rows)

    def get_order_refunds(self, order_id: str) -> list[RefundRecord]:
        db = self._db_factory()
        try:
            rows = db.execute(
                "SELECT * FROM payment_refunds WHERE order_id = ? ORDER BY created_at DESC",
                (order_id,),
            ).fetchall()
        finally:
            db.close()
        return [from_row(RefundRecord, r) for r in rows]
