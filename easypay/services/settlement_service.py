"""
结算服务：把待支付订单转为已完成。

流程：前置校验（订单状态、金额、积分余额）→ 外部扣款 →
单个写事务内完成 订单状态条件更新 / 支付记录 / 积分扣减 / 积分赠送。

- 外部扣款在获取写锁之前进行，不在等待网关时占用账本锁
- 订单状态用 WHERE status = 'PENDING' 条件更新，并发重复结算只有一个成功
- 积分扣减带余额条件，不依赖之前读到的余额
- 前置校验通过后的任何失败都会留下一条 FAILED 支付记录，订单保持待支付可重试
"""

import logging
import secrets
import sqlite3
import string
import time
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from easypay.config import Settings
from easypay.database import get_db
from easypay.models.schemas import (
    AuthenticatedPaymentResult,
    AuthRequest,
    AuthResult,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentRecord,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    PointHistory,
    Wallet,
    from_row,
)
from easypay.services import point_ledger
from easypay.services.auth_gate import AuthGate
from easypay.services.errors import (
    AlreadyProcessedError,
    AmountMismatchError,
    AuthFailureError,
    ConflictError,
    EasyPayError,
    GatewayError,
    InsufficientPointsError,
    InvalidRequestError,
    NotFoundError,
)
from easypay.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def generate_token(prefix: str) -> str:
    """生成业务单号：前缀 + 毫秒时间戳 + 6 位大写随机字符。"""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"


class SettlementService:
    """结算服务：支付、验证后支付、支付与积分查询。"""

    def __init__(
        self,
        settings: Settings | None = None,
        gateway: PaymentGateway | None = None,
        auth_gate: AuthGate | None = None,
        db_factory=get_db,
    ):
        self.settings = settings or Settings()
        self.gateway = gateway or PaymentGateway(self.settings)
        self.auth_gate = auth_gate or AuthGate(self.settings, db_factory)
        self._db_factory = db_factory

    def calc_point_earned(self, payment_amount: int) -> int:
        """赠送积分 = floor(payment_amount * point_earn_rate)。"""
        earned = Decimal(payment_amount) * self.settings.point_earn_rate
        return int(earned.to_integral_value(rounding=ROUND_FLOOR))

    # ── 前置校验 ──────────────────────────────────────────

    @staticmethod
    def _validate_request(request: PaymentRequest) -> None:
        if request.payment_method not in PaymentMethod.ALL:
            raise InvalidRequestError(f"不支持的支付方式: {request.payment_method}")
        if request.payment_amount < 0 or request.point_used < 0:
            raise InvalidRequestError("支付金额和使用积分不能为负数")

    def _load_order(self, order_id: str) -> Order:
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

    def _check_point_balance(self, user_id: int, point_used: int) -> None:
        """
        校验积分余额；钱包不存在时自动创建（余额为 0，必然不足）。

        Raises:
            InsufficientPointsError: 余额不足。
        """
        db = self._db_factory()
        try:
            wallet, created = point_ledger.ensure_wallet(db, user_id)
            db.commit()
        finally:
            db.close()

        if created:
            raise InsufficientPointsError(
                f"积分余额不足: 新建钱包没有可用积分, 需要 {point_used}, 差额 {point_used}"
            )
        if wallet.point_balance < point_used:
            shortage = point_used - wallet.point_balance
            logger.warning(
                "积分余额不足: user_id=%s, 可用=%d, 需要=%d",
                user_id, wallet.point_balance, point_used,
            )
            raise InsufficientPointsError(
                f"积分余额不足: 可用 {wallet.point_balance}, 需要 {point_used}, 差额 {shortage}"
            )

    # ── 支付记录 ──────────────────────────────────────────

    def _record_failed_payment(
        self,
        payment_id: str,
        request: PaymentRequest,
        reason: str,
        external_transaction_id: str | None = None,
    ) -> None:
        """写入 FAILED 支付记录；写入失败只记日志，不覆盖原始异常。"""
        now = datetime.now().strftime(_TS_FORMAT)
        db = self._db_factory()
        try:
            db.execute(
                """INSERT INTO payment_history
                   (payment_id, order_id, user_id, method_id, payment_method,
                    payment_amount, point_used, point_earned, status,
                    external_transaction_id, failure_reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                (payment_id, request.order_id, request.user_id, request.method_id,
                 request.payment_method, request.payment_amount, request.point_used,
                 PaymentStatus.FAILED, external_transaction_id, reason, now),
            )
            db.commit()
            logger.info("失败支付记录已保存: payment_id=%s", payment_id)
        except sqlite3.Error as e:
            db.rollback()
            logger.error("保存失败支付记录失败: payment_id=%s, error=%s", payment_id, e)
        finally:
            db.close()

    # ── 结算 ──────────────────────────────────────────────

    def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """
        结算订单。

        前置校验（失败时不产生任何写入，钱包自动创建除外）：
        1. 订单存在且为 PENDING
        2. payment_amount + point_used == order.total_amount（按总额而非 final_amount 校验）
        3. point_used > 0 时积分余额充足，否则不调用外部网关

        Raises:
            InvalidRequestError, NotFoundError, AlreadyProcessedError,
            AmountMismatchError, InsufficientPointsError, GatewayError, ConflictError
        """
        self._validate_request(request)
        logger.info(
            "开始结算: order_id=%s, user_id=%s, amount=%d, point_used=%d, method=%s",
            request.order_id, request.user_id, request.payment_amount,
            request.point_used, request.payment_method,
        )

        order = self._load_order(request.order_id)
        if order.status != OrderStatus.PENDING:
            raise AlreadyProcessedError(f"订单已处理: {order.order_id} ({order.status})")

        requested_total = request.payment_amount + request.point_used
        if requested_total != order.total_amount:
            raise AmountMismatchError(
                f"支付金额不正确: 请求金额 {requested_total}, 订单总额 {order.total_amount}"
            )

        if request.point_used > 0:
            self._check_point_balance(request.user_id, request.point_used)

        payment_id = generate_token("PAY")

        # 外部扣款（不持有账本锁）；网关抛出的任何异常都留下失败记录，并统一为 GatewayError
        try:
            capture = self.gateway.capture(
                request.payment_method, request.payment_amount, request.method_id
            )
            transaction_id = capture["transaction_id"]
        except GatewayError as e:
            logger.warning("外部扣款失败: order_id=%s, payment_id=%s, error=%s",
                           request.order_id, payment_id, e)
            self._record_failed_payment(payment_id, request, str(e))
            raise
        except Exception as e:
            logger.error("外部扣款异常: order_id=%s, payment_id=%s, error=%r",
                         request.order_id, payment_id, e)
            self._record_failed_payment(payment_id, request, f"外部扣款异常: {e}")
            raise GatewayError(f"外部扣款异常: {e}") from e

        point_earned = self.calc_point_earned(request.payment_amount)
        paid_at = datetime.now().strftime(_TS_FORMAT)

        db = self._db_factory()
        try:
            db.execute("BEGIN IMMEDIATE")
            cursor = db.execute(
                """UPDATE orders SET status = ?, completed_at = ?
                   WHERE order_id = ? AND status = ?""",
                (OrderStatus.COMPLETED, paid_at, request.order_id, OrderStatus.PENDING),
            )
            if cursor.rowcount == 0:
                raise ConflictError(f"订单状态已被其他请求修改: {request.order_id}")

            db.execute(
                """INSERT INTO payment_history
                   (payment_id, order_id, user_id, method_id, payment_method,
                    payment_amount, point_used, point_earned, status,
                    external_transaction_id, paid_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (payment_id, request.order_id, request.user_id, request.method_id,
                 request.payment_method, request.payment_amount, request.point_used,
                 point_earned, PaymentStatus.COMPLETED, transaction_id, paid_at, paid_at),
            )

            if request.point_used > 0:
                point_ledger.use_points(db, request.user_id, request.point_used, payment_id)
            if point_earned > 0:
                point_ledger.earn_points(
                    db, request.user_id, point_earned, payment_id,
                    self.settings.point_expiry_days,
                )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                "结算失败，外部交易需人工冲正: order_id=%s, payment_id=%s, transaction_id=%s, error=%s",
                request.order_id, payment_id, transaction_id, e,
            )
            self._record_failed_payment(payment_id, request, str(e), transaction_id)
            if isinstance(e, EasyPayError):
                raise
            raise ConflictError(f"结算写入失败: {e}") from e
        finally:
            db.close()

        logger.info(
            "结算成功: order_id=%s, payment_id=%s, point_used=%d, point_earned=%d",
            request.order_id, payment_id, request.point_used, point_earned,
        )
        return PaymentResult(
            payment_id=payment_id,
            status=PaymentStatus.COMPLETED,
            payment_amount=request.payment_amount,
            point_used=request.point_used,
            point_earned=point_earned,
            external_transaction_id=transaction_id,
            paid_at=paid_at,
        )

    def authenticate_and_pay(
        self, auth: AuthRequest, payment: PaymentRequest
    ) -> AuthenticatedPaymentResult:
        """
        先验证再结算。验证失败直接返回；结算失败不重新验证，
        也不回滚验证产生的状态变化（如解锁）。
        """
        try:
            auth_result = self.auth_gate.require(auth)
        except AuthFailureError as e:
            return AuthenticatedPaymentResult(
                auth_success=False,
                payment_success=False,
                auth_result=e.result or AuthResult(success=False),
                failure_reason=str(e),
            )
        except EasyPayError as e:
            return AuthenticatedPaymentResult(
                auth_success=False,
                payment_success=False,
                auth_result=AuthResult(success=False),
                failure_reason=str(e),
            )

        try:
            payment_result = self.process_payment(payment)
        except EasyPayError as e:
            return AuthenticatedPaymentResult(
                auth_success=True,
                payment_success=False,
                auth_result=auth_result,
                failure_reason=f"结算失败: {e}",
            )
        except Exception as e:
            logger.error("验证后结算异常: order_id=%s, error=%r", payment.order_id, e)
            return AuthenticatedPaymentResult(
                auth_success=True,
                payment_success=False,
                auth_result=auth_result,
                failure_reason=f"结算失败: {e}",
            )

        return AuthenticatedPaymentResult(
            auth_success=True,
            payment_success=True,
            auth_result=auth_result,
            payment_result=payment_result,
        )

    # ── 查询 ──────────────────────────────────────────────

    def get_payment_history(self, user_id: int) -> list[PaymentRecord]:
        """用户支付记录（含失败记录），按时间倒序。"""
        db = self._db_factory()
        try:
            rows = db.execute(
                """SELECT * FROM payment_history
                   WHERE user_id = ?
                   ORDER BY created_at DESC, rowid DESC""",
                (user_id,),
            ).fetchall()
        finally:
            db.close()
        return [from_row(PaymentRecord, r) for r in rows]

    def get_point_history(self, user_id: int) -> list[PointHistory]:
        db = self._db_factory()
        try:
            return point_ledger.get_history(db, user_id)
        finally:
            db.close()

    def get_wallet(self, user_id: int) -> Wallet:
        db = self._db_factory()
        try:
            return point_ledger.get_wallet(db, user_id)
        finally:
            db.close()
