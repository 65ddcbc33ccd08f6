"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM；from_row 负责把 sqlite3.Row 转成领域类型。
"""

from dataclasses import dataclass, field, fields
from typing import Optional


class OrderStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod:
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    MOBILE_PAY = "MOBILE_PAY"
    POINT = "POINT"

    ALL = (CARD, BANK_TRANSFER, MOBILE_PAY, POINT)


class PointTransactionType:
    EARN = "EARN"
    USE = "USE"
    EXPIRE = "EXPIRE"
    REFUND = "REFUND"


class AuthType:
    PIN = "PIN"
    PATTERN = "PATTERN"
    FINGERPRINT = "FINGERPRINT"
    FACE_ID = "FACE_ID"


class RefundStatus:
    REQUESTED = "REQUESTED"
    COMPLETED = "COMPLETED"


def from_row(cls, row):
    """按 dataclass 字段从数据库行取值，忽略多余列。"""
    if row is None:
        return None
    keys = row.keys()
    return cls(**{f.name: row[f.name] for f in fields(cls) if f.name in keys})


@dataclass
class OrderItem:
    menu_id: int
    quantity: int
    unit_price: int
    total_price: int
    menu_name: Optional[str] = None


@dataclass
class Order:
    order_id: str
    user_id: int
    store_id: int
    total_amount: int
    final_amount: int
    discount_amount: int = 0
    point_used: int = 0
    status: str = OrderStatus.PENDING
    cancel_reason: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    items: list = field(default_factory=list)


@dataclass
class PaymentRecord:
    payment_id: str
    order_id: str
    user_id: int
    payment_method: str
    payment_amount: int
    status: str
    method_id: Optional[str] = None
    point_used: int = 0
    point_earned: int = 0
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class PointHistory:
    history_id: int
    user_id: int
    transaction_type: str
    amount: int  # 正数为入账，负数为扣减
    balance_after: int
    payment_id: Optional[str] = None
    description: Optional[str] = None
    expired_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Wallet:
    user_id: int
    point_balance: int = 0
    total_earned_points: int = 0
    total_used_points: int = 0
    updated_at: Optional[str] = None


@dataclass
class AuthSettings:
    user_id: int
    has_pin: bool = False
    has_pattern: bool = False
    is_fingerprint_enabled: bool = False
    is_face_id_enabled: bool = False
    max_auth_attempts: int = 5
    lockout_duration: int = 300  # 秒
    is_locked: bool = False
    locked_until: Optional[str] = None


@dataclass
class AuthAttempt:
    attempt_id: int
    user_id: int
    is_success: bool
    auth_type: Optional[str] = None
    failure_reason: Optional[str] = None
    device_info: Optional[str] = None
    attempted_at: Optional[str] = None


@dataclass
class AuthResult:
    success: bool
    locked: bool = False
    failure_reason: Optional[str] = None
    remaining_attempts: Optional[int] = None
    locked_until: Optional[str] = None


@dataclass
class RefundRecord:
    refund_id: str
    payment_id: str
    order_id: str
    user_id: int
    status: str
    refund_amount: int = 0
    point_refunded: int = 0
    point_reclaimed: int = 0
    reason: Optional[str] = None
    expected_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None


# ── 请求 / 结果 ──────────────────────────────────────────


@dataclass
class PaymentRequest:
    order_id: str
    user_id: int
    payment_method: str
    payment_amount: int
    point_used: int = 0
    method_id: Optional[str] = None


@dataclass
class AuthRequest:
    user_id: int
    auth_type: str
    auth_value: Optional[str] = None
    device_info: Optional[str] = None


@dataclass
class PaymentResult:
    payment_id: str
    status: str
    payment_amount: int
    point_used: int
    point_earned: int
    external_transaction_id: Optional[str]
    paid_at: Optional[str]


@dataclass
class AuthenticatedPaymentResult:
    auth_success: bool
    payment_success: bool
    auth_result: AuthResult
    payment_result: Optional[PaymentResult] = None
    failure_reason: Optional[str] = None


@dataclass
class CancelResult:
    order_id: str
    status: str
    previous_status: str
    reason: Optional[str]
    cancelled_at: str
    refund: Optional[RefundRecord] = None
