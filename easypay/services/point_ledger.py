"""
积分账本：point_history 只追加，user_wallet 是账本的派生缓存。

本模块的写操作都在调用方已开启的事务内执行，不自行 commit，
保证账本记录与钱包余额同时生效或同时回滚。
"""

import logging
import sqlite3
from datetime import datetime, timedelta

from easypay.models.schemas import PointHistory, PointTransactionType, Wallet, from_row
from easypay.services.errors import InsufficientPointsError, NotFoundError

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def ensure_wallet(db: sqlite3.Connection, user_id: int) -> tuple[Wallet, bool]:
    """
    读取用户钱包，不存在则以零余额自动创建。

    Returns:
        (钱包, 是否本次新建)
    """
    now = datetime.now().strftime(_TS_FORMAT)
    cursor = db.execute(
        """INSERT OR IGNORE INTO user_wallet
           (user_id, point_balance, total_earned_points, total_used_points,
            created_at, updated_at)
           VALUES (?, 0, 0, 0, ?, ?)""",
        (user_id, now, now),
    )
    created = cursor.rowcount == 1
    if created:
        logger.info("自动创建用户钱包: user_id=%s", user_id)
    return get_wallet(db, user_id), created


def get_wallet(db: sqlite3.Connection, user_id: int) -> Wallet:
    row = db.execute(
        "SELECT * FROM user_wallet WHERE user_id = ?", (user_id,)
    ).fetchone()
    if not row:
        raise NotFoundError(f"用户钱包不存在: user_id={user_id}")
    return from_row(Wallet, row)


def _append(
    db: sqlite3.Connection,
    user_id: int,
    payment_id: str | None,
    transaction_type: str,
    amount: int,
    description: str,
    expired_at: str | None = None,
) -> PointHistory:
    """钱包已更新后追加一条账本记录，balance_after 取更新后的余额快照。"""
    now = datetime.now().strftime(_TS_FORMAT)
    balance = get_wallet(db, user_id).point_balance
    cursor = db.execute(
        """INSERT INTO point_history
           (user_id, payment_id, transaction_type, amount, balance_after,
            description, expired_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (user_id, payment_id, transaction_type, amount, balance,
         description, expired_at, now),
    )
    return PointHistory(
        history_id=cursor.lastrowid,
        user_id=user_id,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=balance,
        payment_id=payment_id,
        description=description,
        expired_at=expired_at,
        created_at=now,
    )


def use_points(
    db: sqlite3.Connection, user_id: int, amount: int, payment_id: str
) -> PointHistory:
    """
    扣减积分（USE）。

    使用带余额条件的 UPDATE，并发扣减时不会透支；
    条件不满足时抛出 InsufficientPointsError，由调用方回滚事务。
    """
    now = datetime.now().strftime(_TS_FORMAT)
    cursor = db.execute(
        """UPDATE user_wallet
           SET point_balance = point_balance - ?,
               total_used_points = total_used_points + ?,
               updated_at = ?
           WHERE user_id = ? AND point_balance >= ?""",
        (amount, amount, now, user_id, amount),
    )
    if cursor.rowcount == 0:
        raise InsufficientPointsError(
            f"积分余额不足，无法扣减 {amount} 积分"
        )
    return _append(db, user_id, payment_id, PointTransactionType.USE, -amount, "结算使用")


def earn_points(
    db: sqlite3.Connection,
    user_id: int,
    amount: int,
    payment_id: str,
    expiry_days: int = 365,
) -> PointHistory:
    """积分入账（EARN），有效期 expiry_days 天。钱包不存在时自动创建。"""
    ensure_wallet(db, user_id)
    now = datetime.now()
    db.execute(
        """UPDATE user_wallet
           SET point_balance = point_balance + ?,
               total_earned_points = total_earned_points + ?,
               updated_at = ?
           WHERE user_id = ?""",
        (amount, amount, now.strftime(_TS_FORMAT), user_id),
    )
    expired_at = (now + timedelta(days=expiry_days)).strftime(_TS_FORMAT)
    return _append(
        db, user_id, payment_id, PointTransactionType.EARN, amount, "结算积分", expired_at
    )


def refund_points(
    db: sqlite3.Connection, user_id: int, amount: int, payment_id: str
) -> PointHistory:
    """退还订单使用的积分（REFUND，正数），立即到账。"""
    ensure_wallet(db, user_id)
    db.execute(
        """UPDATE user_wallet
           SET point_balance = point_balance + ?,
               total_used_points = MAX(total_used_points - ?, 0),
               updated_at = ?
           WHERE user_id = ?""",
        (amount, amount, datetime.now().strftime(_TS_FORMAT), user_id),
    )
    return _append(db, user_id, payment_id, PointTransactionType.REFUND, amount, "取消退还积分")


def reclaim_points(
    db: sqlite3.Connection, user_id: int, amount: int, payment_id: str
) -> int:
    """
    收回订单赠送的积分（REFUND，负数）。

    若赠送积分已被消费，只收回当前余额以内的部分，余额不会变为负数。

    Returns:
        实际收回的积分数。
    """
    wallet, _ = ensure_wallet(db, user_id)
    reclaimed = min(amount, wallet.point_balance)
    if reclaimed <= 0:
        return 0

    db.execute(
        """UPDATE user_wallet
           SET point_balance = point_balance - ?,
               total_earned_points = MAX(total_earned_points - ?, 0),
               updated_at = ?
           WHERE user_id = ?""",
        (reclaimed, reclaimed, datetime.now().strftime(_TS_FORMAT), user_id),
    )
    _append(db, user_id, payment_id, PointTransactionType.REFUND, -reclaimed, "取消收回积分")
    if reclaimed < amount:
        logger.warning(
            "赠送积分已部分消费，仅收回 %d/%d: user_id=%s, payment_id=%s",
            reclaimed, amount, user_id, payment_id,
        )
    return reclaimed


def get_history(db: sqlite3.Connection, user_id: int) -> list[PointHistory]:
    """按时间倒序返回用户的积分流水。"""
    rows = db.execute(
        """SELECT * FROM point_history
           WHERE user_id = ?
           ORDER BY history_id DESC""",
        (user_id,),
    ).fetchall()
    return [from_row(PointHistory, r) for r in rows]


def reconcile(db: sqlite3.Connection, user_id: int) -> tuple[int, int]:
    """
    对账：返回 (钱包余额, 账本金额合计)，两者相等说明钱包缓存与账本一致。
    钱包不存在时余额按 0 计。
    """
    row = db.execute(
        "SELECT point_balance FROM user_wallet WHERE user_id = ?", (user_id,)
    ).fetchone()
    balance = row["point_balance"] if row else 0
    total = db.execute(
        "SELECT COALESCE(SUM(amount), 0) AS total FROM point_history WHERE user_id = ?",
        (user_id,),
    ).fetchone()["total"]
    return balance, total
