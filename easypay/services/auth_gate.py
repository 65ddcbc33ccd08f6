"""
支付前身份验证（PIN / 图案 / 指纹 / Face ID）：

- PIN、图案以 bcrypt 哈希保存，校验为常量时间比较
- 生物识别只检查开关是否开启，识别本身由设备完成
- 每次尝试都写入 auth_attempts 审计表
- 5 分钟窗口内连续失败达到 max_auth_attempts - 1 次即锁定 lockout_duration 秒
"""

import logging
import sqlite3
from datetime import datetime, timedelta

import bcrypt

from easypay.config import Settings
from easypay.database import get_db
from easypay.models.schemas import (
    AuthAttempt,
    AuthRequest,
    AuthResult,
    AuthSettings,
    AuthType,
    from_row,
)
from easypay.services.errors import AuthFailureError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
WRONG_PIN = "WRONG_PIN"
WRONG_PATTERN = "WRONG_PATTERN"
BIOMETRIC_NOT_ENABLED = "BIOMETRIC_NOT_ENABLED"
INVALID_AUTH_TYPE = "INVALID_AUTH_TYPE"

FAILURE_MESSAGES = {
    WRONG_PIN: "PIN 码不正确",
    WRONG_PATTERN: "图案不正确",
    BIOMETRIC_NOT_ENABLED: "未开启生物识别验证",
    ACCOUNT_LOCKED: "账号已锁定，请稍后再试",
    INVALID_AUTH_TYPE: "不支持的验证方式",
}

_UPDATABLE_FIELDS = (
    "is_fingerprint_enabled",
    "is_face_id_enabled",
    "max_auth_attempts",
    "lockout_duration",
)


# bcrypt 只接受 72 字节以内的输入
MAX_SECRET_BYTES = 72


def hash_secret(secret: str) -> str:
    """
    使用 bcrypt 对 PIN / 图案进行哈希。

    Raises:
        InvalidRequestError: 超过 72 字节。
    """
    raw = secret.encode("utf-8")
    if len(raw) > MAX_SECRET_BYTES:
        raise InvalidRequestError(f"PIN / 图案长度不能超过 {MAX_SECRET_BYTES} 字节")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_secret(secret: str | None, hashed: str | None) -> bool:
    """校验 PIN / 图案；未设置、未提供或超长时视为不匹配。"""
    if not secret or not hashed:
        return False
    raw = secret.encode("utf-8")
    if len(raw) > MAX_SECRET_BYTES:
        return False
    return bcrypt.checkpw(raw, hashed.encode("utf-8"))


def failure_message(reason: str | None) -> str:
    """把失败原因代码转换为可读提示。"""
    return FAILURE_MESSAGES.get(reason, "身份验证失败")


def _to_settings(row: sqlite3.Row) -> AuthSettings:
    return AuthSettings(
        user_id=row["user_id"],
        has_pin=bool(row["pin_hash"]),
        has_pattern=bool(row["pattern_hash"]),
        is_fingerprint_enabled=bool(row["is_fingerprint_enabled"]),
        is_face_id_enabled=bool(row["is_face_id_enabled"]),
        max_auth_attempts=row["max_auth_attempts"],
        lockout_duration=row["lockout_duration"],
        is_locked=bool(row["is_locked"]),
        locked_until=row["locked_until"],
    )


class AuthGate:
    """身份验证服务：验证设置管理、验证、锁定。"""

    def __init__(self, settings: Settings | None = None, db_factory=get_db):
        self.settings = settings or Settings()
        self._db_factory = db_factory

    # ── 验证设置 ──────────────────────────────────────────

    def create_auth_settings(
        self,
        user_id: int,
        pin: str | None = None,
        pattern: str | None = None,
        is_fingerprint_enabled: bool = False,
        is_face_id_enabled: bool = False,
        max_auth_attempts: int = 5,
        lockout_duration: int = 300,
    ) -> AuthSettings:
        """
        创建用户验证设置，PIN / 图案以 bcrypt 哈希保存。

        Raises:
            InvalidRequestError: 参数不合法或设置已存在。
        """
        if max_auth_attempts < 2:
            raise InvalidRequestError("最大尝试次数不能小于 2")
        if lockout_duration <= 0:
            raise InvalidRequestError("锁定时长必须大于 0")

        now = datetime.now().strftime(_TS_FORMAT)
        db = self._db_factory()
        try:
            db.execute(
                """INSERT INTO user_auth_settings
                   (user_id, pin_hash, pattern_hash, is_fingerprint_enabled,
                    is_face_id_enabled, max_auth_attempts, lockout_duration,
                    is_locked, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (
                    user_id,
                    hash_secret(pin) if pin else None,
                    hash_secret(pattern) if pattern else None,
                    int(is_fingerprint_enabled),
                    int(is_face_id_enabled),
                    max_auth_attempts,
                    lockout_duration,
                    now, now,
                ),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise InvalidRequestError(f"用户 {user_id} 的验证设置已存在") from e
        finally:
            db.close()
        return self.get_auth_settings(user_id)

    def get_auth_settings(self, user_id: int) -> AuthSettings:
        """读取验证设置（不返回哈希值）。"""
        db = self._db_factory()
        try:
            row = db.execute(
                "SELECT * FROM user_auth_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"未找到用户 {user_id} 的验证设置")
        return _to_settings(row)

    def update_auth_settings(self, user_id: int, **changes) -> AuthSettings:
        """
        修改验证设置。支持 pin、pattern（重新哈希）以及
        is_fingerprint_enabled、is_face_id_enabled、max_auth_attempts、lockout_duration。
        """
        assignments = []
        params = []
        if changes.get("pin"):
            assignments.append("pin_hash = ?")
            params.append(hash_secret(changes["pin"]))
        if changes.get("pattern"):
            assignments.append("pattern_hash = ?")
            params.append(hash_secret(changes["pattern"]))
        for name in _UPDATABLE_FIELDS:
            if changes.get(name) is not None:
                value = changes[name]
                if name == "max_auth_attempts" and value < 2:
                    raise InvalidRequestError("最大尝试次数不能小于 2")
                if name == "lockout_duration" and value <= 0:
                    raise InvalidRequestError("锁定时长必须大于 0")
                assignments.append(f"{name} = ?")
                params.append(int(value))

        if not assignments:
            return self.get_auth_settings(user_id)

        assignments.append("updated_at = ?")
        params.append(datetime.now().strftime(_TS_FORMAT))
        params.append(user_id)

        db = self._db_factory()
        try:
            cursor = db.execute(
                f"UPDATE user_auth_settings SET {', '.join(assignments)} WHERE user_id = ?",
                params,
            )
            db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"未找到用户 {user_id} 的验证设置")
        finally:
            db.close()
        return self.get_auth_settings(user_id)

    # ── 验证 ──────────────────────────────────────────────

    def _record_attempt(
        self,
        db: sqlite3.Connection,
        user_id: int,
        auth_type: str,
        is_success: bool,
        failure_reason: str | None,
        device_info: str | None,
    ) -> None:
        db.execute(
            """INSERT INTO auth_attempts
               (user_id, auth_type, is_success, failure_reason, device_info, attempted_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, auth_type, int(is_success), failure_reason, device_info,
             datetime.now().strftime(_TS_FORMAT)),
        )

    def _recent_failures(self, db: sqlite3.Connection, user_id: int, now: datetime) -> int:
        """
        统计窗口内、最近一次成功之后的失败次数。
        锁定期间被拒绝的尝试（ACCOUNT_LOCKED）只做审计，不计入。
        """
        cutoff = (now - timedelta(minutes=self.settings.auth_failure_window_minutes)).strftime(_TS_FORMAT)
        row = db.execute(
            """SELECT COUNT(*) AS cnt FROM auth_attempts
               WHERE user_id = ?
                 AND is_success = 0
                 AND COALESCE(failure_reason, '') != ?
                 AND attempted_at >= ?
                 AND attempt_id > COALESCE(
                     (SELECT MAX(attempt_id) FROM auth_attempts
                      WHERE user_id = ? AND is_success = 1), 0)""",
            (user_id, ACCOUNT_LOCKED, cutoff, user_id),
        ).fetchone()
        return row["cnt"]

    @staticmethod
    def _check(row: sqlite3.Row, auth_type: str, auth_value: str | None) -> str | None:
        """按验证方式校验，成功返回 None，失败返回原因代码。"""
        if auth_type == AuthType.PIN:
            return None if verify_secret(auth_value, row["pin_hash"]) else WRONG_PIN
        if auth_type == AuthType.PATTERN:
            return None if verify_secret(auth_value, row["pattern_hash"]) else WRONG_PATTERN
        if auth_type == AuthType.FINGERPRINT:
            return None if row["is_fingerprint_enabled"] else BIOMETRIC_NOT_ENABLED
        if auth_type == AuthType.FACE_ID:
            return None if row["is_face_id_enabled"] else BIOMETRIC_NOT_ENABLED
        return INVALID_AUTH_TYPE

    def authenticate(
        self,
        user_id: int,
        auth_type: str,
        auth_value: str | None = None,
        device_info: str | None = None,
    ) -> AuthResult:
        """
        执行一次身份验证。

        - 锁定中：直接返回 ACCOUNT_LOCKED，仅写审计记录，不计入失败次数
        - 锁定已过期：自动解锁后继续验证
        - 成功：如处于锁定状态则解锁
        - 失败：remaining = max_auth_attempts - 窗口内失败次数，
          remaining <= 1 时立即锁定，返回剩余次数 0

        Raises:
            NotFoundError: 用户未配置验证设置。
        """
        now = datetime.now()
        db = self._db_factory()
        try:
            # 锁定状态的读取与更新在同一写事务内
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(
                "SELECT * FROM user_auth_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            if not row:
                raise NotFoundError(f"未找到用户 {user_id} 的验证设置")

            # 检查锁定状态
            if row["is_locked"] and row["locked_until"]:
                locked_until = datetime.strptime(row["locked_until"], _TS_FORMAT)
                if now < locked_until:
                    self._record_attempt(db, user_id, auth_type, False, ACCOUNT_LOCKED, device_info)
                    db.commit()
                    logger.info("验证被拒绝（锁定中）: user_id=%s, until=%s", user_id, row["locked_until"])
                    return AuthResult(
                        success=False,
                        locked=True,
                        failure_reason=ACCOUNT_LOCKED,
                        remaining_attempts=0,
                        locked_until=row["locked_until"],
                    )
                # 锁定已过期，自动解锁
                db.execute(
                    "UPDATE user_auth_settings SET is_locked = 0, locked_until = NULL WHERE user_id = ?",
                    (user_id,),
                )
                logger.info("锁定已过期，自动解锁: user_id=%s", user_id)

            reason = self._check(row, auth_type, auth_value)
            self._record_attempt(db, user_id, auth_type, reason is None, reason, device_info)

            if reason is None:
                if row["is_locked"]:
                    db.execute(
                        "UPDATE user_auth_settings SET is_locked = 0, locked_until = NULL WHERE user_id = ?",
                        (user_id,),
                    )
                db.commit()
                return AuthResult(success=True, locked=False)

            failures = self._recent_failures(db, user_id, now)
            remaining = max(0, row["max_auth_attempts"] - failures)

            if remaining <= 1:
                locked_until = (now + timedelta(seconds=row["lockout_duration"])).strftime(_TS_FORMAT)
                db.execute(
                    """UPDATE user_auth_settings
                       SET is_locked = 1, locked_until = ?, updated_at = ?
                       WHERE user_id = ?""",
                    (locked_until, now.strftime(_TS_FORMAT), user_id),
                )
                db.commit()
                logger.warning(
                    "连续验证失败，账号锁定: user_id=%s, failures=%d, until=%s",
                    user_id, failures, locked_until,
                )
                return AuthResult(
                    success=False,
                    locked=True,
                    failure_reason=ACCOUNT_LOCKED,
                    remaining_attempts=0,
                    locked_until=locked_until,
                )

            db.commit()
            return AuthResult(
                success=False,
                locked=False,
                failure_reason=reason,
                remaining_attempts=remaining - 1,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def require(self, request: AuthRequest) -> AuthResult:
        """
        验证并要求成功。

        Raises:
            AuthFailureError: 验证失败，result 属性携带 AuthResult。
        """
        result = self.authenticate(
            request.user_id, request.auth_type, request.auth_value, request.device_info
        )
        if not result.success:
            raise AuthFailureError(failure_message(result.failure_reason), result)
        return result

    def get_auth_attempts(self, user_id: int, limit: int = 20) -> list[AuthAttempt]:
        """最近的验证审计记录，按时间倒序。"""
        db = self._db_factory()
        try:
            rows = db.execute(
                """SELECT * FROM auth_attempts
                   WHERE user_id = ?
                   ORDER BY attempt_id DESC
                   LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        finally:
            db.close()
        attempts = [from_row(AuthAttempt, r) for r in rows]
        for a in attempts:
            a.is_success = bool(a.is_success)
        return attempts
