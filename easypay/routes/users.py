"""
用户身份验证路由：验证设置管理、身份验证、验证审计记录。
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from easypay.config import Settings, get_settings
from easypay.services.auth_gate import AuthGate, failure_message
from easypay.services.errors import EasyPayError

router = APIRouter(prefix="/v1/users")


class AuthSettingsRequest(BaseModel):
    pin: Optional[str] = None
    pattern: Optional[str] = None
    is_fingerprint_enabled: bool = False
    is_face_id_enabled: bool = False
    max_auth_attempts: int = 5
    lockout_duration: int = 300


class UpdateAuthSettingsRequest(BaseModel):
    pin: Optional[str] = None
    pattern: Optional[str] = None
    is_fingerprint_enabled: Optional[bool] = None
    is_face_id_enabled: Optional[bool] = None
    max_auth_attempts: Optional[int] = None
    lockout_duration: Optional[int] = None


class AuthenticateRequest(BaseModel):
    user_id: int
    auth_type: str
    auth_value: Optional[str] = None
    device_info: Optional[str] = None


def _fail(e: EasyPayError) -> JSONResponse:
    return JSONResponse(content={"code": -1, "msg": str(e), "error": e.code})


@router.post("/authenticate")
def authenticate(body: AuthenticateRequest, settings: Settings = Depends(get_settings)):
    """
    身份验证。

    成功返回 {code: 1, result: {...}}，
    失败返回 {code: -1, msg: "...", result: {...}}，result 中含剩余次数和锁定状态。
    """
    try:
        result = AuthGate(settings).authenticate(
            body.user_id, body.auth_type, body.auth_value, body.device_info
        )
    except EasyPayError as e:
        return _fail(e)

    if result.success:
        return JSONResponse(content={"code": 1, "result": asdict(result)})
    return JSONResponse(content={
        "code": -1,
        "msg": failure_message(result.failure_reason),
        "result": asdict(result),
    })


@router.post("/{user_id}/auth-settings")
def create_auth_settings(
    user_id: int, body: AuthSettingsRequest, settings: Settings = Depends(get_settings)
):
    try:
        created = AuthGate(settings).create_auth_settings(
            user_id,
            pin=body.pin,
            pattern=body.pattern,
            is_fingerprint_enabled=body.is_fingerprint_enabled,
            is_face_id_enabled=body.is_face_id_enabled,
            max_auth_attempts=body.max_auth_attempts,
            lockout_duration=body.lockout_duration,
        )
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "settings": asdict(created)})


@router.get("/{user_id}/auth-settings")
async def get_auth_settings(user_id: int, settings: Settings = Depends(get_settings)):
    try:
        current = AuthGate(settings).get_auth_settings(user_id)
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "settings": asdict(current)})


@router.put("/{user_id}/auth-settings")
def update_auth_settings(
    user_id: int, body: UpdateAuthSettingsRequest, settings: Settings = Depends(get_settings)
):
    changes = {
        "pin": body.pin,
        "pattern": body.pattern,
        "is_fingerprint_enabled": body.is_fingerprint_enabled,
        "is_face_id_enabled": body.is_face_id_enabled,
        "max_auth_attempts": body.max_auth_attempts,
        "lockout_duration": body.lockout_duration,
    }
    try:
        updated = AuthGate(settings).update_auth_settings(user_id, **changes)
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "settings": asdict(updated)})


@router.get("/{user_id}/auth-attempts")
async def auth_attempts(
    user_id: int,
    limit: int = Query(20, ge=1, le=100),
    settings: Settings = Depends(get_settings),
):
    attempts = AuthGate(settings).get_auth_attempts(user_id, limit)
    return JSONResponse(content={"code": 1, "attempts": [asdict(a) for a in attempts]})
