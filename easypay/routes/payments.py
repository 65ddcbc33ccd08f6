"""
支付路由：结算、验证后结算、支付记录、积分流水、钱包。
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from easypay.config import Settings, get_settings
from easypay.models.schemas import AuthRequest, PaymentRequest
from easypay.services.errors import EasyPayError
from easypay.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments")


class PaymentBody(BaseModel):
    order_id: str
    user_id: int
    payment_method: str
    payment_amount: int
    point_used: int = 0
    method_id: Optional[str] = None


class AuthenticateAndPayBody(PaymentBody):
    auth_type: str
    auth_value: Optional[str] = None
    device_info: Optional[str] = None


def _fail(e: EasyPayError) -> JSONResponse:
    return JSONResponse(content={"code": -1, "msg": str(e), "error": e.code})


def _payment_request(body: PaymentBody) -> PaymentRequest:
    return PaymentRequest(
        order_id=body.order_id,
        user_id=body.user_id,
        payment_method=body.payment_method,
        payment_amount=body.payment_amount,
        point_used=body.point_used,
        method_id=body.method_id,
    )


@router.post("")
def process_payment(body: PaymentBody, settings: Settings = Depends(get_settings)):
    """
    结算订单。

    成功返回 {code: 1, payment: {...}}，
    失败返回 {code: -1, msg: "...", error: "AMOUNT_MISMATCH" 等}。
    """
    try:
        result = SettlementService(settings).process_payment(_payment_request(body))
    except EasyPayError as e:
        logger.info("结算失败: order_id=%s, error=%s", body.order_id, e)
        return _fail(e)
    return JSONResponse(content={"code": 1, "payment": asdict(result)})


@router.post("/authenticate-and-pay")
def authenticate_and_pay(
    body: AuthenticateAndPayBody, settings: Settings = Depends(get_settings)
):
    """先进行身份验证，通过后结算。结果中分别给出验证和结算是否成功。"""
    auth = AuthRequest(
        user_id=body.user_id,
        auth_type=body.auth_type,
        auth_value=body.auth_value,
        device_info=body.device_info,
    )
    result = SettlementService(settings).authenticate_and_pay(auth, _payment_request(body))
    return JSONResponse(content={
        "code": 1 if result.payment_success else -1,
        "result": asdict(result),
    })


@router.get("/history/{user_id}")
async def payment_history(user_id: int, settings: Settings = Depends(get_settings)):
    records = SettlementService(settings).get_payment_history(user_id)
    return JSONResponse(content={"code": 1, "payments": [asdict(r) for r in records]})


@router.get("/points/{user_id}")
async def point_history(user_id: int, settings: Settings = Depends(get_settings)):
    history = SettlementService(settings).get_point_history(user_id)
    return JSONResponse(content={"code": 1, "history": [asdict(h) for h in history]})


@router.get("/wallet/{user_id}")
async def wallet(user_id: int, settings: Settings = Depends(get_settings)):
    try:
        info = SettlementService(settings).get_wallet(user_id)
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "wallet": asdict(info)})
