"""
订单路由：创建订单、订单查询、取消订单。
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from easypay.config import Settings, get_settings
from easypay.services.cancel_service import CancelService
from easypay.services.errors import EasyPayError
from easypay.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


class OrderItemRequest(BaseModel):
    menu_id: int
    quantity: int


class CreateOrderRequest(BaseModel):
    user_id: int
    store_id: int
    items: list[OrderItemRequest]
    point_used: int = 0


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


def _fail(e: EasyPayError) -> JSONResponse:
    return JSONResponse(content={"code": -1, "msg": str(e), "error": e.code})


@router.post("")
async def create_order(body: CreateOrderRequest):
    """创建订单，返回订单及明细（状态 PENDING）。"""
    items = [{"menu_id": i.menu_id, "quantity": i.quantity} for i in body.items]
    try:
        order = OrderService().create_order(
            body.user_id, body.store_id, items, body.point_used
        )
    except EasyPayError as e:
        logger.info("创建订单失败: user_id=%s, error=%s", body.user_id, e)
        return _fail(e)
    return JSONResponse(content={"code": 1, "order": asdict(order)})


@router.get("/user/{user_id}")
async def user_orders(user_id: int):
    orders = OrderService().get_user_orders(user_id)
    return JSONResponse(content={"code": 1, "orders": [asdict(o) for o in orders]})


@router.get("/store/{store_id}")
async def store_orders(store_id: int):
    orders = OrderService().get_store_orders(store_id)
    return JSONResponse(content={"code": 1, "orders": [asdict(o) for o in orders]})


@router.get("/{order_id}")
async def order_summary(order_id: str):
    try:
        order = OrderService().get_order_summary(order_id)
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "order": asdict(order)})


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    settings: Settings = Depends(get_settings),
):
    """
    取消订单。已完成订单的积分部分立即退回，
    非积分部分生成退款单，按工作日到账。
    """
    try:
        result = CancelService(settings).cancel_order(order_id, body.reason)
    except EasyPayError as e:
        return _fail(e)
    return JSONResponse(content={"code": 1, "result": asdict(result)})


@router.get("/{order_id}/refunds")
async def order_refunds(order_id: str, settings: Settings = Depends(get_settings)):
    refunds = CancelService(settings).get_order_refunds(order_id)
    return JSONResponse(content={"code": 1, "refunds": [asdict(r) for r in refunds]})
