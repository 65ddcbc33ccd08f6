"""
支付网关客户端：对非积分部分执行扣款（capture）。

- 配置了 GATEWAY_URL 时，以 JSON POST 调用外部网关，请求带超时
- 未配置时本地模拟：等待 gateway_latency 秒，按 gateway_failure_rate 随机失败
- POINT 支付不调用外部网关，直接生成交易号
"""

import logging
import random
import secrets
import string
import time

import httpx

from easypay.config import Settings
from easypay.models.schemas import PaymentMethod
from easypay.services.errors import GatewayError

logger = logging.getLogger(__name__)


def _random_suffix(length: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class PaymentGateway:
    """支付网关（外部扣款接口的替身）。"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def capture(self, payment_method: str, amount: int, method_id: str | None = None) -> dict:
        """
        扣款。

        Returns:
            {"transaction_id": "..."}

        Raises:
            GatewayError: 网关拒绝、网络异常或超时。
        """
        if payment_method == PaymentMethod.POINT:
            return {"transaction_id": f"POINT_{int(time.time() * 1000)}"}

        logger.info(
            "外部扣款开始: method=%s, amount=%s, method_id=%s",
            payment_method, amount, method_id,
        )
        if self.settings.gateway_url:
            result = self._capture_remote(payment_method, amount, method_id)
        else:
            result = self._capture_simulated(payment_method, amount)
        logger.info("外部扣款成功: transaction_id=%s", result["transaction_id"])
        return result

    def _capture_remote(self, payment_method: str, amount: int, method_id: str | None) -> dict:
        payload = {
            "payment_method": payment_method,
            "amount": amount,
            "method_id": method_id,
        }
        try:
            with httpx.Client(timeout=self.settings.gateway_timeout) as client:
                response = client.post(self.settings.gateway_url, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GatewayError(f"支付网关请求超时: {e}")
        except httpx.HTTPError as e:
            raise GatewayError(f"请求支付网关失败: {e}")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(f"解析支付网关响应失败: {e}")

        transaction_id = data.get("transaction_id") if isinstance(data, dict) else None
        if not transaction_id:
            raise GatewayError("支付网关响应缺少 transaction_id 字段")
        return {"transaction_id": transaction_id}

    def _capture_simulated(self, payment_method: str, amount: int) -> dict:
        if self.settings.gateway_latency > 0:
            time.sleep(self.settings.gateway_latency)

        if random.random() < self.settings.gateway_failure_rate:
            logger.warning("外部扣款失败（模拟）: method=%s, amount=%s", payment_method, amount)
            raise GatewayError("外部支付处理失败")

        transaction_id = f"EXT_{payment_method}_{int(time.time() * 1000)}_{_random_suffix()}"
        return {"transaction_id": transaction_id}
