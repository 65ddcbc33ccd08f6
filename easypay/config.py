"""
运行配置：启动时从环境变量（及 .env）读取一次，构造 Settings 后注入各服务。
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


@dataclass
class Settings:
    app_env: str = "production"
    # 支付网关：未配置 gateway_url 时使用本地模拟
    gateway_url: Optional[str] = None
    gateway_timeout: float = 10.0
    gateway_latency: float = 1.0
    gateway_failure_rate: float = 0.05
    # 积分
    point_earn_rate: Decimal = Decimal("0.01")
    point_expiry_days: int = 365
    # 身份验证失败统计窗口（分钟）
    auth_failure_window_minutes: int = 5
    # 非积分部分退款到账的工作日数
    refund_business_days: int = 5
    testing: bool = False


def load_settings() -> Settings:
    """读取环境变量构造 Settings。开发环境下网关模拟失败率默认 1%，其余 5%。"""
    load_dotenv()

    app_env = os.getenv("APP_ENV", "production")
    default_rate = 0.01 if app_env == "development" else 0.05
    failure_rate = os.getenv("GATEWAY_FAILURE_RATE")

    return Settings(
        app_env=app_env,
        gateway_url=os.getenv("GATEWAY_URL") or None,
        gateway_timeout=float(os.getenv("GATEWAY_TIMEOUT", "10")),
        gateway_latency=float(os.getenv("GATEWAY_LATENCY", "1.0")),
        gateway_failure_rate=float(failure_rate) if failure_rate else default_rate,
        point_earn_rate=Decimal(os.getenv("POINT_EARN_RATE", "0.01")),
        point_expiry_days=int(os.getenv("POINT_EXPIRY_DAYS", "365")),
        auth_failure_window_minutes=int(os.getenv("AUTH_FAILURE_WINDOW_MINUTES", "5")),
        refund_business_days=int(os.getenv("REFUND_BUSINESS_DAYS", "5")),
        testing=os.getenv("TESTING") == "1",
    )


@lru_cache
def get_settings() -> Settings:
    """FastAPI 依赖项：进程内只加载一次配置。"""
    return load_settings()
