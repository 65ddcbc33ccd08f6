"""
EasyPay 应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── 后台任务 ──────────────────────────────────────────────

async def _refund_settlement_task() -> None:
    """定期结转到期的非积分退款（每 60 秒）。"""
    from easypay.config import get_settings
    from easypay.services.cancel_service import CancelService

    svc = CancelService(get_settings())
    while True:
        try:
            svc.settle_due_refunds()
            logger.debug("退款结转检查完成")
        except Exception as e:
            logger.error("退款结转检查异常: %s", e)
        await asyncio.sleep(60)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from easypay.config import get_settings
    from easypay.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if not get_settings().testing:
        tasks.append(asyncio.create_task(_refund_settlement_task()))
        logger.info("后台任务已启动：退款结转")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="EasyPay", description="积分结算后台", lifespan=lifespan)

# ── 路由注册 ──────────────────────────────────────────────

from easypay.routes.orders import router as orders_router
from easypay.routes.payments import router as payments_router
from easypay.routes.users import router as users_router

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(users_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
