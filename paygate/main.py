"""
PayGate 应用入口：FastAPI 应用实例、路由注册和生命周期。
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库，关闭时中止等待中的设备下发重试。"""
    from paygate.database import init_db
    from paygate.services.dispatcher import get_dispatcher, shutdown_dispatcher

    init_db()
    logger.info("数据库初始化完成")
    get_dispatcher()

    yield

    shutdown_dispatcher()
    logger.info("设备下发器已关闭")


app = FastAPI(title="PayGate", description="payOS 支付链接与确认网关", lifespan=lifespan)


# ── 路由注册 ──────────────────────────────────────────────

from paygate.routes.bill import router as bill_router
from paygate.routes.webhook import router as webhook_router
from paygate.routes.logs import router as logs_router

app.include_router(bill_router)
app.include_router(webhook_router)
app.include_router(logs_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}


# ── 未匹配路由 ────────────────────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def not_found_handler(request: Request, exc: StarletteHTTPException):
    """未匹配的路径或方法统一返回纯文本 404。"""
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not found", status_code=404)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)
