"""
托管结算服务应用入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

AUTO_COMPLETE_INTERVAL = int(os.environ.get("AUTO_COMPLETE_INTERVAL", "3600"))


# ── 后台任务 ──────────────────────────────────────────────

async def _auto_complete_task() -> None:
    """定期将超时未确认的预订自动完成并放款（默认每小时）。"""
    from app.services.booking_service import BookingService

    svc = BookingService()
    while True:
        try:
            result = await asyncio.to_thread(svc.auto_complete_bookings)
            logger.debug("自动完成检查完成: %s", result)
        except Exception as e:
            logger.error("自动完成任务异常: %s", e)
        await asyncio.sleep(AUTO_COMPLETE_INTERVAL)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from app.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_auto_complete_task()))
        logger.info("后台任务已启动：预订自动完成 (间隔 %d 秒)", AUTO_COMPLETE_INTERVAL)

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Escrow Settlement", description="预订托管结算与申诉处理", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 未处理异常 ────────────────────────────────────────────

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """业务层之外的异常同样返回 {"error", "code"}，并记录完整堆栈。"""
    logger.error("未处理的异常: %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "服务器内部错误", "code": "internal_error"},
    )


# ── 路由注册 ──────────────────────────────────────────────

from app.routes.disputes import router as disputes_router
from app.routes.bookings import router as bookings_router
from app.routes.admin import router as admin_router

app.include_router(disputes_router)
app.include_router(bookings_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
