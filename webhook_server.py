"""
FastAPI Webhook Server for ChatWallet
Hosts the flow endpoint, provider and WhatsApp webhooks, the admin surface,
health checks and, in the lifespan, the background job scheduler
"""
from contextlib import asynccontextmanager
import logging
import os
import time

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.admin import router as admin_router
from handlers.flow_endpoint import router as flow_router
from handlers.rubies_webhook import router as rubies_router
from handlers.whatsapp_webhook import router as whatsapp_router
from jobs.consolidated_scheduler import get_consolidated_scheduler_instance
from services.session_store import get_session_store
from utils.background_task_runner import cleanup_background_tasks
from utils.exception_handler import ChatWalletError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 500

# WEBHOOK PERFORMANCE MONITORING: rolling figures for /health
webhook_performance_stats = {
    'total_requests': 0,
    'slow_requests': 0,
    'avg_response_time': 0.0,
    'last_reset': time.time()
}


def track_webhook_performance(path: str, processing_time_ms: float):
    """Track webhook performance metrics"""
    stats = webhook_performance_stats
    stats['total_requests'] += 1

    if processing_time_ms > SLOW_REQUEST_MS:
        stats['slow_requests'] += 1
        logger.warning(f"⚠️ SLOW_WEBHOOK: {path} took {processing_time_ms:.1f}ms (>{SLOW_REQUEST_MS}ms threshold)")

    total = stats['total_requests']
    stats['avg_response_time'] = ((stats['avg_response_time'] * (total - 1)) + processing_time_ms) / total


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema, configuration report, scheduler
    Shutdown: scheduler, in-flight background tasks, short-TTL store
    """
    logger.info(f"🔧 Worker {os.getpid()} starting ({Config.CURRENT_ENVIRONMENT}, {Config.DATABASE_SOURCE})")

    missing = Config.validate()
    if missing:
        logger.warning(f"⚠️ Missing configuration: {', '.join(missing)}")

    if not create_tables():
        logger.error("❌ Database schema could not be verified - requests touching the ledger will fail")

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = get_consolidated_scheduler_instance()
        scheduler.start()
        logger.info("✅ Background job scheduler started")

    app.state.started_at = time.time()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield

    logger.info(f"🔄 Worker {os.getpid()} shutting down...")
    if scheduler is not None:
        scheduler.stop()
    await cleanup_background_tasks()
    await get_session_store().close()


app = FastAPI(
    title=f"{Config.PLATFORM_NAME} Webhook Server",
    description="WhatsApp chat payments: flows, provider webhooks and admin",
    lifespan=lifespan,
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    track_webhook_performance(request.url.path, (time.perf_counter() - started) * 1000)
    return response


@app.exception_handler(ChatWalletError)
async def chat_wallet_error_handler(request: Request, exc: ChatWalletError):
    level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    logger.log(level, f"❌ REQUEST_FAILED: path={request.url.path} category={exc.code} cause={exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# whatsapp before the generic /webhook/{provider} route
app.include_router(whatsapp_router)
app.include_router(rubies_router)
app.include_router(flow_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": f"{Config.PLATFORM_NAME} webhook server is running"}


@app.get("/health")
async def health_check():
    """Database and short-TTL store status"""
    database_ok = test_connection()
    store_ok = await get_session_store().health_check()
    started_at = getattr(app.state, "started_at", None)
    healthy = database_ok and store_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "service": "chatwallet",
            "database": "ok" if database_ok else "unavailable",
            "store": "ok" if store_ok else "unavailable",
            "uptime_seconds": round(time.time() - started_at, 2) if started_at else 0,
            "performance": {
                "total_requests": webhook_performance_stats['total_requests'],
                "slow_requests": webhook_performance_stats['slow_requests'],
                "avg_response_ms": round(webhook_performance_stats['avg_response_time'], 1),
            },
        },
    )
