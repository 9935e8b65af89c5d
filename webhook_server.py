"""
FastAPI server for the payment engine
Provider webhooks, the payment and settings APIs, health checks and the crypto monitor
lifecycle.
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

from contextlib import asynccontextmanager  # noqa: E402

from fastapi import FastAPI  # noqa: E402

from config import Config  # noqa: E402
from database import create_tables, dispose_engine  # noqa: E402
from handlers.payment_api import router as payment_api_router  # noqa: E402
from handlers.payment_config_api import router as payment_config_router  # noqa: E402
from handlers.payment_webhooks import router as payment_webhook_router  # noqa: E402
from jobs.crypto_payment_monitor import CryptoMonitorScheduler, crypto_payment_monitor  # noqa: E402
from utils.datetime_helpers import to_iso, utc_now  # noqa: E402

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_monitor_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and start the crypto monitor; stop it and release the pool on shutdown"""
    global _monitor_scheduler
    logger.info(f"🔧 Payment server worker {os.getpid()} starting...")
    Config.log_environment_config()
    await create_tables()

    if Config.CRYPTO_MONITOR_ENABLED:
        _monitor_scheduler = CryptoMonitorScheduler(crypto_payment_monitor)
        _monitor_scheduler.start()
    else:
        logger.info("⏸️ Crypto payment monitor disabled by configuration")

    yield

    logger.info(f"🔄 Payment server worker {os.getpid()} shutting down...")
    if _monitor_scheduler is not None:
        _monitor_scheduler.stop()
        _monitor_scheduler = None
    await dispose_engine()


app = FastAPI(
    title="Payment Reconciliation Engine",
    description="Multi-provider payment integration with webhook and crypto reconciliation",
    lifespan=lifespan,
)

app.include_router(payment_webhook_router)
app.include_router(payment_config_router)
app.include_router(payment_api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": Config.ENVIRONMENT, "timestamp": to_iso(utc_now())}


@app.get("/payments/monitor/stats")
async def crypto_monitor_stats():
    return {"success": True, "stats": crypto_payment_monitor.get_stats()}
