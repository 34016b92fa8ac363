from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import emr
from services.entitlement_errors import (
    EntitlementError,
    PaymentGatewayUnavailable,
    SubscriptionStoreUnavailable,
)
from services.payment_gateway import PaymentGatewayRejected

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PYTEST_RUNNING = os.environ.get("PYTEST_RUNNING", "").strip().lower() in ("1", "true")

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'emr_entitlements')

jobstores = {}
if not PYTEST_RUNNING:
    try:
        from pymongo import MongoClient
        mongo_client = MongoClient(mongo_url, tz_aware=True)
        jobstores['default'] = MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores, timezone="UTC")

# Job runners are shared with the admin sweep endpoints
from job_runner import run_emr_expiry_sweep, run_emr_reminder_sweep


def configure_jobs(target: AsyncIOScheduler) -> None:
    # EMR expiry sweep every hour at :05 UTC
    target.add_job(
        run_emr_expiry_sweep,
        CronTrigger(minute=5, timezone="UTC"),
        id="emr_expiry_sweep",
        name="EMR Subscription Expiry Sweep",
        replace_existing=True
    )

    # EMR renewal reminders daily at 9:00 AM UTC
    target.add_job(
        run_emr_reminder_sweep,
        CronTrigger(hour=9, minute=0, timezone="UTC"),
        id="emr_reminder_sweep",
        name="EMR Renewal Reminders",
        replace_existing=True
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if PYTEST_RUNNING:
        # Tests patch the database and drive sweeps directly
        yield
        return

    # Startup
    logger.info("Starting EMR Entitlement API")
    await database.connect()

    if not os.environ.get("RAZORPAY_KEY_ID") or not os.environ.get("RAZORPAY_KEY_SECRET"):
        logger.error("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET is not set. EMR checkout and payment verification will fail.")

    configure_jobs(scheduler)
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down EMR Entitlement API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

app = FastAPI(
    title="EMR Entitlement API",
    description="EMR add-on subscriptions, payment verification and screen access",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(emr.router)  # EMR plans, purchase flow and access checks

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Business outcomes: stable error_code plus structured details
@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PaymentGatewayUnavailable)
async def gateway_unavailable_handler(request: Request, exc: PaymentGatewayUnavailable):
    logger.error("Payment gateway unavailable path=%s subscription_id=%s: %s", request.url.path, exc.subscription_id, exc)
    return JSONResponse(
        status_code=503,
        content={
            "detail": "Payment gateway unavailable. Please retry.",
            "error_code": "PAYMENT_GATEWAY_UNAVAILABLE",
            "subscription_id": exc.subscription_id,
        },
    )


@app.exception_handler(PaymentGatewayRejected)
async def gateway_rejected_handler(request: Request, exc: PaymentGatewayRejected):
    logger.error("Payment gateway rejected order path=%s status=%s", request.url.path, exc.status)
    return JSONResponse(
        status_code=502,
        content={"detail": "Payment gateway rejected the order", "error_code": "PAYMENT_GATEWAY_REJECTED"},
    )


@app.exception_handler(SubscriptionStoreUnavailable)
async def store_unavailable_handler(request: Request, exc: SubscriptionStoreUnavailable):
    logger.error("Subscription store unavailable path=%s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable", "error_code": "STORE_UNAVAILABLE"},
    )


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
