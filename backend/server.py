from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from config import Settings
from dependencies import build_services
from routes import addons, subscriptions, webhooks
from services.entitlement_client import EntitlementClient
from services.errors import SubscriptionError
from services.plan_catalog import plan_catalog
from services.stripe_gateway import StripeGateway

import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = Settings.from_env()

# In-memory job store: jobs hold references to the live service graph
scheduler = AsyncIOScheduler()

from job_runner import run_entitlement_sync_worker, run_entitlement_sync_recovery

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Payments & Subscriptions API")
    await database.connect(settings)

    plan_catalog.log_price_configuration()
    gateway = StripeGateway(settings.stripe_secret_key, plan_catalog, settings.stripe_webhook_secret)
    gateway.open()
    if not settings.webhook_verification_enabled:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - webhook signatures will NOT be verified")

    entitlement_client = EntitlementClient(
        settings.space_url,
        settings.space_api_key,
        service_name=settings.space_service_name,
        free_plan=plan_catalog.free_plan,
    )
    await entitlement_client.open()

    services = build_services(settings, database.get_db(), gateway, entitlement_client, plan_catalog)
    app.state.services = services

    run_jobs = not os.environ.get("PYTEST_RUNNING")
    if run_jobs:
        # Entitlement outbox redelivery
        scheduler.add_job(
            run_entitlement_sync_worker,
            IntervalTrigger(seconds=settings.entitlement_sync_interval_seconds),
            args=[services.entitlements],
            id="entitlement_sync_worker",
            name="Entitlement Sync Worker",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Re-queue entries left RUNNING by a crashed worker
        scheduler.add_job(
            run_entitlement_sync_recovery,
            IntervalTrigger(minutes=5),
            args=[services.entitlements],
            id="entitlement_sync_recovery",
            name="Entitlement Sync Recovery",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Payments & Subscriptions API")
    if run_jobs:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await entitlement_client.close()
    gateway.close()
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Payments & Subscriptions API",
    description="Subscription lifecycle, add-ons and Stripe reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(subscriptions.router)
app.include_router(addons.router)
app.include_router(webhooks.router)


# Domain errors carry their own status code and stable error code
@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"error": "VALIDATION_ERROR", "detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8001")),
        reload=settings.environment == "development"
    )
