import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from callscribe.config import settings
from callscribe.database import init_db

from callscribe.api import (
    crm,
    health,
    internal,
    settings as settings_api,
    transcripts,
    webhooks,
)
from callscribe.utils.rate_limit import get_limiter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("callscribe.main")

app = FastAPI(title="Callscribe Call Intelligence API", version="1.0.0")

# Configure rate limiting
app.state.limiter = get_limiter()
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
async def startup_event():
    logger.info("Callscribe Backend Starting...")

    # Validate configuration (don't raise in dev mode)
    from callscribe.config import validate_config, ConfigValidationError, mask_url

    logger.info(f"Database: {mask_url(settings.DATABASE_URL)}")

    try:
        result = validate_config(raise_on_error=settings.ENVIRONMENT == "production")
        for warning in result.get("warnings", []):
            logger.warning(f"Config warning: {warning}")
        if result.get("errors"):
            for error in result["errors"]:
                logger.error(f"Config error: {error}")
    except ConfigValidationError as e:
        logger.critical(f"FATAL: {e}")
        raise SystemExit(1)

    # Create database tables
    init_db()
    logger.info("Database tables created/verified")

    # Start stale-transcript reconciliation
    if settings.RECONCILE_ENABLED:
        try:
            from callscribe.pipelines.dispatch import start_reconcile_sweep
            await start_reconcile_sweep()
        except Exception as e:
            logger.error(f"Failed to start reconcile sweep: {e}")

    logger.info("Callscribe Backend Started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on shutdown."""
    logger.info("Callscribe Backend Shutting Down...")

    from callscribe.pipelines.dispatch import dispatcher, stop_reconcile_sweep

    try:
        stop_reconcile_sweep()
    except Exception as e:
        logger.error(f"Error stopping reconcile sweep: {e}")

    # Let in-flight pipeline jobs finish
    try:
        cancelled = await dispatcher.drain()
        if cancelled:
            logger.warning(f"{cancelled} pipeline job(s) cancelled; the reconcile sweep will settle them")
    except Exception as e:
        logger.error(f"Error draining pipeline jobs: {e}")

    logger.info("Callscribe Backend Shutdown Complete")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(internal.router)
app.include_router(transcripts.router)
app.include_router(crm.router)
app.include_router(settings_api.router)


@app.get("/")
async def root():
    return {"message": "Callscribe API", "status": "running", "version": "1.0.0"}
