import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from . import config, metrics, throttle
from .auth_middleware import GatewayAuthMiddleware
from .pipeline import credits_router, thumbnail_router
from .pipeline.storage import r2_configured

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Thumbnail service starting up...")
    metrics.set_gauge("start_time", time.time())
    if throttle.get_redis() is None:
        logger.info("No Redis — generation throttle is in-memory")
    yield
    logger.info("Thumbnail service shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(GatewayAuthMiddleware)
app.include_router(credits_router)
app.include_router(thumbnail_router)


@app.get("/health")
def health_check():
    """Verify the service is running and which backends are configured."""
    return {
        "status": "ok",
        "environment": config.ENVIRONMENT,
        "gemini_api_key_set": bool(config.GEMINI_API_KEY),
        "youtube_api_key_set": bool(config.YOUTUBE_API_KEY),
        "supabase_url_set": bool(config.SUPABASE_URL),
        "r2_configured": r2_configured(),
        "admin_emails": len(config.ADMIN_EMAILS),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all service metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("thumbforge.main:app", host="0.0.0.0", port=port, reload=True)
