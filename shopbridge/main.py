# shopbridge/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from shopbridge.core.config import get_settings
from shopbridge.core.logging_config import configure_logging
from shopbridge.routes import health
from shopbridge.routes.platforms.tiktok import router as tiktok_router
from shopbridge.scheduler import start_scheduler, stop_scheduler

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        await start_scheduler()
    else:
        logger.info("Scheduled sync is disabled. Set SCHEDULER_ENABLED=true to enable")
    try:
        yield  # This is where the app runs
    finally:
        if settings.SCHEDULER_ENABLED:
            await stop_scheduler()

app = FastAPI(
    title="ShopBridge",
    lifespan=lifespan
)

# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    response = await call_next(request)
    return response

app.include_router(tiktok_router)
app.include_router(health.router)  # Health check should be accessible without auth
