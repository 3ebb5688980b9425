"""
CampusBid Escrow — FastAPI Application
Configures CORS, security headers and rate limits, maps engine errors to
HTTP responses and initialises the database on startup.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncEngine

from campusbid.config import get_settings
from campusbid.database import async_session, create_tables, engine
from campusbid.exceptions import EngineError, GatewayFailure
from campusbid.middleware.rate_limit import limiter
from campusbid.middleware.security import SecurityHeadersMiddleware
from campusbid.routers.confirmations import router as confirmations_router
from campusbid.routers.disputes import router as disputes_router
from campusbid.routers.escrow import router as escrow_router
from campusbid.routers.transactions import router as transactions_router
from campusbid.routers.webhooks import router as webhooks_router
from campusbid.seed import seed_database
from campusbid.services.container import EngineServices, build_services

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("campusbid")


# ═══════════════════════════════════════════════════════
#  Background auto-release sweep
# ═══════════════════════════════════════════════════════

async def _auto_release_loop(services: EngineServices, interval: int) -> None:
    while True:
        try:
            await services.escrows.auto_release_due()
        except Exception:
            # Next tick retries; one bad sweep must not stop the loop
            logger.exception("Auto-release sweep failed")
        await asyncio.sleep(interval)


# ═══════════════════════════════════════════════════════
#  LIFESPAN — startup / shutdown
# ═══════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run on startup: create tables, seed, start the sweeper. Cleanup on shutdown."""
    logger.info("🚀 Starting %s…", settings.APP_NAME)
    bind: AsyncEngine = app.state.bind
    services: EngineServices = app.state.services

    await create_tables(bind)
    logger.info("✅ Database tables created / verified.")

    if settings.SEED_DEMO_DATA:
        await seed_database(services)

    sweeper = None
    if settings.AUTO_RELEASE_ENABLED:
        sweeper = asyncio.create_task(
            _auto_release_loop(services, settings.AUTO_RELEASE_INTERVAL_SECONDS)
        )
        logger.info("⏱  Auto-release sweep every %ss", settings.AUTO_RELEASE_INTERVAL_SECONDS)

    yield  # ← app runs here

    # Shutdown
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    await bind.dispose()
    logger.info("👋 %s shut down.", settings.APP_NAME)


# ═══════════════════════════════════════════════════════
#  Error mapping
# ═══════════════════════════════════════════════════════

async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Render every engine error as {success, reason, message[, details]}."""
    if isinstance(exc, GatewayFailure):
        logger.error("Gateway failure on %s %s: %s", request.method, request.url.path, exc.provider_reason)
    else:
        logger.info("%s on %s %s: %s", exc.reason, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ═══════════════════════════════════════════════════════
#  APP FACTORY
# ═══════════════════════════════════════════════════════

def create_app(
    services: Optional[EngineServices] = None,
    bind: Optional[AsyncEngine] = None,
) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Escrow, delivery confirmation and disputes for campus auctions",
        lifespan=lifespan,
    )
    app.state.bind = bind or engine
    app.state.services = services or build_services(async_session)

    # ── CORS ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Security Headers ──
    app.add_middleware(SecurityHeadersMiddleware)

    # ── Rate Limiter ──
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ── Engine errors ──
    app.add_exception_handler(EngineError, engine_error_handler)

    # ── Routers ──
    app.include_router(transactions_router)
    app.include_router(confirmations_router)
    app.include_router(escrow_router)
    app.include_router(disputes_router)
    app.include_router(webhooks_router)

    @app.get("/api/health")
    async def health_check():
        """Simple health check endpoint."""
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
        }

    return app


app = create_app()


# ═══════════════════════════════════════════════════════
#  RUN (for direct execution)
# ═══════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "campusbid.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
