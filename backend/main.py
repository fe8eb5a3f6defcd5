"""
Market Survival - simulated stock market game server.
Runs one authoritative market session and settles player accounts against it.
"""
import logging
import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from database import SessionLocal, init_db
from routers import (
    admin_router,
    market_router,
    accounts_router
)
from services.market_service import MarketService

settings = get_settings()


# ── Structured JSON Logging ─────────────────────────────────────────
class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production observability."""
    def format(self, record):
        log = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            log["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "request_id"):
            log["request_id"] = record.request_id
        return json.dumps(log)


def setup_logging():
    """Configure structured logging for all app loggers."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


logger = logging.getLogger("marketsurvival")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    setup_logging()
    logger.info("Starting Market Survival API", extra={"news_policy": settings.news_policy})
    init_db()
    logger.info("Database initialized")

    market = MarketService.from_settings(settings, session_factory=SessionLocal)
    was_running = market.load()
    app.state.market = market
    if settings.auto_start or was_running:
        await market.start()
    yield
    await market.shutdown()
    logger.info("Shutting down Market Survival API")


# ── OpenAPI metadata ────────────────────────────────────────────────
OPENAPI_TAGS = [
    {"name": "market", "description": "Market snapshot, news feed, instrument charts and the SSE snapshot stream"},
    {"name": "accounts", "description": "Game accounts: market, leveraged and limit orders, portfolio, notifications"},
    {"name": "admin", "description": "Session clock control: start, stop, reset (admin token required)"},
    {"name": "ops", "description": "Health checks and operational endpoints"},
]

app = FastAPI(
    title="Market Survival API",
    description=(
        "# Market Survival - Simulated Stock Market Game\n\n"
        "A shared, continuously running market in which players trade fictional instruments:\n\n"
        "- Mean-reverting price process with short trending runs\n"
        "- Delayed news jumps, some of them misleading\n"
        "- Daily price limits, trading halts, delisting and relisting\n"
        "- Market, limit and leveraged orders with forced liquidation\n\n"
        "**Tech:** FastAPI + PostgreSQL"
    ),
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
    contact={"name": "Market Survival Team"},
    license_info={"name": "MIT"},
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiter state (required by slowapi)
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from routers.admin import limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Include routers
app.include_router(market_router)
app.include_router(accounts_router)
app.include_router(admin_router)


# ── Request logging middleware ───────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every request with method, path, and response time."""
    import time
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    if not request.url.path.startswith(("/health", "/api/market/stream")):
        logger.info(
            "%s %s %d %.0fms",
            request.method, request.url.path, response.status_code, duration_ms,
        )
    return response


@app.get("/", tags=["ops"])
async def root():
    """Root endpoint with API discovery links."""
    return {
        "name": "Market Survival API",
        "version": "1.0.0",
        "description": "Simulated stock market game server",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health", tags=["ops"])
async def health_check(request: Request):
    """Health check for Docker/k8s readiness probes. Returns DB and market clock status."""
    from sqlalchemy import text
    checks = {"api": "ok"}
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        checks["database"] = "ok"
    except Exception:
        checks["database"] = "error"
    market = getattr(request.app.state, "market", None)
    if market is not None:
        checks["market_clock"] = "running" if market.clock.running else "stopped"
        checks["market_tick"] = market.session.tick
        if market.clock.last_error:
            checks["market_error"] = market.clock.last_error
    overall = "healthy" if checks["database"] == "ok" else "degraded"
    return {"status": overall, "service": "marketsurvival-api", "version": "1.0.0", "checks": checks}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
