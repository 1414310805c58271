"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire API routers (rider/driver/admin)
- Register centralized exception handlers
- Provide middleware: request-id logging
- Add health / readiness endpoints
- Create DB tables on startup (when USE_DB is on)
Notes:
- The hourly payment expiration sweep runs in its own process:
  python -m workers.expiration_worker
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
import uvicorn

# routers
from api import routes_rider, routes_driver, routes_admin
from config.settings import settings
from core.exception_handlers import register_exception_handlers
from core.response import ok, error
from core.logging import configure_logging, request_logging_middleware
from core.singleton import init_storage

# engine is None unless USE_DB is on
from core.db import engine

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION, debug=settings.DEBUG)

# CORS: rider app and operator console are served from other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_rider.router, prefix="", tags=["rider"])
app.include_router(routes_driver.router, prefix="/driver", tags=["driver"])
app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])

# Register centralized exception handlers
register_exception_handlers(app)

# Add request logging middleware (adds X-Request-ID header and logs)
app.middleware("http")(request_logging_middleware)

# Liveness / readiness probes
@app.get("/health")
async def health():
    """Process is up; does not touch the store."""
    return ok({"status": "ok"})

@app.get("/ready")
async def ready():
    """Ready when the DB answers (always ready on the in-memory store)."""
    if engine is None:
        return ok({"ready": True, "db": False})
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content=error(code="db_unreachable", message="DB unavailable"))
    return ok({"ready": True, "db": True})

@app.on_event("startup")
async def on_startup():
    """Create DB tables (development convenience). In production use migrations instead."""
    try:
        await init_storage()
    except Exception as e:
        # Do not crash the process for a missing DB during local dev
        logger.warning("DB initialization failed on startup (ok for local dev): %s", e)

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn/gunicorn with workers.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
