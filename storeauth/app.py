from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from storeauth.api.error_handling import register_exception_handlers
from storeauth.api.routes import router
from storeauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-session sweeper; flush events and close pools on exit."""
    from storeauth.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.sweeper.start()

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Storefront Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the request's log context."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        # Responses carry tokens; keep them out of shared caches
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from storeauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "_connect"):

        def _db_ping() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_ping), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "unhealthy"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    checks["events"] = {
        "status": "healthy",
        "publisher": runtime.settings.event_publisher.value,
        "pending": runtime.dispatcher.pending,
    }
    checks["session_sweeper"] = {"running": runtime.sweeper.running}

    healthy = all(c.get("status", "healthy") == "healthy" for c in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
