from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from fanauth.api.error_handling import register_exception_handlers
from fanauth.api.routes import router
from fanauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails before serving."""
    from fanauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Fan Platform Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with ``X-Request-ID`` (client supplied or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Report store and Redis reachability."""
    from fanauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        checks["database"] = {"ok": await _run_bounded("database", _db_probe)}
    else:
        checks["database"] = {"ok": True, "mode": "memory"}

    if runtime.cache is not None:
        checks["redis"] = {"ok": await _run_bounded("redis", runtime.cache.verify_connection)}
    else:
        checks["redis"] = {"ok": True, "mode": "in_process"}

    healthy = all(check["ok"] for check in checks.values())
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
