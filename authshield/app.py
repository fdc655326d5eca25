from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from authshield.api.error_handling import register_exception_handlers
from authshield.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the CSRF sweeper on startup; stop it and close the store on shutdown."""
    from authshield.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.rate_limiter.validate_rules(getattr(app.state, "rate_limit_rules", ()))
    await runtime.start()

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request, call_next):
    """Tag every log line of the request with ``X-Request-ID`` (generated if absent)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def health() -> Dict[str, Any]:
    from authshield.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        cache_ok = False
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False

    return {
        "status": "healthy" if cache_ok else "unhealthy",
        "checks": {"cache": {"status": "healthy" if cache_ok else "unhealthy", "type": type(runtime.cache).__name__}},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(*, required_rules=None) -> FastAPI:
    """Build the FastAPI application.

    ``required_rules`` lists the rate-limit rule names the host routes use;
    an unknown name fails startup instead of the first request.
    """
    app = FastAPI(title="authshield", version=__version__, lifespan=lifespan)
    if required_rules is not None:
        app.state.rate_limit_rules = list(required_rules)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.get("/healthz")(health)
    return app
