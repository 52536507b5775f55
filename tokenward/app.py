from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from tokenward.api.error_handling import register_exception_handlers
from tokenward.api.routes import router
from tokenward.logging import get_logger, set_correlation_id
from tokenward.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP binding around an explicitly owned Runtime.

    When no runtime is supplied one is built from the environment at
    startup and closed on shutdown; a supplied runtime is left open for its
    owner to close.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = Runtime()
        await app.state.runtime.start()
        logger.info("token_service_started", version=__version__)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
            elif app.state.runtime.refresher is not None:
                await app.state.runtime.refresher.stop()
            logger.info("token_service_stopped")

    app = FastAPI(title="Tokenward", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with the caller's X-Request-ID or a new UUID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        return response

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Liveness plus a bounded check of the backing store."""
        checks: Dict[str, Any] = {}
        store = app.state.runtime.store
        verify = getattr(store, "verify_connection", None)
        healthy = True
        if verify is not None:
            try:
                await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
                checks["store"] = {"status": "ok"}
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component="store")
                checks["store"] = {"status": "timeout"}
                healthy = False
            except Exception as exc:
                logger.error("health_check_store_failed", error=str(exc))
                checks["store"] = {"status": "error"}
                healthy = False
        else:
            checks["store"] = {"status": "ok", "type": type(store).__name__}
        body = {"status": "ok" if healthy else "degraded", "version": __version__, "checks": checks}
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    register_exception_handlers(app)
    app.include_router(router)
    return app
