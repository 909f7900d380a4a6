from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .dependencies import ServiceContainer, build_container
from .routers import drugs
from .services.error_handling import (
    AppError,
    build_error_response,
    log_exception,
    map_exception_to_error_code,
    new_trace_id,
)
from .services.housekeeping import Housekeeper
from .services.shared_cache import RedisSharedCache, build_cache

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    settings = settings or get_settings()
    injected = container is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not injected and settings.redis_url:
            cache = await build_cache(settings)
            app.state.container = build_container(settings, cache=cache)
        current: ServiceContainer = app.state.container
        housekeeper = Housekeeper(settings=settings, cache=current.cache, audit=current.audit)
        housekeeper.start()
        try:
            yield
        finally:
            await housekeeper.stop()
            shared = getattr(current.cache, "shared", None)
            if isinstance(shared, RedisSharedCache):
                await shared.close()

    app = FastAPI(
        title="Drug Safety Verification Service",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.container = container or build_container(settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    async def _error_response(request: Request, exc: Exception, *, handled: bool):
        trace_id = new_trace_id()
        await log_exception(request=request, exc=exc, trace_id=trace_id, handled=handled)
        error_code, reason, status_code = map_exception_to_error_code(exc)
        debug_payload = {"trace_id": trace_id}
        if isinstance(exc, AppError) and exc.debug:
            debug_payload.update(exc.debug)
        return build_error_response(
            error_code=error_code,
            reason=reason,
            status_code=status_code,
            debug_payload=debug_payload,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return await _error_response(request, exc, handled=True)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _error_response(request, exc, handled=True)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return await _error_response(request, exc, handled=True)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return await _error_response(request, exc, handled=False)

    app.include_router(drugs.router)
    logger.info(
        "FastAPI app initialized (env=%s rxnav=%s redis=%s interactions=%s allergies=%s)",
        settings.env,
        settings.rxnav_base_url,
        "configured" if settings.redis_url else "not configured",
        settings.interaction_check_enabled,
        settings.allergy_check_enabled,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("drug_safety.main:app", host="0.0.0.0", port=8000)
