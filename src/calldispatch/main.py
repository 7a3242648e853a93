"""
FastAPI application entry point.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calldispatch import __version__
from calldispatch.calls.router import router as calls_router
from calldispatch.config import get_settings
from calldispatch.runtime import Runtime
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import (
    AppError,
    ConfigurationMissingError,
    NotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from calldispatch.shared.logging import correlation_id_var, get_logger, setup_logging
from calldispatch.telephony.factory import get_provider_gateway
from calldispatch.telephony.webhooks.router import router as webhooks_router

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    runtime: Runtime | None = getattr(app.state, "runtime", None)
    owns_runtime = runtime is None
    if runtime is None:
        db = DatabaseManager(settings.database_url)
        runtime = Runtime.build(settings, db, get_provider_gateway())
        app.state.runtime = runtime

    await runtime.runner.resume()

    yield

    logger.info("Shutting down application")
    if owns_runtime:
        await runtime.shutdown()
    else:
        await runtime.runner.shutdown()
        await runtime.stopper.drain()
    logger.info("Application shutdown complete")


def _error_body(exc: AppError) -> dict[str, object]:
    return {"detail": {"code": exc.code, "message": exc.message}}


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Prebuilt runtime; when omitted the lifespan builds one from
            settings.
    """
    settings = get_settings()

    app = FastAPI(
        title="Call Dispatch API",
        description="Outbound call batch orchestration",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))

    @app.exception_handler(ConfigurationMissingError)
    async def _configuration_missing(_: Request, exc: ConfigurationMissingError) -> JSONResponse:
        logger.error("Provider configuration missing", extra={"setting": exc.setting})
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=_error_body(exc)
        )

    @app.exception_handler(ProviderUnavailableError)
    async def _provider_unavailable(_: Request, exc: ProviderUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=_error_body(exc))

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def correlation_id_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(calls_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
