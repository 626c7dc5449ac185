import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.modules.provisioning.adapters.registry import build_repositories
from app.modules.provisioning.api.v1.scim import (
    ScimError,
    provisioning_error_response,
    scim_error_response,
)
from app.modules.provisioning.domain.service import ScimServices, build_services
from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import (
    STORAGE_BACKEND_SQL,
    Settings,
    get_settings,
    reload_settings_from_environment,
)
from app.shared.core.exceptions import ProvisioningException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.db.session import dispose_db_runtime, get_session_maker, init_db

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


async def build_runtime_services(settings_obj: Settings) -> ScimServices:
    """Select the storage backend and wire the User/Group services on top of it."""
    backend = settings_obj.SCIM_STORAGE_BACKEND
    if backend == STORAGE_BACKEND_SQL:
        await init_db()
        users, groups = build_repositories(backend, session_maker=get_session_maker())
    else:
        users, groups = build_repositories(backend)
    logger.info("scim_storage_ready", backend=backend)
    return build_services(
        users, groups, default_page_size=settings_obj.SCIM_DEFAULT_PAGE_SIZE
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, env=settings.ENVIRONMENT)

    # Services injected by the caller (tests, embedding) are left untouched.
    owns_services = getattr(app.state, "scim_services", None) is None
    if owns_services:
        app.state.scim_services = await build_runtime_services(settings)

    yield

    logger.info("app_stopping")
    if owns_services:
        app.state.scim_services = None
        if settings.SCIM_STORAGE_BACKEND == STORAGE_BACKEND_SQL:
            await dispose_db_runtime()
            logger.info("db_engine_disposed")


def _is_scim_path(request: Request) -> bool:
    return request.url.path.startswith("/scim/")


def _json_safe(value: Any) -> Any:
    if isinstance(value, Exception):
        return str(value)
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
    sanitized = []
    for err in errors:
        clean = dict(err)
        if "ctx" in clean and isinstance(clean["ctx"], dict):
            clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
        if "input" in clean:
            clean["input"] = _json_safe(clean["input"])
        sanitized.append(clean)
    return sanitized


def create_app(*, services: ScimServices | None = None) -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )
    application.state.scim_services = services

    @application.exception_handler(ScimError)
    async def scim_error_handler(_request: Request, exc: ScimError) -> JSONResponse:
        """Return SCIM-compliant error responses for /scim/v2 endpoints."""
        return scim_error_response(exc)

    @application.exception_handler(ProvisioningException)
    async def provisioning_exception_handler(
        request: Request, exc: ProvisioningException
    ) -> JSONResponse:
        """Map service-layer exceptions onto SCIM error documents."""
        logger.info(
            "provisioning_request_failed",
            path=request.url.path,
            code=exc.code,
            status_code=exc.status_code,
        )
        return provisioning_error_response(exc)

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        errors = _sanitize_errors(exc.errors())
        if _is_scim_path(request):
            first = errors[0] if errors else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            detail = f"{location}: {first.get('msg', 'invalid value')}".strip(": ")
            return scim_error_response(ScimError(400, detail, scim_type="invalidValue"))
        return JSONResponse(
            status_code=422,
            content={
                "error": "Unprocessable Entity",
                "code": "VALIDATION_ERROR",
                "message": "The request body or parameters are invalid.",
                "details": errors,
            },
        )

    @application.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error_type=type(exc).__name__,
            exc_info=True,
        )
        if _is_scim_path(request):
            return scim_error_response(ScimError(500, "Internal Server Error"))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "code": "INTERNAL_ERROR",
                "message": "An unexpected internal error occurred",
            },
        )

    register_api_routers(application)
    register_lifecycle_routes(
        application,
        app_name=settings.APP_NAME,
        version=settings.VERSION,
    )
    application.add_middleware(RequestIDMiddleware)
    return application


# Uvicorn requires 'app' name by default in start parameters.
app: FastAPI = create_app()

__all__ = ["app", "create_app", "lifespan", "build_runtime_services"]
