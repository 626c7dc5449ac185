from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.modules.provisioning.api.v1.scim import router as scim_router

logger = structlog.get_logger()

_REQUIRED_API_PREFIXES = {"/scim/v2"}


def _validate_router_registry(routes: list[tuple[Any, str | None]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        route_list = getattr(router, "routes", None)
        if not isinstance(route_list, list) or not route_list:
            raise RuntimeError("Router registry includes an empty router definition")
        if prefix is None:
            continue
        normalized_prefix = prefix.strip()
        if not normalized_prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if normalized_prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {normalized_prefix}")
        seen_prefixes.add(normalized_prefix)

    missing_prefixes = sorted(_REQUIRED_API_PREFIXES - seen_prefixes)
    if missing_prefixes:
        raise RuntimeError(
            "Router registry is missing required API prefixes: "
            + ", ".join(missing_prefixes)
        )


def register_api_routers(app: FastAPI) -> None:
    routes: list[tuple[Any, str | None]] = [(scim_router, "/scim/v2")]
    _validate_router_registry(routes)
    for router, prefix in routes:
        if prefix is None:
            app.include_router(router)
        else:
            app.include_router(router, prefix=prefix)


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(request: Request) -> JSONResponse:
        """Readiness: the service container exists and storage answers a count query."""
        services = getattr(request.app.state, "scim_services", None)
        if services is None:
            return JSONResponse(
                status_code=503, content={"status": "unhealthy", "storage": "uninitialised"}
            )
        try:
            await services.users.repository.select_all(limit=0, offset=0)
        except Exception as exc:  # noqa: BLE001
            logger.error("health_check_storage_failed", error=str(exc))
            return JSONResponse(
                status_code=503, content={"status": "unhealthy", "storage": "unreachable"}
            )
        return JSONResponse(status_code=200, content={"status": "healthy", "storage": "ok"})
