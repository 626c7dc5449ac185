"""
SCIM 2.0 Provisioning API.

Supported resources:
- Users  (unique on userName)
- Groups (unique on displayName; members are weak references to Users)

Discovery endpoints are unauthenticated. Resource endpoints require
`Authorization: Bearer <token>`; when SCIM_BEARER_TOKEN is unset any
non-empty token is accepted (development mode).
"""

from __future__ import annotations

import secrets
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response

from app.modules.provisioning.api.v1.scim_schemas import (
    SCHEMA_BUILDERS,
    resource_types_response,
    service_provider_config,
)
from app.modules.provisioning.domain.resources import (
    SCIM_ERROR_SCHEMA,
    SCIM_LIST_SCHEMA,
    Group,
    PatchRequest,
    ScimResource,
    User,
)
from app.modules.provisioning.domain.service import ScimServices
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ProvisioningException,
    ResourceConflictError,
    ResourceNotFoundError,
)

logger = structlog.get_logger()
router = APIRouter(tags=["SCIM"])

SCIM_MEDIA_TYPE = "application/scim+json"


class ScimError(Exception):
    def __init__(
        self, status_code: int, detail: str, *, scim_type: str | None = None
    ) -> None:
        super().__init__(detail)
        self.status_code = int(status_code)
        self.detail = str(detail)
        self.scim_type = scim_type


def scim_error_response(exc: ScimError) -> JSONResponse:
    payload: dict[str, Any] = {
        "schemas": [SCIM_ERROR_SCHEMA],
        "status": str(exc.status_code),
        "detail": exc.detail,
    }
    if exc.scim_type:
        payload["scimType"] = exc.scim_type
    return JSONResponse(
        status_code=exc.status_code,
        content=payload,
        media_type=SCIM_MEDIA_TYPE,
        headers={"WWW-Authenticate": "Bearer"},
    )


def provisioning_error_response(exc: ProvisioningException) -> JSONResponse:
    scim_type = "uniqueness" if isinstance(exc, ResourceConflictError) else None
    return scim_error_response(
        ScimError(exc.status_code, exc.message, scim_type=scim_type)
    )


def _extract_bearer_token(request: Request) -> str:
    raw = (request.headers.get("Authorization") or "").strip()
    if not raw.lower().startswith("bearer "):
        raise ScimError(
            401, "Missing or invalid Authorization header", scim_type="invalidSyntax"
        )
    token = raw.split(" ", 1)[-1].strip()
    if not token:
        raise ScimError(401, "Missing bearer token", scim_type="invalidSyntax")
    return token


async def require_scim_token(request: Request) -> None:
    token = _extract_bearer_token(request)
    expected = get_settings().SCIM_BEARER_TOKEN
    if expected and not secrets.compare_digest(
        token.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("scim_auth_rejected", path=request.url.path)
        raise ScimError(401, "Unauthorized", scim_type="invalidToken")


def get_scim_services(request: Request) -> ScimServices:
    services = getattr(request.app.state, "scim_services", None)
    if services is None:
        raise ScimError(503, "SCIM services are not initialised")
    return services


def _scim_response(content: dict[str, Any], *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, media_type=SCIM_MEDIA_TYPE)


def _created_response(request: Request, resource: ScimResource, endpoint: str) -> JSONResponse:
    response = _scim_response(resource.to_scim(), status_code=201)
    base_url = str(request.base_url).rstrip("/")
    response.headers["Location"] = f"{base_url}/scim/v2/{endpoint}/{resource.id}"
    return response


def _check_patch_size(patch: PatchRequest) -> None:
    limit = get_settings().SCIM_MAX_PATCH_OPERATIONS
    if len(patch.Operations) > limit:
        raise ScimError(
            400,
            f"Too many operations: {len(patch.Operations)} (max {limit})",
            scim_type="tooMany",
        )


def _not_found(resource_type: str, resource_id: str) -> ResourceNotFoundError:
    return ResourceNotFoundError(f"{resource_type} {resource_id} not found")


# Discovery


@router.get("/ServiceProviderConfig")
async def get_service_provider_config() -> JSONResponse:
    return _scim_response(service_provider_config())


@router.get("/Schemas")
async def list_schemas(request: Request) -> JSONResponse:
    base_url = str(request.base_url).rstrip("/")
    resources = [build(base_url=base_url) for build in SCHEMA_BUILDERS.values()]
    return _scim_response(
        {
            "schemas": [SCIM_LIST_SCHEMA],
            "totalResults": len(resources),
            "startIndex": 1,
            "itemsPerPage": len(resources),
            "Resources": resources,
        }
    )


@router.get("/Schemas/{schema_id:path}")
async def get_schema(request: Request, schema_id: str) -> JSONResponse:
    build = SCHEMA_BUILDERS.get((schema_id or "").strip())
    if build is None:
        raise ScimError(404, "Resource not found")
    return _scim_response(build(base_url=str(request.base_url).rstrip("/")))


@router.get("/ResourceTypes")
async def get_resource_types() -> JSONResponse:
    return _scim_response(resource_types_response())


# Users


@router.get("/Users", dependencies=[Depends(require_scim_token)])
async def list_users(
    start_index: int = Query(default=1, alias="startIndex"),
    count: int | None = Query(default=None),
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    page = await services.users.list_resources(start_index, count)
    return _scim_response(page.to_scim())


@router.post("/Users", dependencies=[Depends(require_scim_token)])
async def create_user(
    request: Request,
    body: User,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    user = await services.users.create(body)
    return _created_response(request, user, "Users")


@router.get("/Users/{user_id}", dependencies=[Depends(require_scim_token)])
async def get_user(
    user_id: str,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    user = await services.users.get_by_id(user_id)
    if user is None:
        raise _not_found("User", user_id)
    return _scim_response(user.to_scim())


@router.put("/Users/{user_id}", dependencies=[Depends(require_scim_token)])
async def put_user(
    user_id: str,
    body: User,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    user = await services.users.replace(user_id, body)
    if user is None:
        raise _not_found("User", user_id)
    return _scim_response(user.to_scim())


@router.patch("/Users/{user_id}", dependencies=[Depends(require_scim_token)])
async def patch_user(
    user_id: str,
    body: PatchRequest,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    _check_patch_size(body)
    user = await services.users.patch(user_id, body)
    if user is None:
        raise _not_found("User", user_id)
    return _scim_response(user.to_scim())


@router.delete("/Users/{user_id}", dependencies=[Depends(require_scim_token)])
async def delete_user(
    user_id: str,
    services: ScimServices = Depends(get_scim_services),
) -> Response:
    if not await services.users.delete(user_id):
        raise _not_found("User", user_id)
    return Response(status_code=204)


# Groups


@router.get("/Groups", dependencies=[Depends(require_scim_token)])
async def list_groups(
    start_index: int = Query(default=1, alias="startIndex"),
    count: int | None = Query(default=None),
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    page = await services.groups.list_resources(start_index, count)
    return _scim_response(page.to_scim())


@router.post("/Groups", dependencies=[Depends(require_scim_token)])
async def create_group(
    request: Request,
    body: Group,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    group = await services.groups.create(body)
    return _created_response(request, group, "Groups")


@router.get("/Groups/{group_id}", dependencies=[Depends(require_scim_token)])
async def get_group(
    group_id: str,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    group = await services.groups.get_by_id(group_id)
    if group is None:
        raise _not_found("Group", group_id)
    return _scim_response(group.to_scim())


@router.put("/Groups/{group_id}", dependencies=[Depends(require_scim_token)])
async def put_group(
    group_id: str,
    body: Group,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    group = await services.groups.replace(group_id, body)
    if group is None:
        raise _not_found("Group", group_id)
    return _scim_response(group.to_scim())


@router.patch("/Groups/{group_id}", dependencies=[Depends(require_scim_token)])
async def patch_group(
    group_id: str,
    body: PatchRequest,
    services: ScimServices = Depends(get_scim_services),
) -> JSONResponse:
    _check_patch_size(body)
    group = await services.groups.patch(group_id, body)
    if group is None:
        raise _not_found("Group", group_id)
    return _scim_response(group.to_scim())


@router.delete("/Groups/{group_id}", dependencies=[Depends(require_scim_token)])
async def delete_group(
    group_id: str,
    services: ScimServices = Depends(get_scim_services),
) -> Response:
    if not await services.groups.delete(group_id):
        raise _not_found("Group", group_id)
    return Response(status_code=204)
