from __future__ import annotations

from typing import Any

from app.modules.provisioning.domain.resources import (
    SCIM_GROUP_SCHEMA,
    SCIM_LIST_SCHEMA,
    SCIM_USER_SCHEMA,
)

SCIM_SCHEMA_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Schema"
SCIM_RESOURCE_TYPE_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:ResourceType"
SCIM_SERVICE_PROVIDER_CONFIG_SCHEMA = (
    "urn:ietf:params:scim:schemas:core:2.0:ServiceProviderConfig"
)


def _string(name: str, *, required: bool = False, case_exact: bool = False) -> dict[str, Any]:
    return {
        "name": name,
        "type": "string",
        "multiValued": False,
        "required": required,
        "caseExact": case_exact,
        "mutability": "readWrite",
        "returned": "default",
    }


def _sub(name: str, type_: str = "string") -> dict[str, Any]:
    return {"name": name, "type": type_, "multiValued": False, "required": False}


def scim_user_schema_resource(*, base_url: str) -> dict[str, Any]:
    return {
        "schemas": [SCIM_SCHEMA_SCHEMA],
        "id": SCIM_USER_SCHEMA,
        "name": "User",
        "description": "Directory user account",
        "attributes": [
            {**_string("userName", required=True, case_exact=True), "uniqueness": "server"},
            {
                "name": "name",
                "type": "complex",
                "multiValued": False,
                "required": False,
                "mutability": "readWrite",
                "returned": "default",
                "subAttributes": [
                    _sub("formatted"),
                    _sub("familyName"),
                    _sub("givenName"),
                    _sub("middleName"),
                    _sub("honorificPrefix"),
                    _sub("honorificSuffix"),
                ],
            },
            _string("displayName"),
            _string("nickName"),
            {**_string("profileUrl"), "type": "reference", "referenceTypes": ["external"]},
            _string("title"),
            _string("userType"),
            _string("preferredLanguage"),
            _string("locale"),
            _string("timezone"),
            {
                "name": "active",
                "type": "boolean",
                "multiValued": False,
                "required": False,
                "mutability": "readWrite",
                "returned": "default",
            },
            {
                "name": "emails",
                "type": "complex",
                "multiValued": True,
                "required": False,
                "mutability": "readWrite",
                "returned": "default",
                "subAttributes": [
                    _sub("value"),
                    _sub("display"),
                    _sub("type"),
                    _sub("primary", "boolean"),
                ],
            },
        ],
        "meta": {
            "resourceType": "Schema",
            "location": f"{base_url.rstrip('/')}/scim/v2/Schemas/{SCIM_USER_SCHEMA}",
        },
    }


def scim_group_schema_resource(*, base_url: str) -> dict[str, Any]:
    return {
        "schemas": [SCIM_SCHEMA_SCHEMA],
        "id": SCIM_GROUP_SCHEMA,
        "name": "Group",
        "description": "Directory group",
        "attributes": [
            {**_string("displayName", required=True, case_exact=True), "uniqueness": "server"},
            _string("externalId"),
            {
                "name": "members",
                "type": "complex",
                "multiValued": True,
                "required": False,
                "mutability": "readWrite",
                "returned": "default",
                "subAttributes": [
                    _sub("value"),
                    {**_sub("$ref", "reference"), "referenceTypes": ["User", "Group"]},
                    _sub("display"),
                    _sub("type"),
                ],
            },
        ],
        "meta": {
            "resourceType": "Schema",
            "location": f"{base_url.rstrip('/')}/scim/v2/Schemas/{SCIM_GROUP_SCHEMA}",
        },
    }


SCHEMA_BUILDERS = {
    SCIM_USER_SCHEMA: scim_user_schema_resource,
    SCIM_GROUP_SCHEMA: scim_group_schema_resource,
}


def service_provider_config() -> dict[str, Any]:
    return {
        "schemas": [SCIM_SERVICE_PROVIDER_CONFIG_SCHEMA],
        "patch": {"supported": True},
        "bulk": {"supported": False, "maxOperations": 0, "maxPayloadSize": 0},
        "filter": {"supported": False, "maxResults": 0},
        "changePassword": {"supported": False},
        "sort": {"supported": False},
        "etag": {"supported": False},
        "authenticationSchemes": [
            {
                "type": "oauthbearertoken",
                "name": "OAuth Bearer Token",
                "description": "Static SCIM bearer token",
                "specUri": "https://www.rfc-editor.org/rfc/rfc6750",
            }
        ],
        "meta": {"resourceType": "ServiceProviderConfig"},
    }


def resource_types_response() -> dict[str, Any]:
    return {
        "schemas": [SCIM_LIST_SCHEMA],
        "totalResults": 2,
        "startIndex": 1,
        "itemsPerPage": 2,
        "Resources": [
            {
                "schemas": [SCIM_RESOURCE_TYPE_SCHEMA],
                "id": "User",
                "name": "User",
                "endpoint": "/Users",
                "schema": SCIM_USER_SCHEMA,
            },
            {
                "schemas": [SCIM_RESOURCE_TYPE_SCHEMA],
                "id": "Group",
                "name": "Group",
                "endpoint": "/Groups",
                "schema": SCIM_GROUP_SCHEMA,
            },
        ],
    }
