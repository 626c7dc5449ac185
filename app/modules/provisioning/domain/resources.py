"""
SCIM 2.0 resource documents (RFC 7643) for Users and Groups.

The models are the single typed representation shared by the service layer,
the patch interpreter and the HTTP boundary. `ResourceAttributes` describes
which attributes of a resource are scalars, nested objects or multi-valued
collections so the patch interpreter can stay resource-agnostic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Literal, Mapping, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)

SCIM_USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
SCIM_GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
SCIM_PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"
SCIM_LIST_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
SCIM_ERROR_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:Error"


def format_scim_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class Meta(BaseModel):
    resourceType: str
    created: datetime | None = None
    lastModified: datetime | None = None
    location: str | None = None
    version: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_serializer("created", "lastModified")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return format_scim_timestamp(value)


class Name(BaseModel):
    formatted: str | None = None
    familyName: str | None = None
    givenName: str | None = None
    middleName: str | None = None
    honorificPrefix: str | None = None
    honorificSuffix: str | None = None

    model_config = ConfigDict(extra="ignore")


class Email(BaseModel):
    value: str
    display: str | None = None
    type: str | None = None
    primary: bool = False

    model_config = ConfigDict(extra="ignore")


class Member(BaseModel):
    value: str
    ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices("$ref", "ref"),
        serialization_alias="$ref",
    )
    display: str | None = None
    type: str | None = "User"

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> Any:
        return "User" if value is None else value


class ScimResource(BaseModel):
    schemas: list[str] = Field(default_factory=list)
    id: str | None = None
    externalId: str | None = None
    meta: Meta | None = None

    model_config = ConfigDict(extra="ignore")

    def to_scim(self) -> dict[str, Any]:
        """Return the wire representation (aliases applied, unset values dropped)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class User(ScimResource):
    schemas: list[str] = Field(default_factory=lambda: [SCIM_USER_SCHEMA])
    userName: str
    name: Name | None = None
    displayName: str | None = None
    nickName: str | None = None
    profileUrl: str | None = None
    title: str | None = None
    userType: str | None = None
    preferredLanguage: str | None = None
    locale: str | None = None
    timezone: str | None = None
    active: bool = True
    emails: list[Email] | None = None


class Group(ScimResource):
    schemas: list[str] = Field(default_factory=lambda: [SCIM_GROUP_SCHEMA])
    displayName: str
    members: list[Member] | None = None


class PatchOperation(BaseModel):
    op: Literal["add", "replace", "remove"]
    path: str | None = None
    value: Any | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("op", mode="before")
    @classmethod
    def _normalize_op(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class PatchRequest(BaseModel):
    schemas: list[str] = Field(default_factory=lambda: [SCIM_PATCH_OP_SCHEMA])
    Operations: list[PatchOperation] = Field(
        default_factory=list,
        validation_alias=AliasChoices("Operations", "operations"),
    )

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


ResourceT = TypeVar("ResourceT", bound=ScimResource)


class ListResponse(BaseModel, Generic[ResourceT]):
    schemas: list[str] = Field(default_factory=lambda: [SCIM_LIST_SCHEMA])
    totalResults: int
    startIndex: int
    itemsPerPage: int
    Resources: list[ResourceT]

    model_config = ConfigDict(extra="forbid")

    def to_scim(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True, slots=True)
class CollectionSpec:
    """A multi-valued attribute whose entries are keyed by `key`."""

    entry_model: type[BaseModel]
    key: str = "value"
    enriched: bool = False

    def entry_fields(self) -> dict[str, str]:
        """Lower-cased wire names (field names and aliases) to field names."""
        names: dict[str, str] = {}
        for field_name, info in self.entry_model.model_fields.items():
            names[field_name.lower()] = field_name
            if info.serialization_alias:
                names[info.serialization_alias.lower()] = field_name
        return names


@dataclass(frozen=True, slots=True)
class ResourceAttributes:
    resource_type: str
    scalars: frozenset[str]
    complex: Mapping[str, type[BaseModel]]
    collections: Mapping[str, CollectionSpec]
    unique_attribute: str
    read_only: frozenset[str] = field(
        default_factory=lambda: frozenset({"id", "meta", "schemas"})
    )

    def resolve(self, name: str) -> str | None:
        """Map a client-supplied attribute name to its canonical spelling."""
        wanted = (name or "").strip().lower()
        for candidate in (
            *self.read_only,
            *self.scalars,
            *self.complex,
            *self.collections,
        ):
            if candidate.lower() == wanted:
                return candidate
        return None

    @property
    def collection_names(self) -> frozenset[str]:
        return frozenset(self.collections)


USER_ATTRIBUTES = ResourceAttributes(
    resource_type="User",
    unique_attribute="userName",
    scalars=frozenset(
        {
            "externalId",
            "userName",
            "displayName",
            "nickName",
            "profileUrl",
            "title",
            "userType",
            "preferredLanguage",
            "locale",
            "timezone",
            "active",
        }
    ),
    complex={"name": Name},
    collections={"emails": CollectionSpec(entry_model=Email)},
)

GROUP_ATTRIBUTES = ResourceAttributes(
    resource_type="Group",
    unique_attribute="displayName",
    scalars=frozenset({"externalId", "displayName"}),
    complex={},
    collections={"members": CollectionSpec(entry_model=Member, enriched=True)},
)
