"""
User and Group services.

One implementation programmed against `ResourceRepository`; the storage
technology is chosen by the adapter passed in. Each subclass supplies the
record codec for its resource kind.

Concurrency: every read-modify-write for a resource id runs under a keyed
asyncio lock, and creates also lock their uniqueness key. The repository's
unique index stays the final arbiter; `UniqueKeyViolation` surfaces as
`ResourceConflictError`.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import uuid4

import structlog
from pydantic import TypeAdapter, ValidationError

from app.modules.provisioning.domain.patch import apply_operations
from app.modules.provisioning.domain.repository import (
    Record,
    ResourceRepository,
    UniqueKeyViolation,
)
from app.modules.provisioning.domain.resolver import DirectoryReferenceResolver
from app.modules.provisioning.domain.resources import (
    GROUP_ATTRIBUTES,
    USER_ATTRIBUTES,
    Email,
    Group,
    ListResponse,
    Member,
    Meta,
    Name,
    PatchRequest,
    ResourceAttributes,
    ScimResource,
    User,
)
from app.modules.provisioning.domain.scim_utils import normalize_resource_id
from app.shared.core.async_utils import KeyedLock
from app.shared.core.exceptions import ResourceConflictError

logger = structlog.get_logger()

ResourceT = TypeVar("ResourceT", bound=ScimResource)
Clock = Callable[[], datetime]

DEFAULT_PAGE_SIZE = 100

_EMAILS = TypeAdapter(list[Email])
_MEMBERS = TypeAdapter(list[Member])


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_to_millis(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(
        microsecond=(value.microsecond // 1000) * 1000
    )


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("scim_record_json_invalid")
        return None


class ResourceService(Generic[ResourceT]):
    resource_model: type[ResourceT]
    attributes: ResourceAttributes
    endpoint: str

    def __init__(
        self,
        repository: ResourceRepository,
        *,
        clock: Clock | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.repository = repository
        self._clock = clock or utc_now
        self._locks = KeyedLock()
        self._default_page_size = default_page_size

    # Codec hooks

    def unique_key(self, resource: ResourceT) -> str:
        raise NotImplementedError

    def to_record(self, resource: ResourceT) -> Record:
        raise NotImplementedError

    def from_record(self, record: Record) -> ResourceT:
        raise NotImplementedError

    async def prepare(self, resource: ResourceT) -> ResourceT:
        """Hook run on create/replace payloads before they are stored."""
        return resource

    async def enrich_member(self, member: Member) -> Member:
        return member

    # Helpers

    def _now(self) -> datetime:
        return _truncate_to_millis(self._clock())

    def _stamp(
        self, resource: ResourceT, resource_id: str, previous: Meta | None
    ) -> ResourceT:
        now = self._now()
        created = previous.created if previous and previous.created else now
        last_modified = now
        if previous and previous.lastModified and previous.lastModified > now:
            last_modified = previous.lastModified
        meta = Meta(
            resourceType=self.attributes.resource_type,
            created=created,
            lastModified=last_modified,
            location=f"/{self.endpoint}/{resource_id}",
            version=previous.version if previous else None,
        )
        return resource.model_copy(update={"id": resource_id, "meta": meta})

    def _conflict(self, key: str) -> ResourceConflictError:
        return ResourceConflictError(
            f"{self.attributes.resource_type} with {self.attributes.unique_attribute} "
            f"'{key}' already exists",
            details={"resource_type": self.attributes.resource_type},
        )

    def _id_conflict(self, resource_id: str) -> ResourceConflictError:
        return ResourceConflictError(
            f"{self.attributes.resource_type} with id '{resource_id}' already exists",
            details={"resource_type": self.attributes.resource_type},
        )

    async def _load(self, resource_id: str) -> ResourceT | None:
        record = await self.repository.select_by_id(resource_id)
        if record is None:
            return None
        try:
            return self.from_record(record)
        except ValidationError as exc:
            logger.error(
                "scim_record_decode_failed",
                resource_type=self.attributes.resource_type,
                resource_id=resource_id,
                errors=exc.error_count(),
            )
            raise

    async def _ensure_key_available(self, key: str, resource_id: str) -> None:
        holder = await self.repository.select_by_unique_key(key)
        if holder is not None and str(holder.get("id")) != resource_id:
            raise self._conflict(key)

    async def _write(self, resource_id: str, resource: ResourceT) -> int:
        record = self.to_record(resource)
        record.pop("id", None)
        try:
            return await self.repository.update(resource_id, record)
        except UniqueKeyViolation as exc:
            raise self._conflict(self.unique_key(resource)) from exc

    # Operations

    async def list_resources(
        self, start_index: int = 1, count: int | None = None
    ) -> ListResponse[ResourceT]:
        start_index = max(1, int(start_index))
        if count is None:
            count = self._default_page_size
        count = max(0, int(count))

        page = await self.repository.select_all(limit=count, offset=start_index - 1)
        resources = [self.from_record(row) for row in page.rows]
        return ListResponse[self.resource_model](  # type: ignore[name-defined]
            totalResults=page.total,
            startIndex=start_index,
            itemsPerPage=len(resources),
            Resources=resources,
        )

    async def get_by_id(self, resource_id: str | None) -> ResourceT | None:
        normalized = normalize_resource_id(resource_id)
        if normalized is None:
            logger.info(
                "scim_resource_id_malformed",
                resource_type=self.attributes.resource_type,
                resource_id=resource_id,
            )
            return None
        return await self._load(normalized)

    async def create(self, resource: ResourceT) -> ResourceT:
        key = self.unique_key(resource)
        resource_id = normalize_resource_id(resource.id)
        if resource.id and resource_id is None:
            logger.warning(
                "scim_client_id_ignored",
                resource_type=self.attributes.resource_type,
                client_id=resource.id,
            )
        resource_id = resource_id or str(uuid4())

        async with self._locks.hold(f"key:{key}"), self._locks.hold(resource_id):
            if await self.repository.select_by_unique_key(key) is not None:
                raise self._conflict(key)

            prepared = await self.prepare(resource)
            stored = self._stamp(prepared, resource_id, None)
            try:
                await self.repository.insert(self.to_record(stored))
            except UniqueKeyViolation as exc:
                if exc.field_name == "id":
                    raise self._id_conflict(resource_id) from exc
                raise self._conflict(key) from exc

        logger.info(
            "scim_resource_created",
            resource_type=self.attributes.resource_type,
            resource_id=resource_id,
        )
        return stored

    async def replace(
        self, resource_id: str | None, resource: ResourceT
    ) -> ResourceT | None:
        normalized = normalize_resource_id(resource_id)
        if normalized is None:
            return None

        async with self._locks.hold(normalized):
            existing = await self._load(normalized)
            if existing is None:
                return None
            await self._ensure_key_available(self.unique_key(resource), normalized)

            prepared = await self.prepare(resource)
            stored = self._stamp(prepared, normalized, existing.meta)
            if await self._write(normalized, stored) == 0:
                return None

        logger.info(
            "scim_resource_replaced",
            resource_type=self.attributes.resource_type,
            resource_id=normalized,
        )
        return stored

    async def patch(
        self, resource_id: str | None, request: PatchRequest
    ) -> ResourceT | None:
        normalized = normalize_resource_id(resource_id)
        if normalized is None:
            return None

        async with self._locks.hold(normalized):
            existing = await self._load(normalized)
            if existing is None:
                return None

            patched = await apply_operations(
                existing, request.Operations, self.attributes, self.enrich_member
            )
            key = self.unique_key(patched)
            if key != self.unique_key(existing):
                await self._ensure_key_available(key, normalized)

            stored = self._stamp(patched, normalized, existing.meta)
            if await self._write(normalized, stored) == 0:
                return None

        logger.info(
            "scim_resource_patched",
            resource_type=self.attributes.resource_type,
            resource_id=normalized,
            operations=len(request.Operations),
        )
        return stored

    async def delete(self, resource_id: str | None) -> bool:
        normalized = normalize_resource_id(resource_id)
        if normalized is None:
            return False
        async with self._locks.hold(normalized):
            deleted = await self.repository.delete(normalized)
        if deleted:
            logger.info(
                "scim_resource_deleted",
                resource_type=self.attributes.resource_type,
                resource_id=normalized,
            )
        return deleted > 0


def _dump_meta(resource: ScimResource) -> str | None:
    if resource.meta is None:
        return None
    return resource.meta.model_dump_json(exclude_none=True)


def _load_meta(raw: str | None) -> Meta | None:
    payload = _load_json(raw)
    return Meta.model_validate(payload) if payload else None


class UserService(ResourceService[User]):
    resource_model = User
    attributes = USER_ATTRIBUTES
    endpoint = "Users"

    def unique_key(self, resource: User) -> str:
        return resource.userName

    def to_record(self, resource: User) -> Record:
        meta = resource.meta
        return {
            "id": resource.id,
            "external_id": resource.externalId,
            "user_name": resource.userName,
            "display_name": resource.displayName,
            "active": resource.active,
            "created": meta.created if meta else None,
            "last_modified": meta.lastModified if meta else None,
            "name_json": (
                resource.name.model_dump_json(exclude_none=True)
                if resource.name
                else None
            ),
            "emails_json": (
                _EMAILS.dump_json(resource.emails, exclude_none=True).decode()
                if resource.emails is not None
                else None
            ),
            "meta_json": _dump_meta(resource),
            "nick_name": resource.nickName,
            "profile_url": resource.profileUrl,
            "title": resource.title,
            "user_type": resource.userType,
            "preferred_language": resource.preferredLanguage,
            "locale": resource.locale,
            "timezone": resource.timezone,
        }

    def from_record(self, record: Record) -> User:
        name = _load_json(record.get("name_json"))
        emails = _load_json(record.get("emails_json"))
        return User(
            id=str(record["id"]),
            externalId=record.get("external_id"),
            userName=record["user_name"],
            displayName=record.get("display_name"),
            active=bool(record.get("active", True)),
            name=Name.model_validate(name) if name else None,
            emails=_EMAILS.validate_python(emails) if emails is not None else None,
            meta=_load_meta(record.get("meta_json")),
            nickName=record.get("nick_name"),
            profileUrl=record.get("profile_url"),
            title=record.get("title"),
            userType=record.get("user_type"),
            preferredLanguage=record.get("preferred_language"),
            locale=record.get("locale"),
            timezone=record.get("timezone"),
        )


class GroupService(ResourceService[Group]):
    resource_model = Group
    attributes = GROUP_ATTRIBUTES
    endpoint = "Groups"

    def __init__(
        self,
        repository: ResourceRepository,
        resolver: DirectoryReferenceResolver,
        *,
        clock: Clock | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        super().__init__(repository, clock=clock, default_page_size=default_page_size)
        self.resolver = resolver

    def unique_key(self, resource: Group) -> str:
        return resource.displayName

    async def enrich_member(self, member: Member) -> Member:
        if member.display is not None:
            return member
        label = await self.resolver.resolve_display_label(member.value)
        if label is None:
            return member
        return member.model_copy(update={"display": label})

    async def prepare(self, resource: Group) -> Group:
        if not resource.members:
            return resource
        seen: set[str] = set()
        members: list[Member] = []
        for member in resource.members:
            if member.value in seen:
                continue
            seen.add(member.value)
            members.append(await self.enrich_member(member))
        return resource.model_copy(update={"members": members})

    def to_record(self, resource: Group) -> Record:
        meta = resource.meta
        return {
            "id": resource.id,
            "external_id": resource.externalId,
            "display_name": resource.displayName,
            "created": meta.created if meta else None,
            "last_modified": meta.lastModified if meta else None,
            "members_json": (
                _MEMBERS.dump_json(
                    resource.members, by_alias=True, exclude_none=True
                ).decode()
                if resource.members is not None
                else None
            ),
            "meta_json": _dump_meta(resource),
        }

    def from_record(self, record: Record) -> Group:
        members = _load_json(record.get("members_json"))
        return Group(
            id=str(record["id"]),
            externalId=record.get("external_id"),
            displayName=record["display_name"],
            members=_MEMBERS.validate_python(members) if members is not None else None,
            meta=_load_meta(record.get("meta_json")),
        )


@dataclass(frozen=True, slots=True)
class ScimServices:
    users: UserService
    groups: GroupService


def build_services(
    user_repository: ResourceRepository,
    group_repository: ResourceRepository,
    *,
    clock: Clock | None = None,
    default_page_size: int = DEFAULT_PAGE_SIZE,
) -> ScimServices:
    resolver = DirectoryReferenceResolver(user_repository)
    return ScimServices(
        users=UserService(
            user_repository, clock=clock, default_page_size=default_page_size
        ),
        groups=GroupService(
            group_repository,
            resolver,
            clock=clock,
            default_page_size=default_page_size,
        ),
    )
