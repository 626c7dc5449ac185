"""
Storage contract for SCIM resources.

Records are flat dicts whose keys are column names. Nested attributes travel
as JSON text (`name_json`, `emails_json`, `members_json`, `meta_json`) owned
by the service layer, so adapters never interpret resource structure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

Record = dict[str, Any]


class UniqueKeyViolation(Exception):
    """Raised by an adapter when a write would duplicate the unique key or id."""

    def __init__(self, field_name: str, value: Any) -> None:
        super().__init__(f"{field_name}={value!r} already exists")
        self.field_name = field_name
        self.value = value


@dataclass(frozen=True, slots=True)
class Page:
    rows: list[Record] = field(default_factory=list)
    total: int = 0


class ResourceRepository(Protocol):
    unique_field: str

    async def insert(self, record: Record) -> None: ...

    async def update(self, resource_id: str, fields: Record) -> int: ...

    async def delete(self, resource_id: str) -> int: ...

    async def select_all(self, *, limit: int, offset: int) -> Page: ...

    async def select_by_unique_key(self, value: str) -> Record | None: ...

    async def select_by_id(self, resource_id: str) -> Record | None: ...
