"""
In-process resource repository.

Rows and the unique index live in dicts. Every method body runs without an
await, so each call is atomic on the event loop; callers get copies and never
alias stored rows.
"""

from __future__ import annotations

import copy

from app.modules.provisioning.domain.repository import Page, Record, UniqueKeyViolation


class InMemoryResourceRepository:
    def __init__(self, *, unique_field: str) -> None:
        self.unique_field = unique_field
        self._rows: dict[str, Record] = {}
        self._index: dict[str, str] = {}

    async def insert(self, record: Record) -> None:
        resource_id = str(record["id"])
        key = record.get(self.unique_field)
        if resource_id in self._rows:
            raise UniqueKeyViolation("id", resource_id)
        if key in self._index:
            raise UniqueKeyViolation(self.unique_field, key)
        stored = copy.deepcopy(record)
        stored["id"] = resource_id
        self._rows[resource_id] = stored
        self._index[key] = resource_id

    async def update(self, resource_id: str, fields: Record) -> int:
        current = self._rows.get(resource_id)
        if current is None:
            return 0
        old_key = current.get(self.unique_field)
        new_key = fields.get(self.unique_field, old_key)
        if new_key != old_key and self._index.get(new_key, resource_id) != resource_id:
            raise UniqueKeyViolation(self.unique_field, new_key)

        updated = {**current, **copy.deepcopy(fields), "id": resource_id}
        self._rows[resource_id] = updated
        if new_key != old_key:
            self._index.pop(old_key, None)
            self._index[new_key] = resource_id
        return 1

    async def delete(self, resource_id: str) -> int:
        removed = self._rows.pop(resource_id, None)
        if removed is None:
            return 0
        self._index.pop(removed.get(self.unique_field), None)
        return 1

    async def select_all(self, *, limit: int, offset: int) -> Page:
        ordered = sorted(
            self._rows.values(),
            key=lambda row: (row.get(self.unique_field) or "", row["id"]),
        )
        window = ordered[max(0, offset) : max(0, offset) + max(0, limit)]
        return Page(rows=[copy.deepcopy(row) for row in window], total=len(ordered))

    async def select_by_unique_key(self, value: str) -> Record | None:
        resource_id = self._index.get(value)
        if resource_id is None:
            return None
        return copy.deepcopy(self._rows[resource_id])

    async def select_by_id(self, resource_id: str) -> Record | None:
        row = self._rows.get(resource_id)
        return copy.deepcopy(row) if row is not None else None

    def __len__(self) -> int:
        return len(self._rows)
