"""
SQLAlchemy-backed resource repository.

One session and one transaction per call, so a reader only ever sees rows that
were committed as a whole. The table's unique constraint is what guarantees
uniqueness under concurrency; IntegrityError is translated into
UniqueKeyViolation for the service layer.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.provisioning.domain.repository import Page, Record, UniqueKeyViolation
from app.modules.provisioning.domain.scim_utils import parse_uuid
from app.shared.db.base import Base

logger = structlog.get_logger()


class SqlResourceRepository:
    def __init__(
        self,
        model: type[Base],
        *,
        unique_field: str,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> None:
        self.model = model
        self.unique_field = unique_field
        self._session_maker = session_maker
        self._columns = [column.key for column in model.__table__.columns]

    @property
    def _unique_column(self) -> Any:
        return getattr(self.model, self.unique_field)

    def _to_record(self, row: Any) -> Record:
        record: Record = {key: getattr(row, key) for key in self._columns}
        record["id"] = str(record["id"])
        return record

    def _to_values(self, record: Record) -> dict[str, Any]:
        values = {key: value for key, value in record.items() if key in self._columns}
        if "id" in values:
            values["id"] = UUID(str(values["id"]))
        return values

    async def insert(self, record: Record) -> None:
        async with self._session_maker() as db:
            db.add(self.model(**self._to_values(record)))
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                values = self._to_values(record)
                field_name, value = self.unique_field, record.get(self.unique_field)
                if "id" in values and await db.get(self.model, values["id"]) is not None:
                    field_name, value = "id", record["id"]
                logger.info(
                    "scim_unique_key_violation",
                    table=self.model.__tablename__,
                    field=field_name,
                )
                raise UniqueKeyViolation(field_name, value) from exc

    async def update(self, resource_id: str, fields: Record) -> int:
        parsed = parse_uuid(resource_id)
        if parsed is None:
            return 0
        values = self._to_values(fields)
        values.pop("id", None)
        async with self._session_maker() as db:
            try:
                result = await db.execute(
                    update(self.model).where(self.model.id == parsed).values(**values)
                )
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise UniqueKeyViolation(
                    self.unique_field, fields.get(self.unique_field)
                ) from exc
        return int(result.rowcount or 0)

    async def delete(self, resource_id: str) -> int:
        parsed = parse_uuid(resource_id)
        if parsed is None:
            return 0
        async with self._session_maker() as db:
            result = await db.execute(delete(self.model).where(self.model.id == parsed))
            await db.commit()
        return int(result.rowcount or 0)

    async def select_all(self, *, limit: int, offset: int) -> Page:
        async with self._session_maker() as db:
            total = await db.scalar(select(func.count()).select_from(self.model))
            if limit <= 0:
                return Page(rows=[], total=int(total or 0))
            result = await db.execute(
                select(self.model)
                .order_by(self._unique_column.asc(), self.model.id.asc())
                .limit(limit)
                .offset(max(0, offset))
            )
            rows = [self._to_record(row) for row in result.scalars().all()]
        return Page(rows=rows, total=int(total or 0))

    async def select_by_unique_key(self, value: str) -> Record | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(self.model).where(self._unique_column == value)
            )
            row = result.scalar_one_or_none()
        return self._to_record(row) if row is not None else None

    async def select_by_id(self, resource_id: str) -> Record | None:
        parsed = parse_uuid(resource_id)
        if parsed is None:
            return None
        async with self._session_maker() as db:
            row = await db.get(self.model, parsed)
        return self._to_record(row) if row is not None else None
