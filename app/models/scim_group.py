"""
SCIM Group Models

Design:
- `display_name` carries the uniqueness index (exact, case-sensitive match).
- `members_json` / `meta_json` are opaque JSON documents owned by the service layer;
  membership is a weak reference list, not a join table.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class ScimGroup(Base):
    __tablename__ = "scim_groups"
    __table_args__ = (
        UniqueConstraint("display_name", name="uq_scim_group_display_name"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    members_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ScimGroup id={self.id} name={self.display_name}>"
