"""
SCIM User Models

`user_name` carries the uniqueness index. Complex attributes (`name`, `emails`,
`meta`) are stored as JSON text and (de)serialised by the service layer.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class ScimUser(Base):
    __tablename__ = "scim_users"
    __table_args__ = (UniqueConstraint("user_name", name="uq_scim_user_user_name"),)

    id: Mapped[UUID] = mapped_column(Uuid(), primary_key=True, default=uuid4)
    external_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    user_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    name_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    emails_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    nick_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    profile_url: Mapped[str | None] = mapped_column(String(length=1024), nullable=True)
    title: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    user_type: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    preferred_language: Mapped[str | None] = mapped_column(
        String(length=50), nullable=True
    )
    locale: Mapped[str | None] = mapped_column(String(length=50), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(length=50), nullable=True)

    def __repr__(self) -> str:
        return f"<ScimUser id={self.id}>"
