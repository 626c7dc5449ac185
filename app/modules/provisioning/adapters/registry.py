from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.scim_group import ScimGroup
from app.models.scim_user import ScimUser
from app.modules.provisioning.adapters.memory_repository import InMemoryResourceRepository
from app.modules.provisioning.adapters.sql_repository import SqlResourceRepository
from app.modules.provisioning.domain.repository import ResourceRepository
from app.shared.core.config import STORAGE_BACKEND_MEMORY, STORAGE_BACKEND_SQL
from app.shared.core.exceptions import ConfigurationError


def build_repositories(
    backend: str,
    *,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> tuple[ResourceRepository, ResourceRepository]:
    """Return (users, groups) repositories for the configured storage backend."""
    normalized = (backend or "").strip().lower()
    if normalized == STORAGE_BACKEND_MEMORY:
        return (
            InMemoryResourceRepository(unique_field="user_name"),
            InMemoryResourceRepository(unique_field="display_name"),
        )
    if normalized == STORAGE_BACKEND_SQL:
        if session_maker is None:
            raise ConfigurationError("SQL storage backend requires a session maker")
        return (
            SqlResourceRepository(
                ScimUser, unique_field="user_name", session_maker=session_maker
            ),
            SqlResourceRepository(
                ScimGroup, unique_field="display_name", session_maker=session_maker
            ),
        )
    raise ConfigurationError(
        f"Unknown SCIM storage backend: {backend!r}",
        details={"backend": backend},
    )
