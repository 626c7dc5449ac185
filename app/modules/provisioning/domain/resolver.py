from __future__ import annotations

import structlog

from app.modules.provisioning.domain.repository import ResourceRepository
from app.modules.provisioning.domain.scim_utils import normalize_resource_id

logger = structlog.get_logger()


class DirectoryReferenceResolver:
    """Resolves member ids to a display label using the User directory."""

    def __init__(self, users: ResourceRepository) -> None:
        self._users = users

    async def resolve_display_label(self, member_id: str | None) -> str | None:
        resource_id = normalize_resource_id(member_id)
        if resource_id is None:
            return None
        record = await self._users.select_by_id(resource_id)
        if record is None:
            logger.debug("scim_member_reference_unresolved", member_id=resource_id)
            return None
        return record.get("user_name")
