from __future__ import annotations

from uuid import UUID


def parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def normalize_resource_id(value: str | None) -> str | None:
    """Canonical lower-case hyphenated form, or None when `value` is not a UUID."""
    parsed = parse_uuid(value)
    return str(parsed) if parsed is not None else None
