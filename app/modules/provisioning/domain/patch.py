"""
SCIM PATCH interpreter (RFC 7644 section 3.5.2, restricted subset).

`apply_operation` takes the current document and one operation and returns
the next document. It works on a plain-dict copy of the model and validates
the result back into the model class; an operation whose result does not
validate is dropped and the input document is returned unchanged.

Member enrichment is injected as an async callable so the interpreter never
touches storage itself.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from app.modules.provisioning.domain.patch_value import (
    ArrayValue,
    ObjectValue,
    PatchValue,
    Scalar,
    decode_embedded_object,
    to_patch_value,
    to_plain,
)
from app.modules.provisioning.domain.path_parser import (
    AttributeTarget,
    CollectionTarget,
    EmptyTarget,
    FilteredCollectionTarget,
    InvalidTarget,
    parse_path,
)
from app.modules.provisioning.domain.resources import (
    CollectionSpec,
    Member,
    PatchOperation,
    ResourceAttributes,
    ScimResource,
)

logger = structlog.get_logger()

DocumentT = TypeVar("DocumentT", bound=ScimResource)
MemberEnricher = Callable[[Member], Awaitable[Member]]


async def _no_enrichment(member: Member) -> Member:
    return member


async def apply_operation(
    document: DocumentT,
    operation: PatchOperation,
    attributes: ResourceAttributes,
    enrich: MemberEnricher | None = None,
) -> DocumentT:
    enrich = enrich or _no_enrichment
    target = parse_path(operation.path, attributes.collection_names)
    if isinstance(target, InvalidTarget):
        return document

    value = to_patch_value(operation.value)
    working = document.model_dump(mode="python")

    if operation.op == "remove":
        if not isinstance(target, FilteredCollectionTarget):
            logger.info(
                "scim_patch_remove_ignored",
                resource_type=attributes.resource_type,
                path=operation.path,
            )
            return document
        if not _remove_matching(working, target, attributes):
            return document
    elif isinstance(target, EmptyTarget):
        if operation.op == "replace":
            value = decode_embedded_object(value)
        if not isinstance(value, ObjectValue):
            logger.warning(
                "scim_patch_value_not_object",
                resource_type=attributes.resource_type,
                op=operation.op,
            )
            return document
        await _merge_document(
            working,
            value,
            attributes,
            overwrite_nulls=operation.op == "replace",
            enrich=enrich,
        )
    elif isinstance(target, AttributeTarget):
        name = attributes.resolve(target.name)
        if name is None or name in attributes.read_only:
            logger.info(
                "scim_patch_attribute_ignored",
                resource_type=attributes.resource_type,
                attribute=target.name,
            )
            return document
        _set_attribute(
            working,
            name,
            value,
            attributes,
            overwrite_nulls=operation.op == "replace",
        )
    elif isinstance(target, CollectionTarget):
        name = attributes.resolve(target.name)
        spec = attributes.collections.get(name) if name else None
        if name is None or spec is None:
            return document
        if operation.op == "add":
            working[name] = await _append_entries(
                working.get(name), value, spec, enrich
            )
        else:
            working[name] = await _build_collection(value, spec, enrich)
    else:
        # add/replace through a filter is not supported; only remove uses one.
        logger.info(
            "scim_patch_filtered_write_ignored",
            resource_type=attributes.resource_type,
            op=operation.op,
            path=operation.path,
        )
        return document

    try:
        return type(document).model_validate(working)
    except ValidationError as exc:
        logger.warning(
            "scim_patch_operation_rejected",
            resource_type=attributes.resource_type,
            op=operation.op,
            path=operation.path,
            errors=exc.error_count(),
        )
        return document


async def apply_operations(
    document: DocumentT,
    operations: Sequence[PatchOperation],
    attributes: ResourceAttributes,
    enrich: MemberEnricher | None = None,
) -> DocumentT:
    """Fold `operations` over `document` in request order."""
    for operation in operations:
        document = await apply_operation(document, operation, attributes, enrich)
    return document


async def _merge_document(
    working: dict[str, Any],
    value: ObjectValue,
    attributes: ResourceAttributes,
    *,
    overwrite_nulls: bool,
    enrich: MemberEnricher,
) -> None:
    for key, item in value.items():
        name = attributes.resolve(key)
        if name is None or name in attributes.read_only:
            continue
        spec = attributes.collections.get(name)
        if spec is not None:
            if isinstance(item, (ObjectValue, ArrayValue)):
                working[name] = await _build_collection(item, spec, enrich)
            continue
        _set_attribute(working, name, item, attributes, overwrite_nulls=overwrite_nulls)


def _set_attribute(
    working: dict[str, Any],
    name: str,
    item: PatchValue,
    attributes: ResourceAttributes,
    *,
    overwrite_nulls: bool,
) -> None:
    nested_model = attributes.complex.get(name)
    if nested_model is not None:
        if isinstance(item, ObjectValue):
            working[name] = _merge_nested(working.get(name), item, nested_model)
        return

    if name in attributes.collections:
        return

    if isinstance(item, Scalar) and item.is_null and not overwrite_nulls:
        return
    working[name] = to_plain(item)


def _merge_nested(
    current: dict[str, Any] | None,
    item: ObjectValue,
    model: type[BaseModel],
) -> dict[str, Any]:
    merged = dict(current or {})
    fields = {field_name.lower(): field_name for field_name in model.model_fields}
    for key, sub in item.items():
        field_name = fields.get(key.lower())
        if field_name is None:
            continue
        if isinstance(sub, Scalar) and sub.is_null:
            continue
        merged[field_name] = to_plain(sub)
    return merged


def _entry_objects(value: PatchValue) -> list[ObjectValue]:
    if isinstance(value, ObjectValue):
        return [value]
    if isinstance(value, ArrayValue):
        return [item for item in value.items if isinstance(item, ObjectValue)]
    return []


def _parse_entries(value: PatchValue, spec: CollectionSpec) -> list[BaseModel]:
    fields = spec.entry_fields()
    entries: list[BaseModel] = []
    for raw in _entry_objects(value):
        canonical: dict[str, Any] = {}
        for key, sub in raw.items():
            field_name = fields.get(key.lower())
            if field_name is not None:
                canonical[field_name] = to_plain(sub)
        try:
            entries.append(spec.entry_model.model_validate(canonical))
        except ValidationError:
            logger.warning(
                "scim_patch_entry_rejected",
                entry_type=spec.entry_model.__name__,
            )
    return entries


def _entry_key(entry: BaseModel | dict[str, Any], spec: CollectionSpec) -> Any:
    if isinstance(entry, dict):
        return entry.get(spec.key)
    return getattr(entry, spec.key, None)


async def _finish_entry(
    entry: BaseModel, spec: CollectionSpec, enrich: MemberEnricher
) -> dict[str, Any]:
    if spec.enriched and isinstance(entry, Member):
        entry = await enrich(entry)
    return entry.model_dump(mode="python")


async def _build_collection(
    value: PatchValue, spec: CollectionSpec, enrich: MemberEnricher
) -> list[dict[str, Any]]:
    """Wholesale replacement: the provided entries, first occurrence of each key wins."""
    seen: set[Any] = set()
    result: list[dict[str, Any]] = []
    for entry in _parse_entries(value, spec):
        key = _entry_key(entry, spec)
        if key in seen:
            continue
        seen.add(key)
        result.append(await _finish_entry(entry, spec, enrich))
    return result


async def _append_entries(
    current: list[dict[str, Any]] | None,
    value: PatchValue,
    spec: CollectionSpec,
    enrich: MemberEnricher,
) -> list[dict[str, Any]]:
    result = list(current or [])
    seen = {_entry_key(entry, spec) for entry in result}
    for entry in _parse_entries(value, spec):
        key = _entry_key(entry, spec)
        if key in seen:
            continue
        seen.add(key)
        result.append(await _finish_entry(entry, spec, enrich))
    return result


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _remove_matching(
    working: dict[str, Any],
    target: FilteredCollectionTarget,
    attributes: ResourceAttributes,
) -> bool:
    """Drop entries matching the filter. Returns False when nothing changed."""
    name = attributes.resolve(target.collection)
    spec = attributes.collections.get(name) if name else None
    if name is None or spec is None:
        return False
    field_name = spec.entry_fields().get(target.attribute.lower())
    if field_name is None:
        logger.info(
            "scim_patch_filter_attribute_unknown",
            resource_type=attributes.resource_type,
            attribute=target.attribute,
        )
        return False

    current = working.get(name) or []
    kept = [
        entry for entry in current if _as_text(entry.get(field_name)) != target.literal
    ]
    if len(kept) == len(current):
        return False
    working[name] = kept
    return True
