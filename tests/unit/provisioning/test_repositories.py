import uuid
from datetime import datetime, timezone

import pytest

from app.modules.provisioning.adapters.memory_repository import InMemoryResourceRepository
from app.modules.provisioning.adapters.registry import build_repositories
from app.modules.provisioning.adapters.sql_repository import SqlResourceRepository
from app.modules.provisioning.domain.repository import UniqueKeyViolation
from app.shared.core.exceptions import ConfigurationError


@pytest.fixture
def group_repository(storage_backend, session_maker):
    if storage_backend == "sql":
        return build_repositories("sql", session_maker=session_maker)[1]
    return build_repositories("memory")[1]


def _record(display_name: str, **extra) -> dict:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return {
        "id": str(uuid.uuid4()),
        "external_id": None,
        "display_name": display_name,
        "created": now,
        "last_modified": now,
        "members_json": None,
        "meta_json": None,
        **extra,
    }


@pytest.mark.asyncio
async def test_insert_and_select(group_repository):
    record = _record("Eng", members_json='[{"value": "u1"}]')
    await group_repository.insert(record)

    by_id = await group_repository.select_by_id(record["id"])
    by_key = await group_repository.select_by_unique_key("Eng")

    assert by_id["display_name"] == "Eng"
    assert by_id["members_json"] == '[{"value": "u1"}]'
    assert by_key["id"] == record["id"]
    assert await group_repository.select_by_unique_key("eng") is None


@pytest.mark.asyncio
async def test_insert_duplicate_key_raises(group_repository):
    await group_repository.insert(_record("Eng"))

    with pytest.raises(UniqueKeyViolation):
        await group_repository.insert(_record("Eng"))

    page = await group_repository.select_all(limit=10, offset=0)
    assert page.total == 1


@pytest.mark.asyncio
async def test_update_reports_affected_rows(group_repository):
    record = _record("Eng")
    await group_repository.insert(record)

    assert await group_repository.update(record["id"], {"display_name": "Platform"}) == 1
    assert await group_repository.update(str(uuid.uuid4()), {"display_name": "X"}) == 0
    assert await group_repository.select_by_unique_key("Eng") is None
    assert (await group_repository.select_by_unique_key("Platform"))["id"] == record["id"]


@pytest.mark.asyncio
async def test_update_into_taken_key_raises(group_repository):
    await group_repository.insert(_record("Eng"))
    ops = _record("Ops")
    await group_repository.insert(ops)

    with pytest.raises(UniqueKeyViolation):
        await group_repository.update(ops["id"], {"display_name": "Eng"})

    assert (await group_repository.select_by_id(ops["id"]))["display_name"] == "Ops"


@pytest.mark.asyncio
async def test_delete_reports_affected_rows(group_repository):
    record = _record("Eng")
    await group_repository.insert(record)

    assert await group_repository.delete(record["id"]) == 1
    assert await group_repository.delete(record["id"]) == 0
    assert await group_repository.select_by_id(record["id"]) is None


@pytest.mark.asyncio
async def test_select_all_orders_by_unique_key(group_repository):
    for name in ("Charlie", "Alpha", "Bravo"):
        await group_repository.insert(_record(name))

    page = await group_repository.select_all(limit=2, offset=1)

    assert page.total == 3
    assert [row["display_name"] for row in page.rows] == ["Bravo", "Charlie"]


@pytest.mark.asyncio
async def test_returned_rows_are_detached_copies():
    repository = InMemoryResourceRepository(unique_field="display_name")
    record = _record("Eng")
    await repository.insert(record)

    record["display_name"] = "Mutated"
    fetched = await repository.select_by_id(record["id"])
    fetched["display_name"] = "Mutated again"

    assert (await repository.select_by_id(record["id"]))["display_name"] == "Eng"


@pytest.mark.asyncio
async def test_sql_repository_tolerates_malformed_ids(session_maker):
    users, _ = build_repositories("sql", session_maker=session_maker)
    assert isinstance(users, SqlResourceRepository)

    assert await users.select_by_id("not-a-uuid") is None
    assert await users.update("not-a-uuid", {"user_name": "x"}) == 0
    assert await users.delete("not-a-uuid") == 0


def test_unknown_backend_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        build_repositories("redis")


def test_sql_backend_requires_session_maker():
    with pytest.raises(ConfigurationError):
        build_repositories("sql")
