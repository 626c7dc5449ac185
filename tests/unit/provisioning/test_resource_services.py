import asyncio
import uuid

import pytest

from app.modules.provisioning.domain.resources import (
    Email,
    Group,
    Member,
    Name,
    PatchRequest,
    User,
)
from app.shared.core.exceptions import ResourceConflictError


def _patch(*operations: dict) -> PatchRequest:
    return PatchRequest.model_validate({"Operations": list(operations)})


@pytest.mark.asyncio
async def test_create_assigns_id_and_stamps_meta(services, clock):
    user = await services.users.create(User(userName="alice@example.com"))

    assert uuid.UUID(user.id)
    assert user.meta.resourceType == "User"
    assert user.meta.created == clock.now
    assert user.meta.lastModified == clock.now
    assert user.meta.location == f"/Users/{user.id}"
    assert user.to_scim()["meta"]["created"] == "2024-01-01T12:00:00.000Z"


@pytest.mark.asyncio
async def test_create_then_get_round_trips(services):
    created = await services.users.create(
        User(
            userName="alice@example.com",
            externalId="ext-1",
            displayName="Alice",
            name=Name(givenName="Alice", familyName="Smith"),
            emails=[Email(value="alice@example.com", type="work", primary=True)],
            title="Engineer",
            locale="en-GB",
        )
    )

    fetched = await services.users.get_by_id(created.id)

    assert fetched == created


@pytest.mark.asyncio
async def test_client_supplied_uuid_is_kept_and_normalized(services):
    client_id = str(uuid.uuid4()).upper()

    created = await services.groups.create(Group(id=client_id, displayName="Eng"))

    assert created.id == client_id.lower()
    assert await services.groups.get_by_id(client_id) == created


@pytest.mark.asyncio
async def test_malformed_client_id_is_replaced(services):
    created = await services.groups.create(Group(id="not-a-uuid", displayName="Eng"))

    assert created.id != "not-a-uuid"
    assert uuid.UUID(created.id)


@pytest.mark.asyncio
async def test_duplicate_user_name_conflicts_and_leaves_first_untouched(services):
    first = await services.users.create(User(userName="alice@example.com", displayName="First"))

    with pytest.raises(ResourceConflictError) as exc_info:
        await services.users.create(User(userName="alice@example.com", displayName="Second"))

    assert exc_info.value.status_code == 409
    assert await services.users.get_by_id(first.id) == first
    page = await services.users.list_resources()
    assert page.totalResults == 1


@pytest.mark.asyncio
async def test_uniqueness_is_case_sensitive(services):
    await services.groups.create(Group(displayName="Eng"))

    other = await services.groups.create(Group(displayName="eng"))

    assert other.displayName == "eng"


@pytest.mark.asyncio
async def test_concurrent_creates_with_same_key_yield_one_winner(services):
    results = await asyncio.gather(
        *(services.users.create(User(userName="race@example.com")) for _ in range(5)),
        return_exceptions=True,
    )

    created = [result for result in results if isinstance(result, User)]
    conflicts = [result for result in results if isinstance(result, ResourceConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("resource_id", ["not-a-uuid", "", None])
async def test_malformed_ids_behave_as_not_found(services, resource_id):
    assert await services.users.get_by_id(resource_id) is None
    assert await services.users.replace(resource_id, User(userName="x")) is None
    assert await services.users.patch(resource_id, _patch()) is None
    assert await services.users.delete(resource_id) is False


@pytest.mark.asyncio
async def test_unknown_ids_are_not_found(services):
    missing = str(uuid.uuid4())

    assert await services.groups.get_by_id(missing) is None
    assert await services.groups.replace(missing, Group(displayName="Eng")) is None
    assert await services.groups.patch(missing, _patch({"op": "replace", "path": "displayName", "value": "x"})) is None
    assert await services.groups.delete(missing) is False


@pytest.mark.asyncio
async def test_pagination_partitions_the_collection(services):
    names = [f"user{index:02d}@example.com" for index in range(7)]
    for name in reversed(names):
        await services.users.create(User(userName=name))

    seen: list[str] = []
    start = 1
    while start <= 7:
        page = await services.users.list_resources(start_index=start, count=3)
        assert page.totalResults == 7
        assert page.startIndex == start
        assert page.itemsPerPage == len(page.Resources)
        seen.extend(user.userName for user in page.Resources)
        start += 3

    assert seen == names


@pytest.mark.asyncio
async def test_list_clamps_start_index_and_count(services):
    await services.groups.create(Group(displayName="B"))
    await services.groups.create(Group(displayName="A"))

    page = await services.groups.list_resources(start_index=0, count=10)
    assert page.startIndex == 1
    assert [group.displayName for group in page.Resources] == ["A", "B"]

    empty = await services.groups.list_resources(start_index=1, count=-5)
    assert empty.totalResults == 2
    assert empty.itemsPerPage == 0
    assert empty.Resources == []

    beyond = await services.groups.list_resources(start_index=50, count=10)
    assert beyond.totalResults == 2
    assert beyond.Resources == []


@pytest.mark.asyncio
async def test_replace_preserves_id_and_created(services, clock):
    created = await services.users.create(User(userName="alice@example.com", displayName="Alice"))
    clock.advance(seconds=5)

    replaced = await services.users.replace(
        created.id, User(id="ignored", userName="alice@example.com", active=False)
    )

    assert replaced.id == created.id
    assert replaced.displayName is None
    assert replaced.active is False
    assert replaced.meta.created == created.meta.created
    assert replaced.meta.lastModified == clock.now
    assert await services.users.get_by_id(created.id) == replaced


@pytest.mark.asyncio
async def test_replace_to_taken_key_conflicts(services):
    await services.users.create(User(userName="alice@example.com"))
    bob = await services.users.create(User(userName="bob@example.com"))

    with pytest.raises(ResourceConflictError):
        await services.users.replace(bob.id, User(userName="alice@example.com"))

    assert (await services.users.get_by_id(bob.id)).userName == "bob@example.com"


@pytest.mark.asyncio
async def test_patch_to_taken_key_conflicts(services):
    await services.groups.create(Group(displayName="Eng"))
    ops = await services.groups.create(Group(displayName="Ops"))

    with pytest.raises(ResourceConflictError):
        await services.groups.patch(
            ops.id, _patch({"op": "replace", "path": "displayName", "value": "Eng"})
        )

    assert (await services.groups.get_by_id(ops.id)).displayName == "Ops"


@pytest.mark.asyncio
async def test_delete_removes_resource_and_frees_key(services):
    created = await services.users.create(User(userName="alice@example.com"))

    assert await services.users.delete(created.id) is True
    assert await services.users.get_by_id(created.id) is None
    assert await services.users.delete(created.id) is False

    again = await services.users.create(User(userName="alice@example.com"))
    assert again.id != created.id


@pytest.mark.asyncio
async def test_group_scenario_member_enrichment_and_idempotent_add(services):
    group = await services.groups.create(Group(displayName="Eng"))
    alice = await services.users.create(User(userName="alice@example.com"))
    add_alice = _patch({"op": "add", "path": "members", "value": {"value": alice.id}})

    once = await services.groups.patch(group.id, add_alice)
    twice = await services.groups.patch(group.id, add_alice)

    expected = [Member(value=alice.id, display="alice@example.com", type="User")]
    assert once.members == expected
    assert twice.members == expected
    assert (await services.groups.get_by_id(group.id)).members == expected


@pytest.mark.asyncio
async def test_create_group_enriches_and_dedupes_members(services):
    alice = await services.users.create(User(userName="alice@example.com"))
    dangling = str(uuid.uuid4())

    group = await services.groups.create(
        Group(
            displayName="Eng",
            members=[
                Member(value=alice.id),
                Member(value=alice.id, display="duplicate"),
                Member(value=dangling),
                Member(value="not-a-uuid", display="Kept"),
            ],
        )
    )

    assert [member.value for member in group.members] == [alice.id, dangling, "not-a-uuid"]
    assert group.members[0].display == "alice@example.com"
    assert group.members[1].display is None
    assert group.members[2].display == "Kept"


@pytest.mark.asyncio
async def test_filtered_member_remove_through_service(services):
    users = [await services.users.create(User(userName=f"{name}@example.com")) for name in "abc"]
    group = await services.groups.create(
        Group(displayName="Eng", members=[Member(value=user.id) for user in users])
    )
    remove_b = _patch({"op": "remove", "path": f'members[value eq "{users[1].id}"]'})

    once = await services.groups.patch(group.id, remove_b)
    twice = await services.groups.patch(group.id, remove_b)

    assert [member.value for member in once.members] == [users[0].id, users[2].id]
    assert twice.members == once.members


@pytest.mark.asyncio
async def test_user_patch_merges_name_and_updates_scalars(services):
    user = await services.users.create(
        User(userName="alice@example.com", name=Name(givenName="Alice", familyName="Smith"))
    )

    patched = await services.users.patch(
        user.id,
        _patch(
            {"op": "Replace", "value": {"name": {"familyName": "Jones"}, "active": False}},
            {"op": "add", "path": "emails", "value": [{"value": "alice@example.com", "primary": True}]},
        ),
    )

    assert patched.name == Name(givenName="Alice", familyName="Jones")
    assert patched.active is False
    assert patched.emails == [Email(value="alice@example.com", primary=True)]
    assert await services.users.get_by_id(user.id) == patched


@pytest.mark.asyncio
async def test_last_modified_is_monotonic_and_created_is_fixed(services, clock):
    user = await services.users.create(User(userName="alice@example.com"))
    created_at = user.meta.created

    clock.advance(seconds=10)
    first = await services.users.patch(user.id, _patch({"op": "replace", "path": "title", "value": "A"}))
    assert first.meta.lastModified == clock.now

    # Clock steps backwards (e.g. NTP correction): lastModified must not regress.
    clock.advance(seconds=-60)
    second = await services.users.patch(user.id, _patch({"op": "replace", "path": "title", "value": "B"}))

    assert second.meta.lastModified == first.meta.lastModified
    assert second.meta.created == created_at
    assert first.meta.created == created_at


@pytest.mark.asyncio
async def test_timestamps_are_truncated_to_milliseconds(services, clock):
    clock.now = clock.now.replace(microsecond=123456)

    user = await services.users.create(User(userName="alice@example.com"))

    assert user.meta.created.microsecond == 123000
    assert user.to_scim()["meta"]["lastModified"].endswith(".123Z")
    assert await services.users.get_by_id(user.id) == user


@pytest.mark.asyncio
async def test_patch_with_only_invalid_operations_still_stamps(services, clock):
    group = await services.groups.create(Group(displayName="Eng"))
    clock.advance(seconds=1)

    patched = await services.groups.patch(
        group.id,
        _patch(
            {"op": "remove", "path": 'members[value eq "x"'},
            {"op": "replace", "path": "displayName", "value": None},
        ),
    )

    assert patched.displayName == "Eng"
    assert patched.meta.lastModified == clock.now


@pytest.mark.asyncio
async def test_conflict_detail_names_the_scim_attribute(services):
    await services.groups.create(Group(displayName="Eng"))

    with pytest.raises(ResourceConflictError) as exc_info:
        await services.groups.create(Group(displayName="Eng"))

    assert exc_info.value.message == "Group with displayName 'Eng' already exists"


@pytest.mark.asyncio
async def test_create_with_existing_client_id_reports_id_conflict(services):
    existing = await services.users.create(User(userName="a@example.com"))

    with pytest.raises(ResourceConflictError) as exc_info:
        await services.users.create(User(id=existing.id, userName="b@example.com"))

    assert exc_info.value.message == f"User with id '{existing.id}' already exists"
    assert await services.users.get_by_id(existing.id) == existing
    assert (await services.users.list_resources()).totalResults == 1


@pytest.mark.asyncio
async def test_concurrent_member_adds_on_one_group_all_land(services):
    users = [
        await services.users.create(User(userName=f"user{i}@example.com"))
        for i in range(8)
    ]
    group = await services.groups.create(Group(displayName="Eng"))

    await asyncio.gather(
        *(
            services.groups.patch(
                group.id,
                _patch({"op": "add", "path": "members", "value": [{"value": user.id}]}),
            )
            for user in users
        )
    )

    stored = await services.groups.get_by_id(group.id)
    assert sorted(member.value for member in stored.members) == sorted(
        user.id for user in users
    )


@pytest.mark.asyncio
async def test_concurrent_replace_and_patch_do_not_interleave(services):
    user = await services.users.create(User(userName="alice@example.com"))
    group = await services.groups.create(Group(displayName="Eng"))

    await asyncio.gather(
        services.groups.replace(group.id, Group(displayName="Platform")),
        services.groups.patch(
            group.id,
            _patch({"op": "add", "path": "members", "value": [{"value": user.id}]}),
        ),
    )

    stored = await services.groups.get_by_id(group.id)
    assert stored.displayName == "Platform"
    assert [member.value for member in stored.members or []] in ([], [user.id])
