import pytest

from iam.features.authorization.exceptions import (
    ConflictingPolicyDataError,
    InsufficientPolicyDataError,
    InvalidRequestError,
    PolicyAlreadyAttachedOnRoleError,
    PolicyExistsError,
    PolicyNotAttachedOnRoleError,
    PolicyNotFoundError,
    RoleAttachedOnUsersError,
    RoleCannotBeEmptyError,
    RoleExistsError,
    RoleNotFoundError,
)


# ---------------------------
# Roles and policies
# ---------------------------

async def test_create_role(service):
    role = await service.create_role("editor")
    assert role.name == "editor"
    assert role.policies == []

    fetched = await service.get_role(role.id)
    assert fetched.id == role.id
    assert fetched.name == "editor"


async def test_create_role_twice_fails(service):
    await service.create_role("editor")
    with pytest.raises(RoleExistsError) as exc_info:
        await service.create_role("editor")
    assert exc_info.value.status_code == 409


async def test_create_role_empty_name(service):
    with pytest.raises(InvalidRequestError):
        await service.create_role("  ")


async def test_get_role_missing(service):
    with pytest.raises(RoleNotFoundError) as exc_info:
        await service.get_role("missing")
    assert exc_info.value.to_dict()["kind"] == "not_found"


async def test_create_policy_and_duplicate(service):
    policy = await service.create_policy("doc", "edit")
    assert (policy.resource, policy.action) == ("doc", "edit")
    with pytest.raises(PolicyExistsError):
        await service.create_policy("doc", "edit")


async def test_create_or_find_policy_returns_same_record(service):
    first = await service.create_or_find_policy("doc", "edit")
    second = await service.create_or_find_policy("doc", "edit")
    assert first.id == second.id
    assert len(await service.get_policies()) == 1


async def test_get_roles_filter_and_projection(service):
    await service.create_role("editor")
    await service.create_role("viewer")

    roles = await service.get_roles({"name": "viewer"})
    assert [role.name for role in roles] == ["viewer"]

    projected = await service.get_roles(fields=["name"])
    assert sorted(projected, key=lambda r: r["name"]) == [{"name": "editor"}, {"name": "viewer"}]


async def test_get_roles_unknown_filter_field(service):
    with pytest.raises(InvalidRequestError):
        await service.get_roles({"colour": "red"})


async def test_get_policies_by_id(service):
    policy = await service.create_policy("doc", "edit")
    await service.create_policy("doc", "read")
    found = await service.get_policies({"id": policy.id})
    assert [p.id for p in found] == [policy.id]


# ---------------------------
# Attaching policies to roles
# ---------------------------

async def test_attach_policy_creates_policy_on_demand(service):
    role = await service.create_role("editor")
    result = await service.attach_policy_to_role(role.id, resource="doc", action="edit")

    assert result.policy.resource == "doc"
    assert [p.id for p in result.role.policies] == [result.policy.id]
    assert (await service.get_role(role.id)).policy_ids == [result.policy.id]


async def test_attach_policy_by_id(service):
    role = await service.create_role("editor")
    policy = await service.create_policy("doc", "edit")
    result = await service.attach_policy_to_role(role.id, policy_id=policy.id)
    assert result.role.policy_ids == [policy.id]


async def test_attach_policy_requires_identification(service):
    role = await service.create_role("editor")
    with pytest.raises(InsufficientPolicyDataError):
        await service.attach_policy_to_role(role.id)
    with pytest.raises(InsufficientPolicyDataError):
        await service.attach_policy_to_role(role.id, resource="doc")


async def test_attach_policy_conflicting_identification(service):
    role = await service.create_role("editor")
    edit = await service.create_policy("doc", "edit")
    await service.create_policy("doc", "read")
    with pytest.raises(ConflictingPolicyDataError):
        await service.attach_policy_to_role(role.id, policy_id=edit.id, resource="doc", action="read")


async def test_attach_policy_to_missing_role(service):
    with pytest.raises(RoleNotFoundError):
        await service.attach_policy_to_role("missing", resource="doc", action="edit")
    # Nothing was written
    assert await service.get_policies() == []


async def test_missing_role_reported_before_unknown_policy(service):
    with pytest.raises(RoleNotFoundError):
        await service.attach_policy_to_role("missing", policy_id="no-policy")
    with pytest.raises(RoleNotFoundError):
        await service.remove_policy_from_role("missing", policy_id="no-policy")


async def test_attach_unknown_policy_id(service):
    role = await service.create_role("editor")
    with pytest.raises(PolicyNotFoundError):
        await service.attach_policy_to_role(role.id, policy_id="missing")


async def test_attach_policy_twice(service, editor):
    with pytest.raises(PolicyAlreadyAttachedOnRoleError):
        await service.attach_policy_to_role(editor.id, resource="doc", action="edit")


async def test_fan_out_to_existing_holders(service, editor, make_user, denorm):
    for email in ("a@example.com", "b@example.com", "c@example.com"):
        await service.attach_role_to_user(await make_user(email), editor.id)

    await service.attach_policy_to_role(editor.id, resource="doc", action="publish")

    rows = await denorm(policy_map_key="$doc$publish")
    assert [(row.subject, row.role_key) for row in rows] == [
        ("a@example.com", "editor"),
        ("b@example.com", "editor"),
        ("c@example.com", "editor"),
    ]
    assert len(await denorm(role_key="editor")) == 6


# ---------------------------
# Removing policies from roles
# ---------------------------

async def test_remove_last_policy_fails(service, editor):
    with pytest.raises(RoleCannotBeEmptyError) as exc_info:
        await service.remove_policy_from_role(editor.id, resource="doc", action="edit")
    assert exc_info.value.status_code == 424
    assert len((await service.get_role(editor.id)).policies) == 1


async def test_remove_policy_not_attached(service, editor):
    await service.create_policy("doc", "read")
    with pytest.raises(PolicyNotAttachedOnRoleError):
        await service.remove_policy_from_role(editor.id, resource="doc", action="read")


async def test_remove_unknown_policy(service, editor):
    with pytest.raises(PolicyNotFoundError):
        await service.remove_policy_from_role(editor.id, resource="doc", action="unknown")


async def test_attach_then_detach_round_trip(service, editor, make_user, denorm):
    await service.attach_role_to_user(await make_user("a@example.com"), editor.id)
    before_policies = (await service.get_role(editor.id)).policy_ids
    before_rows = await denorm(role_key="editor")

    attached = await service.attach_policy_to_role(editor.id, resource="doc", action="read")
    assert len(await denorm(role_key="editor")) == len(before_rows) + 1

    result = await service.remove_policy_from_role(editor.id, policy_id=attached.policy.id)
    assert result.role.policy_ids == before_policies
    assert (await service.get_role(editor.id)).policy_ids == before_policies
    assert await denorm(role_key="editor") == before_rows


# ---------------------------
# Removing roles
# ---------------------------

async def test_remove_role_without_users(service, editor, denorm):
    result = await service.remove_role(editor.id)
    assert result.users_affected == 0
    assert result.role.name == "editor"
    with pytest.raises(RoleNotFoundError):
        await service.get_role(editor.id)


async def test_remove_role_attached_requires_force(service, editor, make_user, denorm):
    user_id = await make_user("a@example.com")
    await service.attach_role_to_user(user_id, editor.id)

    with pytest.raises(RoleAttachedOnUsersError) as exc_info:
        await service.remove_role(editor.id, force_remove=False)
    assert exc_info.value.details["user_count"] == 1

    result = await service.remove_role(editor.id, force_remove=True)
    assert result.users_affected == 1
    assert await denorm(role_key="editor") == []
    assert await service.get_roles_for_user(user_id) == []
    assert not await service.check_user_access(
        subject="a@example.com", permissions=[{"resource": "doc", "action": "edit"}]
    )


async def test_remove_missing_role(service):
    with pytest.raises(RoleNotFoundError):
        await service.remove_role("missing")
