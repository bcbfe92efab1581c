import pytest

from iam.features.authorization.exceptions import (
    ConcurrentModificationError,
    DuplicateRecordError,
    InternalError,
    PolicyAlreadyAttachedOnRoleError,
    RoleNotAttachedOnUserError,
)
from iam.features.authorization.repositories.sql import SqlStoreSession
from iam.features.authorization.transactions import (
    AddPolicyToRoleTransaction,
    AddRoleToUserTransaction,
    RemoveRoleFromUserTransaction,
)


class FailingAddRoleToUser(AddRoleToUserTransaction):
    """Fails after every write of the unit has been issued."""

    async def insert_denorm(self, session, rows):
        await super().insert_denorm(session, rows)
        raise RuntimeError("storage went away")


async def test_failed_transaction_rolls_back_everything(service, editor, make_user, denorm):
    user_id = await make_user("a@example.com")
    service.add_role_to_user_transaction = FailingAddRoleToUser(service.store, 2)

    with pytest.raises(InternalError) as exc_info:
        await service.attach_role_to_user(user_id, editor.id)

    assert exc_info.value.status_code == 500
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert await denorm(subject="a@example.com") == []
    assert await service.get_roles_for_user(user_id) == []


async def test_domain_errors_pass_through_unchanged(service, editor):
    with pytest.raises(PolicyAlreadyAttachedOnRoleError):
        await service.add_policy_to_role_transaction.run(role_id=editor.id, resource="doc", action="edit")


async def test_transaction_rechecks_state(service, editor, denorm):
    transaction = RemoveRoleFromUserTransaction(service.store)
    with pytest.raises(RoleNotAttachedOnUserError):
        await transaction.run(subject="a@example.com", role=editor, user_id="u")
    assert await denorm(subject="a@example.com") == []


async def test_denorm_inserts_are_chunked(service, editor, make_user, monkeypatch):
    for action in ("read", "publish", "archive", "share"):
        await service.attach_policy_to_role(editor.id, resource="doc", action=action)

    sizes = []
    original = SqlStoreSession.insert_denorm

    async def recording(self, rows):
        sizes.append(len(rows))
        return await original(self, rows)

    monkeypatch.setattr(SqlStoreSession, "insert_denorm", recording)
    await service.attach_role_to_user(await make_user("a@example.com"), editor.id)

    assert sizes == [2, 2, 1]


async def test_stale_role_save_is_rejected(service, editor):
    async with service.store.session() as session:
        stale = await session.get_role(editor.id)

    async with service.store.transaction() as session:
        await session.save_role(stale)

    with pytest.raises(ConcurrentModificationError):
        async with service.store.transaction() as session:
            await session.save_role(stale)


async def test_stale_user_permissions_save_is_rejected(service, editor, make_user):
    user_id = await make_user("a@example.com")
    async with service.store.transaction() as session:
        stale = await session.create_user_permissions("a@example.com")

    # A concurrent writer attaches a role meanwhile
    await service.attach_role_to_user(user_id, editor.id)

    stale.policy_ids.append("whatever")
    with pytest.raises(ConcurrentModificationError):
        async with service.store.transaction() as session:
            await session.save_user_permissions(stale)

    assert [role.id for role in await service.get_roles_for_user(user_id)] == [editor.id]


async def test_subject_is_unique(service):
    async with service.store.transaction() as session:
        await session.create_user_permissions("a@example.com")

    with pytest.raises(DuplicateRecordError):
        async with service.store.transaction() as session:
            await session.create_user_permissions("a@example.com")


async def test_unfiltered_denorm_delete_is_refused(service):
    with pytest.raises(ValueError):
        async with service.store.transaction() as session:
            await session.delete_denorm()


async def test_revision_bumps_on_every_save(service, editor):
    before = (await service.get_role(editor.id)).revision
    await service.attach_policy_to_role(editor.id, resource="doc", action="read")
    after = (await service.get_role(editor.id)).revision
    assert after == before + 1


class SnapshotAddPolicyToRole(AddPolicyToRoleTransaction):
    """Works from a role read before another writer committed."""

    def __init__(self, store, snapshot):
        super().__init__(store)
        self.snapshot = snapshot

    async def load_role(self, session, role_id):
        return self.snapshot


async def test_granting_a_role_invalidates_concurrent_fan_out(service, editor, make_user, denorm):
    async with service.store.session() as session:
        snapshot = await session.get_role(editor.id)

    await service.attach_role_to_user(await make_user("a@example.com"), editor.id)

    with pytest.raises(ConcurrentModificationError):
        await SnapshotAddPolicyToRole(service.store, snapshot).run(role_id=editor.id, resource="doc", action="publish")
    assert await denorm(policy_map_key="$doc$publish") == []

    # Retrying from fresh state reaches the new holder
    await service.attach_policy_to_role(editor.id, resource="doc", action="publish")
    assert [row.subject for row in await denorm(policy_map_key="$doc$publish")] == ["a@example.com"]


async def test_holder_changes_bump_role_revision(service, editor, make_user):
    user_id = await make_user("a@example.com")
    before = (await service.get_role(editor.id)).revision

    await service.attach_role_to_user(user_id, editor.id)
    assert (await service.get_role(editor.id)).revision == before + 1

    await service.remove_role_from_user(editor.id, user_id)
    assert (await service.get_role(editor.id)).revision == before + 2
