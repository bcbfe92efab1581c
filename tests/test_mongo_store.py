"""
MongoDB backend tests.

Skipped unless IAM_TEST_MONGO_URL points at a server, e.g.
    IAM_TEST_MONGO_URL=mongodb://localhost:27017 pytest tests/test_mongo_store.py
Set IAM_TEST_MONGO_TRANSACTIONS=1 when the server is a replica set.
"""
import os
import typing as t

import pytest
import pytest_asyncio
from bson import ObjectId

from iam.core.config import AuthorizationOptions
from iam.features.authorization.exceptions import (
    ConcurrentModificationError,
    DuplicateRecordError,
    RoleAttachedOnUsersError,
    RoleCannotBeEmptyError,
)
from iam.features.authorization.service import AuthorizationService, create_authorization_service


MONGO_URL = os.getenv("IAM_TEST_MONGO_URL")

pytestmark = pytest.mark.skipif(not MONGO_URL, reason="IAM_TEST_MONGO_URL not set")


@pytest_asyncio.fixture
async def mongo_service() -> t.AsyncIterator[AuthorizationService]:
    options = AuthorizationOptions(
        database_url=MONGO_URL,
        subject_key="email",
        mongo_database=f"iam_test_{ObjectId()}",
        mongo_transactions=os.getenv("IAM_TEST_MONGO_TRANSACTIONS") == "1",
        chunk_size=2,
    )
    service = await create_authorization_service(options)
    try:
        yield service
    finally:
        await service.store.client.drop_database(service.store.db.name)
        await service.close()


@pytest_asyncio.fixture
async def mongo_user(mongo_service):
    async def _make(email: t.Optional[str]) -> str:
        result = await mongo_service.store.db["users"].insert_one({"email": email})
        return str(result.inserted_id)

    return _make


async def _denorm(service, **filters):
    async with service.store.session() as session:
        return await session.find_denorm(**filters)


async def test_access_scenario(mongo_service, mongo_user):
    role = await mongo_service.create_role("editor")
    await mongo_service.attach_policy_to_role(role.id, resource="doc", action="edit")
    user_id = await mongo_user("u1")
    await mongo_service.attach_role_to_user(user_id, role.id)

    permissions = [{"resource": "doc", "action": "edit"}]
    assert await mongo_service.check_user_access(subject="u1", permissions=permissions)
    assert await mongo_service.check_user_access(id=user_id, permissions=permissions)

    await mongo_service.remove_role_from_user(role.id, user_id)
    assert not await mongo_service.check_user_access(subject="u1", permissions=permissions)


async def test_fan_out(mongo_service, mongo_user):
    role = await mongo_service.create_role("editor")
    await mongo_service.attach_policy_to_role(role.id, resource="doc", action="edit")
    for email in ("a", "b", "c"):
        await mongo_service.attach_role_to_user(await mongo_user(email), role.id)

    await mongo_service.attach_policy_to_role(role.id, resource="doc", action="publish")

    rows = await _denorm(mongo_service, policy_map_key="$doc$publish")
    assert [(row.subject, row.role_key) for row in rows] == [("a", "editor"), ("b", "editor"), ("c", "editor")]


async def test_role_invariants(mongo_service, mongo_user):
    role = await mongo_service.create_role("editor")
    await mongo_service.attach_policy_to_role(role.id, resource="doc", action="edit")
    with pytest.raises(RoleCannotBeEmptyError):
        await mongo_service.remove_policy_from_role(role.id, resource="doc", action="edit")

    await mongo_service.attach_role_to_user(await mongo_user("a"), role.id)
    with pytest.raises(RoleAttachedOnUsersError):
        await mongo_service.remove_role(role.id)
    result = await mongo_service.remove_role(role.id, force_remove=True)
    assert result.users_affected == 1
    assert await _denorm(mongo_service, role_key="editor") == []


async def test_direct_grants(mongo_service, mongo_user):
    user_id = await mongo_user("a")
    attached = await mongo_service.attach_policy_to_user(user_id, resource="doc", action="read")
    policy_id = attached.user_permissions.policy_ids[0]
    assert [p.id for p in await mongo_service.get_policies_for_user(user_id)] == [policy_id]

    await mongo_service.remove_policy_from_user(user_id, policy_id)
    assert await _denorm(mongo_service, subject="a") == []

    await mongo_service.remove_user(user_id, delete_user=True)
    assert await mongo_service.store.db["users"].count_documents({}) == 0


async def test_store_guarantees(mongo_service):
    async with mongo_service.store.transaction() as session:
        await session.create_user_permissions("a")
    with pytest.raises(DuplicateRecordError):
        async with mongo_service.store.transaction() as session:
            await session.create_user_permissions("a")

    role = await mongo_service.create_role("editor")
    async with mongo_service.store.transaction() as session:
        await session.save_role(role)
    with pytest.raises(ConcurrentModificationError):
        async with mongo_service.store.transaction() as session:
            await session.save_role(role)
