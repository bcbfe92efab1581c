"""
Shared fixtures.

Every test gets its own in-memory SQLite database (StaticPool keeps the one
connection that holds it) wired into a fresh AuthorizationService.
"""
import typing as t

import pytest_asyncio

from iam.core.config import AuthorizationOptions
from iam.core.database.base import generate_ulid
from iam.features.authorization.service import AuthorizationService, create_authorization_service
from iam.features.users.models import User


TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def service() -> t.AsyncIterator[AuthorizationService]:
    # Small chunks so multi-row fan-outs span several inserts
    options = AuthorizationOptions(
        database_url=TEST_DB_URL,
        subject_key="email",
        user_model=User,
        chunk_size=2,
    )
    service = await create_authorization_service(options)
    try:
        yield service
    finally:
        await service.close()


@pytest_asyncio.fixture
async def make_user(service: AuthorizationService):
    """Insert a host user row and return its id."""
    async def _make(email: t.Optional[str]) -> str:
        async with service.store.session_factory() as db:
            user = User(id=generate_ulid(), email=email, name=email or "")
            db.add(user)
            await db.commit()
            return user.id

    return _make


@pytest_asyncio.fixture
async def denorm(service: AuthorizationService):
    """Read denormalized rows matching the given filters."""
    async def _denorm(**filters):
        async with service.store.session() as session:
            return await session.find_denorm(**filters)

    return _denorm


@pytest_asyncio.fixture
async def editor(service: AuthorizationService):
    """Role "editor" holding ($doc$edit)."""
    role = await service.create_role("editor")
    result = await service.attach_policy_to_role(role.id, resource="doc", action="edit")
    return result.role
