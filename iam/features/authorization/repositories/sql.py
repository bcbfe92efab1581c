"""
SQL storage backend (SQLAlchemy async).

Association tables are written with core statements so a save never depends
on lazily loaded collections; reads use populate_existing so a record loaded
twice in one transaction reflects the earlier writes.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update, delete, insert, func, and_, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from iam.core.database.base import generate_ulid
from iam.core.database.engine import create_engine, create_session_factory, init_db
from iam.features.authorization.exceptions import ConcurrentModificationError, DuplicateRecordError
from iam.features.authorization.models import (
    Policy,
    Role,
    UserPermissions,
    UserPoliciesDenorm,
    role_policies,
    user_permission_roles,
    user_permission_policies,
)
from iam.features.authorization.repositories.base import (
    AuthorizationStore,
    StoreSession,
    POLICY_FILTER_FIELDS,
    ROLE_FILTER_FIELDS,
    check_denorm_filters,
    check_filter_fields,
)
from iam.features.authorization.schemas import (
    PolicyRecord,
    RoleRecord,
    UserPermissionsRecord,
    UserPoliciesDenormRecord,
    UserRecord,
)
from iam.utils import get_logger


log = get_logger(__name__)


def _role_record(role: Role) -> RoleRecord:
    return RoleRecord(
        id=role.id,
        name=role.name,
        revision=role.revision,
        policies=[PolicyRecord.model_validate(policy) for policy in role.policies],
    )


def _user_permissions_record(user_permissions: UserPermissions) -> UserPermissionsRecord:
    return UserPermissionsRecord(
        id=user_permissions.id,
        subject=user_permissions.subject,
        revision=user_permissions.revision,
        role_ids=[role.id for role in user_permissions.roles],
        policy_ids=[policy.id for policy in user_permissions.policies],
    )


class SqlStoreSession(StoreSession):

    def __init__(self, db: AsyncSession, user_model: Any, subject_key: str):
        self.db = db
        self.user_model = user_model
        self.subject_key = subject_key

    async def _flush(self, entity: str, **details: Any) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            log.debug(f"Unique constraint violated for {entity} {details}: {exc.orig}")
            raise DuplicateRecordError(entity, **details) from exc

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        policy = await self.db.get(Policy, policy_id)
        return PolicyRecord.model_validate(policy) if policy else None

    async def find_policy(self, resource: str, action: str) -> Optional[PolicyRecord]:
        stmt = select(Policy).where(and_(Policy.resource == resource, Policy.action == action))
        result = await self.db.execute(stmt)
        policy = result.scalar_one_or_none()
        return PolicyRecord.model_validate(policy) if policy else None

    async def find_policies(self, where: Optional[Dict[str, Any]] = None) -> List[PolicyRecord]:
        where = check_filter_fields(where, POLICY_FILTER_FIELDS)
        stmt = select(Policy).order_by(Policy.id)
        for field, value in where.items():
            stmt = stmt.where(getattr(Policy, field) == value)
        result = await self.db.execute(stmt)
        return [PolicyRecord.model_validate(policy) for policy in result.scalars().all()]

    async def get_policies(self, policy_ids: Iterable[str]) -> List[PolicyRecord]:
        ids = list(policy_ids)
        if not ids:
            return []
        result = await self.db.execute(select(Policy).where(Policy.id.in_(ids)).order_by(Policy.id))
        return [PolicyRecord.model_validate(policy) for policy in result.scalars().all()]

    async def create_policy(self, resource: str, action: str) -> PolicyRecord:
        policy = Policy(id=generate_ulid(), resource=resource, action=action)
        self.db.add(policy)
        await self._flush("policy", resource=resource, action=action)
        return PolicyRecord(id=policy.id, resource=resource, action=action)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def _select_roles(self):
        return select(Role).execution_options(populate_existing=True).order_by(Role.id)

    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        result = await self.db.execute(self._select_roles().where(Role.id == role_id))
        role = result.scalar_one_or_none()
        return _role_record(role) if role else None

    async def find_roles(self, where: Optional[Dict[str, Any]] = None) -> List[RoleRecord]:
        where = check_filter_fields(where, ROLE_FILTER_FIELDS)
        stmt = self._select_roles()
        for field, value in where.items():
            stmt = stmt.where(getattr(Role, field) == value)
        result = await self.db.execute(stmt)
        return [_role_record(role) for role in result.scalars().all()]

    async def get_roles(self, role_ids: Iterable[str]) -> List[RoleRecord]:
        ids = list(role_ids)
        if not ids:
            return []
        result = await self.db.execute(self._select_roles().where(Role.id.in_(ids)))
        return [_role_record(role) for role in result.scalars().all()]

    async def count_roles(self, name: str) -> int:
        result = await self.db.execute(select(func.count()).select_from(Role).where(Role.name == name))
        return result.scalar_one()

    async def create_role(self, name: str) -> RoleRecord:
        role = Role(id=generate_ulid(), name=name, revision=0)
        self.db.add(role)
        await self._flush("role", name=name)
        return RoleRecord(id=role.id, name=name, revision=0, policies=[])

    async def save_role(self, role: RoleRecord) -> RoleRecord:
        result = await self.db.execute(
            update(Role)
            .where(and_(Role.id == role.id, Role.revision == role.revision))
            .values(revision=Role.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError("role", role.id, role.revision)

        await self.db.execute(delete(role_policies).where(role_policies.c.role_id == role.id))
        if role.policies:
            await self.db.execute(
                insert(role_policies),
                [{"role_id": role.id, "policy_id": policy_id} for policy_id in role.policy_ids],
            )
        return role.model_copy(update={"revision": role.revision + 1})

    async def delete_role(self, role_id: str) -> None:
        # SQLite leaves foreign keys unenforced, so association rows go explicitly
        await self.db.execute(delete(role_policies).where(role_policies.c.role_id == role_id))
        await self.db.execute(delete(user_permission_roles).where(user_permission_roles.c.role_id == role_id))
        await self.db.execute(delete(Role).where(Role.id == role_id).execution_options(synchronize_session=False))

    # ------------------------------------------------------------------
    # User permissions
    # ------------------------------------------------------------------

    async def find_user_permissions(self, subject: str) -> Optional[UserPermissionsRecord]:
        stmt = (
            select(UserPermissions)
            .where(UserPermissions.subject == subject)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        user_permissions = result.scalar_one_or_none()
        return _user_permissions_record(user_permissions) if user_permissions else None

    async def create_user_permissions(self, subject: str) -> UserPermissionsRecord:
        user_permissions = UserPermissions(id=generate_ulid(), subject=subject, revision=0)
        self.db.add(user_permissions)
        await self._flush("user_permissions", subject=subject)
        return UserPermissionsRecord(id=user_permissions.id, subject=subject, revision=0)

    async def save_user_permissions(self, record: UserPermissionsRecord) -> UserPermissionsRecord:
        result = await self.db.execute(
            update(UserPermissions)
            .where(and_(UserPermissions.id == record.id, UserPermissions.revision == record.revision))
            .values(revision=UserPermissions.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError("user_permissions", record.id, record.revision)

        await self.db.execute(
            delete(user_permission_roles).where(user_permission_roles.c.user_permissions_id == record.id)
        )
        await self.db.execute(
            delete(user_permission_policies).where(user_permission_policies.c.user_permissions_id == record.id)
        )
        if record.role_ids:
            await self.db.execute(
                insert(user_permission_roles),
                [{"user_permissions_id": record.id, "role_id": role_id} for role_id in record.role_ids],
            )
        if record.policy_ids:
            await self.db.execute(
                insert(user_permission_policies),
                [{"user_permissions_id": record.id, "policy_id": policy_id} for policy_id in record.policy_ids],
            )
        return record.model_copy(update={"revision": record.revision + 1})

    async def count_user_permissions_with_role(self, role_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(user_permission_roles)
            .where(user_permission_roles.c.role_id == role_id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def remove_role_from_all_user_permissions(self, role_id: str) -> int:
        holders = select(user_permission_roles.c.user_permissions_id).where(
            user_permission_roles.c.role_id == role_id
        )
        result = await self.db.execute(
            update(UserPermissions)
            .where(UserPermissions.id.in_(holders))
            .values(revision=UserPermissions.revision + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(delete(user_permission_roles).where(user_permission_roles.c.role_id == role_id))
        return result.rowcount

    async def delete_user_permissions(self, subject: str) -> int:
        result = await self.db.execute(select(UserPermissions.id).where(UserPermissions.subject == subject))
        ids = list(result.scalars().all())
        if not ids:
            return 0
        await self.db.execute(
            delete(user_permission_roles).where(user_permission_roles.c.user_permissions_id.in_(ids))
        )
        await self.db.execute(
            delete(user_permission_policies).where(user_permission_policies.c.user_permissions_id.in_(ids))
        )
        await self.db.execute(
            delete(UserPermissions)
            .where(UserPermissions.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return len(ids)

    # ------------------------------------------------------------------
    # Denormalized index
    # ------------------------------------------------------------------

    def _denorm_conditions(self, subject, policy_map_key, role_key, direct_only) -> list:
        conditions = []
        if subject is not None:
            conditions.append(UserPoliciesDenorm.subject == subject)
        if policy_map_key is not None:
            conditions.append(UserPoliciesDenorm.policy_map_key == policy_map_key)
        if direct_only:
            conditions.append(UserPoliciesDenorm.role_key.is_(None))
        elif role_key is not None:
            conditions.append(UserPoliciesDenorm.role_key == role_key)
        return conditions

    async def find_granted_keys(self, subject: str, policy_map_keys: Set[str]) -> Set[str]:
        if not policy_map_keys:
            return set()
        stmt = (
            select(UserPoliciesDenorm.policy_map_key)
            .where(
                and_(
                    UserPoliciesDenorm.subject == subject,
                    UserPoliciesDenorm.policy_map_key.in_(list(policy_map_keys)),
                )
            )
            .distinct()
        )
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def find_subjects_with_role(self, role_key: str) -> Set[str]:
        stmt = select(UserPoliciesDenorm.subject).where(UserPoliciesDenorm.role_key == role_key).distinct()
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def find_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> List[UserPoliciesDenormRecord]:
        conditions = self._denorm_conditions(subject, policy_map_key, role_key, direct_only)
        stmt = select(
            UserPoliciesDenorm.subject,
            UserPoliciesDenorm.policy_map_key,
            UserPoliciesDenorm.role_key,
        ).order_by(UserPoliciesDenorm.subject, UserPoliciesDenorm.policy_map_key)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.db.execute(stmt)
        return [
            UserPoliciesDenormRecord(subject=row.subject, policy_map_key=row.policy_map_key, role_key=row.role_key)
            for row in result.all()
        ]

    async def count_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        conditions = self._denorm_conditions(subject, policy_map_key, role_key, direct_only)
        stmt = select(func.count()).select_from(UserPoliciesDenorm)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def insert_denorm(self, rows: List[UserPoliciesDenormRecord]) -> int:
        if not rows:
            return 0
        await self.db.execute(
            insert(UserPoliciesDenorm.__table__),
            [{"id": generate_ulid(), **row.model_dump()} for row in rows],
        )
        return len(rows)

    async def delete_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        check_denorm_filters(subject, policy_map_key, role_key, direct_only)
        conditions = self._denorm_conditions(subject, policy_map_key, role_key, direct_only)
        result = await self.db.execute(delete(UserPoliciesDenorm.__table__).where(and_(*conditions)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _user_pk(self):
        return inspect(self.user_model).primary_key[0]

    def _coerce_user_id(self, user_id: Any) -> Any:
        """Path parameters arrive as strings; integer keys need converting."""
        try:
            python_type = self._user_pk().type.python_type
        except NotImplementedError:
            return user_id
        if python_type is int and isinstance(user_id, str):
            return int(user_id) if user_id.lstrip("-").isdigit() else None
        return user_id

    async def get_user(self, user_id: Any) -> Optional[UserRecord]:
        key = self._coerce_user_id(user_id)
        if key is None:
            return None
        user = await self.db.get(self.user_model, key)
        if user is None:
            return None
        subject = getattr(user, self.subject_key, None)
        return UserRecord(id=key, subject=str(subject) if subject not in (None, "") else None)

    async def delete_user(self, user_id: Any) -> None:
        key = self._coerce_user_id(user_id)
        await self.db.execute(
            delete(self.user_model)
            .where(self._user_pk() == key)
            .execution_options(synchronize_session=False)
        )


class SqlAuthorizationStore(AuthorizationStore):
    """
    Store backed by any SQLAlchemy async engine.

    Usage:
        store = SqlAuthorizationStore.from_url("sqlite+aiosqlite:///./iam.db", User, "email")
        await store.initialize()

        async with store.transaction() as session:
            role = await session.create_role("editor")
    """
    backend = "sql"

    def __init__(self, engine: AsyncEngine, user_model: Any, subject_key: str):
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.user_model = user_model
        self.subject_key = subject_key

    @classmethod
    def from_url(cls, database_url: str, user_model: Any, subject_key: str) -> "SqlAuthorizationStore":
        return cls(create_engine(database_url), user_model, subject_key)

    async def initialize(self) -> None:
        await init_db(self.engine)
        log.info(f"SQL authorization store ready on {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SqlStoreSession]:
        async with self.session_factory() as db:
            yield SqlStoreSession(db, self.user_model, self.subject_key)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlStoreSession]:
        async with self.session_factory() as db:
            try:
                yield SqlStoreSession(db, self.user_model, self.subject_key)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
