"""
Consistency transactions.

Each transaction mutates the normalized graph (role policies, user roles and
direct user policies) together with the denormalized index inside one store
transaction: every step commits or none does.

The service validates before calling in; a transaction still reloads what it
mutates, re-checks the preconditions against that state and saves with a
revision check.
"""
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from iam.core import config
from iam.features.authorization.exceptions import (
    EmptyRoleError,
    PolicyAlreadyAttachedOnRoleError,
    PolicyAlreadyAttachedOnUserError,
    PolicyNotAttachedOnRoleError,
    PolicyNotAttachedOnUserError,
    RoleAlreadyExistsOnUserError,
    RoleCannotBeEmptyError,
    RoleNotAttachedOnUserError,
    RoleNotFoundError,
)
from iam.features.authorization.policy_key import encode_policy_map_key, policy_map_key
from iam.features.authorization.repositories.base import AuthorizationStore, StoreSession
from iam.features.authorization.schemas import (
    AttachPolicyToUserResponse,
    PolicyRecord,
    RolePolicyResponse,
    RoleRecord,
    SuccessResponse,
    UserPermissionsRecord,
    UserPoliciesDenormRecord,
)
from iam.utils import chunked, get_logger


log = get_logger(__name__)


class Transaction(ABC):
    """
    One atomic unit of work.

    Usage:
        transaction = AddRoleToUserTransaction(store)
        await transaction.run(subject="u1", role_id=role.id)
    """

    def __init__(self, store: AuthorizationStore, chunk_size: int = config.DENORM_INSERT_CHUNK_SIZE):
        self.store = store
        self.chunk_size = chunk_size

    @property
    def name(self) -> str:
        return type(self).__name__

    async def run(self, **data: Any) -> Any:
        async with self.store.transaction() as session:
            try:
                return await self.execute(session, **data)
            except Exception as exc:
                log.error(f"{self.name} failed, rolling back: {exc}")
                raise

    @abstractmethod
    async def execute(self, session: StoreSession, **data: Any) -> Any:
        ...

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def load_role(self, session: StoreSession, role_id: str) -> RoleRecord:
        role = await session.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    async def find_or_create_policy(
        self,
        session: StoreSession,
        policy: Optional[PolicyRecord],
        resource: Optional[str],
        action: Optional[str],
    ) -> PolicyRecord:
        if policy is not None:
            return policy
        encode_policy_map_key(resource, action)
        found = await session.find_policy(resource, action)
        if found is not None:
            return found
        created = await session.create_policy(resource, action)
        log.info(f"{self.name}: created policy {created.id} ({resource}, {action})")
        return created

    async def load_or_create_user_permissions(self, session: StoreSession, subject: str) -> UserPermissionsRecord:
        user_permissions = await session.find_user_permissions(subject)
        if user_permissions is None:
            user_permissions = await session.create_user_permissions(subject)
            log.debug(f"{self.name}: created user permissions for subject {subject}")
        return user_permissions

    async def insert_denorm(self, session: StoreSession, rows: List[UserPoliciesDenormRecord]) -> int:
        inserted = 0
        for batch in chunked(rows, self.chunk_size):
            inserted += await session.insert_denorm(batch)
        return inserted


# ============================================================================
# Role <-> Policy
# ============================================================================

class AddPolicyToRoleTransaction(Transaction):

    async def execute(
        self,
        session: StoreSession,
        role_id: str,
        policy: Optional[PolicyRecord] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> RolePolicyResponse:
        role = await self.load_role(session, role_id)
        policy = await self.find_or_create_policy(session, policy, resource, action)
        if role.has_policy(policy.id):
            raise PolicyAlreadyAttachedOnRoleError(policy.id, role.id)

        role.policies.append(policy)
        role = await session.save_role(role)

        # Subjects already holding the role gain the new policy too
        subjects = await session.find_subjects_with_role(role.name)
        key = policy_map_key(policy)
        inserted = await self.insert_denorm(
            session,
            [UserPoliciesDenormRecord(subject=subject, policy_map_key=key, role_key=role.name) for subject in sorted(subjects)],
        )
        log.info(f"Attached policy {policy.id} to role {role.name}, {inserted} denorm rows added")
        return RolePolicyResponse(role=role, policy=policy)


class RemovePolicyFromRoleTransaction(Transaction):

    async def execute(self, session: StoreSession, role_id: str, policy: PolicyRecord) -> RolePolicyResponse:
        role = await self.load_role(session, role_id)
        if not role.has_policy(policy.id):
            raise PolicyNotAttachedOnRoleError(policy.id, role.id)
        if len(role.policies) == 1:
            raise RoleCannotBeEmptyError(role.id)

        role.policies = [p for p in role.policies if p.id != policy.id]
        role = await session.save_role(role)

        removed = await session.delete_denorm(role_key=role.name, policy_map_key=policy_map_key(policy))
        log.info(f"Removed policy {policy.id} from role {role.name}, {removed} denorm rows deleted")
        return RolePolicyResponse(role=role, policy=policy)


# ============================================================================
# User <-> Role
# ============================================================================

class AddRoleToUserTransaction(Transaction):

    async def execute(self, session: StoreSession, subject: str, role_id: str) -> SuccessResponse:
        role = await self.load_role(session, role_id)
        if not role.policies:
            raise EmptyRoleError(role.id)

        user_permissions = await self.load_or_create_user_permissions(session, subject)
        if role.id in user_permissions.role_ids:
            raise RoleAlreadyExistsOnUserError(role.name, subject)

        user_permissions.role_ids.append(role.id)
        await session.save_user_permissions(user_permissions)
        # Holder changes bump the role so a concurrent fan-out cannot miss this subject
        role = await session.save_role(role)

        inserted = await self.insert_denorm(
            session,
            [
                UserPoliciesDenormRecord(subject=subject, policy_map_key=policy_map_key(policy), role_key=role.name)
                for policy in role.policies
            ],
        )
        log.info(f"Attached role {role.name} to subject {subject}, {inserted} denorm rows added")
        return SuccessResponse()


class RemoveRoleFromUserTransaction(Transaction):

    async def execute(self, session: StoreSession, subject: str, role: RoleRecord, user_id: Any) -> SuccessResponse:
        role = await self.load_role(session, role.id)
        user_permissions = await session.find_user_permissions(subject)
        if user_permissions is None or role.id not in user_permissions.role_ids:
            raise RoleNotAttachedOnUserError(role.id, user_id)

        user_permissions.role_ids.remove(role.id)
        await session.save_user_permissions(user_permissions)
        role = await session.save_role(role)

        removed = await session.delete_denorm(subject=subject, role_key=role.name)
        log.info(f"Removed role {role.name} from subject {subject}, {removed} denorm rows deleted")
        return SuccessResponse()


# ============================================================================
# User <-> Policy (direct grants)
# ============================================================================

class AddPolicyToUserTransaction(Transaction):

    async def execute(
        self,
        session: StoreSession,
        subject: str,
        user_id: Any,
        policy: Optional[PolicyRecord] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> AttachPolicyToUserResponse:
        user_permissions = await self.load_or_create_user_permissions(session, subject)
        policy = await self.find_or_create_policy(session, policy, resource, action)
        key = policy_map_key(policy)
        if policy.id in user_permissions.policy_ids or await session.count_denorm(
            subject=subject, policy_map_key=key, direct_only=True
        ):
            raise PolicyAlreadyAttachedOnUserError(policy.id, user_id)

        user_permissions.policy_ids.append(policy.id)
        user_permissions = await session.save_user_permissions(user_permissions)

        await self.insert_denorm(session, [UserPoliciesDenormRecord(subject=subject, policy_map_key=key)])
        log.info(f"Attached policy {policy.id} directly to subject {subject}")
        return AttachPolicyToUserResponse(user_permissions=user_permissions)


class RemovePolicyFromUserTransaction(Transaction):

    async def execute(self, session: StoreSession, subject: str, policy: PolicyRecord, user_id: Any) -> SuccessResponse:
        user_permissions = await session.find_user_permissions(subject)
        if user_permissions is None or policy.id not in user_permissions.policy_ids:
            raise PolicyNotAttachedOnUserError(policy.id, user_id)

        user_permissions.policy_ids.remove(policy.id)
        await session.save_user_permissions(user_permissions)

        # Role-granted copies of the same permission stay
        removed = await session.delete_denorm(subject=subject, policy_map_key=policy_map_key(policy), direct_only=True)
        log.info(f"Removed direct policy {policy.id} from subject {subject}, {removed} denorm rows deleted")
        return SuccessResponse()


# ============================================================================
# Deletions
# ============================================================================

class RemoveRoleTransaction(Transaction):

    async def execute(self, session: StoreSession, role: RoleRecord) -> int:
        users_affected = await session.remove_role_from_all_user_permissions(role.id)
        removed = await session.delete_denorm(role_key=role.name)
        await session.delete_role(role.id)
        log.info(f"Removed role {role.name} from {users_affected} users, {removed} denorm rows deleted")
        return users_affected


class RemoveUserTransaction(Transaction):

    async def execute(self, session: StoreSession, subject: str, user_id: Any, delete_user: bool = False) -> SuccessResponse:
        await session.delete_user_permissions(subject)
        removed = await session.delete_denorm(subject=subject)
        if delete_user:
            await session.delete_user(user_id)
        log.info(f"Removed permissions of subject {subject} ({removed} denorm rows), user deleted: {delete_user}")
        return SuccessResponse()
