"""
Authorization service.

Public operation set of the library. Each operation validates against the
current state in a read session (failing fast, before any write), then hands
the mutation to a consistency transaction. Domain errors propagate unchanged;
anything else that escapes an operation is wrapped in InternalError.

Usage:
    service = await create_authorization_service()

    role = await service.create_role("editor")
    await service.attach_policy_to_role(role.id, resource="doc", action="edit")
    await service.attach_role_to_user(user_id, role.id)

    allowed = await service.check_user_access(
        subject="u1@example.com",
        permissions=[{"resource": "doc", "action": "edit"}],
    )
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from iam.core.config import AuthorizationOptions
from iam.features.authorization.access import AccessEvaluator
from iam.features.authorization.exceptions import (
    AuthorizationError,
    ConflictingPolicyDataError,
    DuplicateRecordError,
    EmptyRoleError,
    InsufficientPolicyDataError,
    InternalError,
    InvalidRequestError,
    PolicyAlreadyAttachedOnRoleError,
    PolicyAlreadyAttachedOnUserError,
    PolicyExistsError,
    PolicyNotAttachedOnRoleError,
    PolicyNotAttachedOnUserError,
    PolicyNotFoundError,
    RoleAlreadyExistsOnUserError,
    RoleAttachedOnUsersError,
    RoleCannotBeEmptyError,
    RoleExistsError,
    RoleNotAttachedOnUserError,
    RoleNotFoundError,
    SubjectEmptyError,
    UserNotFoundError,
)
from iam.features.authorization.policy_key import encode_policy_map_key, policy_map_key
from iam.features.authorization.repositories.base import AuthorizationStore, StoreSession
from iam.features.authorization.schemas import (
    AttachPolicyToUserResponse,
    PolicyRecord,
    RemoveRoleResponse,
    RemoveUserResponse,
    RolePolicyResponse,
    RoleRecord,
    SuccessResponse,
    UserRecord,
    project,
)
from iam.features.authorization.transactions import (
    AddPolicyToRoleTransaction,
    AddPolicyToUserTransaction,
    AddRoleToUserTransaction,
    RemovePolicyFromRoleTransaction,
    RemovePolicyFromUserTransaction,
    RemoveRoleFromUserTransaction,
    RemoveRoleTransaction,
    RemoveUserTransaction,
)
from iam.utils import get_logger


log = get_logger(__name__)


class AuthorizationService:

    def __init__(self, store: AuthorizationStore, options: AuthorizationOptions):
        self.store = store
        self.options = options

        chunk_size = options.chunk_size
        self.add_policy_to_role_transaction = AddPolicyToRoleTransaction(store, chunk_size)
        self.remove_policy_from_role_transaction = RemovePolicyFromRoleTransaction(store, chunk_size)
        self.add_role_to_user_transaction = AddRoleToUserTransaction(store, chunk_size)
        self.remove_role_from_user_transaction = RemoveRoleFromUserTransaction(store, chunk_size)
        self.add_policy_to_user_transaction = AddPolicyToUserTransaction(store, chunk_size)
        self.remove_policy_from_user_transaction = RemovePolicyFromUserTransaction(store, chunk_size)
        self.remove_role_transaction = RemoveRoleTransaction(store, chunk_size)
        self.remove_user_transaction = RemoveUserTransaction(store, chunk_size)

        self.access_evaluator = AccessEvaluator(store, options.subject_key)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    def get_subject_key(self) -> str:
        return self.options.subject_key

    @asynccontextmanager
    async def _operation(self, operation: str, **params: Any):
        log.info(f"{operation} {params}")
        try:
            yield
        except AuthorizationError as exc:
            log.error(f"{operation} failed: [{exc.code}] {exc.message}")
            raise
        except Exception as exc:
            log.error(f"{operation} failed unexpectedly: {exc}", exc_info=True)
            raise InternalError(error=str(exc)) from exc

    # ------------------------------------------------------------------
    # Lookups shared by several operations
    # ------------------------------------------------------------------

    async def _load_role(self, session: StoreSession, role_id: str) -> RoleRecord:
        role = await session.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    async def _load_user(self, session: StoreSession, user_id: Any) -> Tuple[UserRecord, str]:
        user = await session.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        if not user.subject:
            raise SubjectEmptyError(self.options.subject_key, user_id)
        return user, user.subject

    async def _resolve_policy(
        self,
        session: StoreSession,
        policy_id: Optional[str],
        resource: Optional[str],
        action: Optional[str],
    ) -> Optional[PolicyRecord]:
        """
        Resolve a policy given by id, by (resource, action) or by both.

        Returns None when only (resource, action) is given and no such policy
        exists yet; the attach transactions create it.
        """
        by_key_given = resource is not None and action is not None
        if not policy_id and not by_key_given:
            raise InsufficientPolicyDataError()

        by_key = None
        if by_key_given:
            encode_policy_map_key(resource, action)
            by_key = await session.find_policy(resource, action)

        by_id = None
        if policy_id:
            by_id = await session.get_policy(policy_id)
            if by_id is None:
                raise PolicyNotFoundError(policy_id, resource, action)

        if by_key is not None and by_id is not None and by_key.id != by_id.id:
            raise ConflictingPolicyDataError(by_key.id, by_id.id)
        return by_id or by_key

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def create_policy(self, resource: str, action: str) -> PolicyRecord:
        async with self._operation("create_policy", resource=resource, action=action):
            encode_policy_map_key(resource, action)
            async with self.store.transaction() as session:
                if await session.find_policy(resource, action) is not None:
                    raise PolicyExistsError(resource, action)
                try:
                    return await session.create_policy(resource, action)
                except DuplicateRecordError as exc:
                    raise PolicyExistsError(resource, action) from exc

    async def create_or_find_policy(self, resource: str, action: str) -> PolicyRecord:
        async with self._operation("create_or_find_policy", resource=resource, action=action):
            encode_policy_map_key(resource, action)
            async with self.store.session() as session:
                policy = await session.find_policy(resource, action)
            if policy is not None:
                return policy

            try:
                async with self.store.transaction() as session:
                    return await session.create_policy(resource, action)
            except DuplicateRecordError:
                log.debug(f"Policy ({resource}, {action}) created concurrently, reading it back")

            async with self.store.session() as session:
                policy = await session.find_policy(resource, action)
            if policy is None:
                raise InternalError(f"policy ({resource}, {action}) vanished after a duplicate insert")
            return policy

    async def get_policies(
        self,
        where: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Any]:
        async with self._operation("get_policies", where=where, fields=fields):
            async with self.store.session() as session:
                policies = await session.find_policies(where)
            return project(policies, fields)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(self, name: str) -> RoleRecord:
        async with self._operation("create_role", name=name):
            if not name or not name.strip():
                raise InvalidRequestError("role name must not be empty")
            async with self.store.transaction() as session:
                if await session.count_roles(name):
                    raise RoleExistsError(name)
                try:
                    return await session.create_role(name)
                except DuplicateRecordError as exc:
                    raise RoleExistsError(name) from exc

    async def get_role(self, role_id: str) -> RoleRecord:
        async with self._operation("get_role", role_id=role_id):
            async with self.store.session() as session:
                return await self._load_role(session, role_id)

    async def get_roles(
        self,
        where: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Any]:
        async with self._operation("get_roles", where=where, fields=fields):
            async with self.store.session() as session:
                roles = await session.find_roles(where)
            return project(roles, fields)

    async def remove_role(self, role_id: str, force_remove: bool = False) -> RemoveRoleResponse:
        async with self._operation("remove_role", role_id=role_id, force_remove=force_remove):
            async with self.store.session() as session:
                role = await self._load_role(session, role_id)
                user_count = await session.count_user_permissions_with_role(role.id)
            if user_count and not force_remove:
                raise RoleAttachedOnUsersError(role.id, user_count)

            users_affected = await self.remove_role_transaction.run(role=role)
            return RemoveRoleResponse(role=role, users_affected=users_affected)

    async def attach_policy_to_role(
        self,
        role_id: str,
        policy_id: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> RolePolicyResponse:
        async with self._operation(
            "attach_policy_to_role", role_id=role_id, policy_id=policy_id, resource=resource, action=action
        ):
            async with self.store.session() as session:
                role = await self._load_role(session, role_id)
                policy = await self._resolve_policy(session, policy_id, resource, action)
            if policy is not None and role.has_policy(policy.id):
                raise PolicyAlreadyAttachedOnRoleError(policy.id, role.id)

            return await self.add_policy_to_role_transaction.run(
                role_id=role.id, policy=policy, resource=resource, action=action
            )

    async def remove_policy_from_role(
        self,
        role_id: str,
        policy_id: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> RolePolicyResponse:
        async with self._operation(
            "remove_policy_from_role", role_id=role_id, policy_id=policy_id, resource=resource, action=action
        ):
            async with self.store.session() as session:
                role = await self._load_role(session, role_id)
                policy = await self._resolve_policy(session, policy_id, resource, action)
                if policy is None:
                    raise PolicyNotFoundError(policy_id, resource, action)
            if not role.has_policy(policy.id):
                raise PolicyNotAttachedOnRoleError(policy.id, role.id)
            if len(role.policies) == 1:
                raise RoleCannotBeEmptyError(role.id)

            return await self.remove_policy_from_role_transaction.run(role_id=role.id, policy=policy)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def attach_role_to_user(self, user_id: Any, role_id: str) -> SuccessResponse:
        async with self._operation("attach_role_to_user", user_id=user_id, role_id=role_id):
            async with self.store.session() as session:
                user = await session.get_user(user_id)
                if user is None:
                    raise UserNotFoundError(user_id)
                role = await self._load_role(session, role_id)
                if not role.policies:
                    raise EmptyRoleError(role.id)
                if not user.subject:
                    raise SubjectEmptyError(self.options.subject_key, user_id)
                user_permissions = await session.find_user_permissions(user.subject)
            if user_permissions is not None and role.id in user_permissions.role_ids:
                raise RoleAlreadyExistsOnUserError(role.name, user.subject)

            return await self.add_role_to_user_transaction.run(subject=user.subject, role_id=role.id)

    async def remove_role_from_user(self, role_id: str, user_id: Any) -> SuccessResponse:
        async with self._operation("remove_role_from_user", role_id=role_id, user_id=user_id):
            async with self.store.session() as session:
                role = await self._load_role(session, role_id)
                user, subject = await self._load_user(session, user_id)
                user_permissions = await session.find_user_permissions(subject)
            if user_permissions is None or role.id not in user_permissions.role_ids:
                raise RoleNotAttachedOnUserError(role.id, user_id)

            return await self.remove_role_from_user_transaction.run(subject=subject, role=role, user_id=user.id)

    async def attach_policy_to_user(
        self,
        user_id: Any,
        policy_id: Optional[str] = None,
        resource: Optional[str] = None,
        action: Optional[str] = None,
    ) -> AttachPolicyToUserResponse:
        async with self._operation(
            "attach_policy_to_user", user_id=user_id, policy_id=policy_id, resource=resource, action=action
        ):
            async with self.store.session() as session:
                user, subject = await self._load_user(session, user_id)
                policy = await self._resolve_policy(session, policy_id, resource, action)
                if policy is not None and await session.count_denorm(
                    subject=subject, policy_map_key=policy_map_key(policy), direct_only=True
                ):
                    raise PolicyAlreadyAttachedOnUserError(policy.id, user_id)

            return await self.add_policy_to_user_transaction.run(
                subject=subject, user_id=user.id, policy=policy, resource=resource, action=action
            )

    async def remove_policy_from_user(self, user_id: Any, policy_id: str) -> SuccessResponse:
        async with self._operation("remove_policy_from_user", user_id=user_id, policy_id=policy_id):
            async with self.store.session() as session:
                user = await session.get_user(user_id)
                if user is None:
                    raise UserNotFoundError(user_id)
                policy = await session.get_policy(policy_id) if policy_id else None
                if policy is None:
                    raise PolicyNotFoundError(policy_id)
                if not user.subject:
                    raise SubjectEmptyError(self.options.subject_key, user_id)
                user_permissions = await session.find_user_permissions(user.subject)
            if user_permissions is None or policy.id not in user_permissions.policy_ids:
                raise PolicyNotAttachedOnUserError(policy.id, user_id)

            return await self.remove_policy_from_user_transaction.run(
                subject=user.subject, policy=policy, user_id=user.id
            )

    async def remove_user(self, user_id: Any, delete_user: bool = False) -> RemoveUserResponse:
        async with self._operation("remove_user", user_id=user_id, delete_user=delete_user):
            async with self.store.session() as session:
                user, subject = await self._load_user(session, user_id)

            result = await self.remove_user_transaction.run(subject=subject, user_id=user.id, delete_user=delete_user)
            return RemoveUserResponse(user=user, success=result.success)

    async def get_roles_for_user(self, user_id: Any) -> List[RoleRecord]:
        async with self._operation("get_roles_for_user", user_id=user_id):
            async with self.store.session() as session:
                _, subject = await self._load_user(session, user_id)
                user_permissions = await session.find_user_permissions(subject)
                if user_permissions is None:
                    return []
                return await session.get_roles(user_permissions.role_ids)

    async def get_policies_for_user(self, user_id: Any) -> List[PolicyRecord]:
        """Directly attached policies only; role-granted ones come with get_roles_for_user."""
        async with self._operation("get_policies_for_user", user_id=user_id):
            async with self.store.session() as session:
                _, subject = await self._load_user(session, user_id)
                user_permissions = await session.find_user_permissions(subject)
                if user_permissions is None:
                    return []
                return await session.get_policies(user_permissions.policy_ids)

    # ------------------------------------------------------------------
    # Access check
    # ------------------------------------------------------------------

    async def check_user_access(
        self,
        subject: Optional[str] = None,
        id: Any = None,
        permissions: Iterable[Any] = (),
    ) -> bool:
        permissions = list(permissions)
        async with self._operation("check_user_access", subject=subject, id=id, permissions=len(permissions)):
            return await self.access_evaluator.check_access(permissions, subject=subject, user_id=id)


async def create_authorization_service(
    options: Optional[AuthorizationOptions] = None,
    initialize: bool = True,
) -> AuthorizationService:
    """
    Wire a store for `options.database_url` and the service on top of it.

    A `mongodb://` URL selects the MongoDB store; anything else is handed to
    SQLAlchemy.
    """
    options = options or AuthorizationOptions.from_env()

    if options.is_mongo:
        from iam.features.authorization.repositories.mongo import MongoAuthorizationStore

        store: AuthorizationStore = MongoAuthorizationStore.from_url(
            options.database_url,
            options.mongo_database,
            options.user_collection,
            options.subject_key,
            use_transactions=options.mongo_transactions,
        )
    else:
        from iam.features.authorization.repositories.sql import SqlAuthorizationStore

        if options.user_model is None:
            from iam.features.users.models import User
            options.user_model = User
        store = SqlAuthorizationStore.from_url(options.database_url, options.user_model, options.subject_key)

    service = AuthorizationService(store, options)
    if initialize:
        await service.initialize()
    log.info(f"Authorization service ready ({store.backend} backend, subject key '{options.subject_key}')")
    return service
