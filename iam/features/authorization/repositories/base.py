"""
Storage capability interface.

The service, the transactions and the access check are written once against
`StoreSession`; each backend (SQL via SQLAlchemy, MongoDB via Motor) provides
an `AuthorizationStore` that hands out sessions.

`session()` yields a read unit. `transaction()` yields an atomic unit: it
commits when the block exits normally and rolls back on any exception.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Dict, Iterable, List, Optional, Set

from iam.features.authorization.exceptions import InvalidRequestError
from iam.features.authorization.schemas import (
    PolicyRecord,
    RoleRecord,
    UserPermissionsRecord,
    UserPoliciesDenormRecord,
    UserRecord,
)

POLICY_FILTER_FIELDS = {"id", "resource", "action"}
ROLE_FILTER_FIELDS = {"id", "name"}


class StoreSession(ABC):

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_policy(self, policy_id: str) -> Optional[PolicyRecord]:
        ...

    @abstractmethod
    async def find_policy(self, resource: str, action: str) -> Optional[PolicyRecord]:
        ...

    @abstractmethod
    async def find_policies(self, where: Optional[Dict[str, Any]] = None) -> List[PolicyRecord]:
        ...

    @abstractmethod
    async def get_policies(self, policy_ids: Iterable[str]) -> List[PolicyRecord]:
        ...

    @abstractmethod
    async def create_policy(self, resource: str, action: str) -> PolicyRecord:
        """Insert a policy. Raises DuplicateRecordError if (resource, action) exists."""

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        """Load a role together with its policies."""

    @abstractmethod
    async def find_roles(self, where: Optional[Dict[str, Any]] = None) -> List[RoleRecord]:
        ...

    @abstractmethod
    async def get_roles(self, role_ids: Iterable[str]) -> List[RoleRecord]:
        ...

    @abstractmethod
    async def count_roles(self, name: str) -> int:
        ...

    @abstractmethod
    async def create_role(self, name: str) -> RoleRecord:
        """Insert an empty role. Raises DuplicateRecordError if the name exists."""

    @abstractmethod
    async def save_role(self, role: RoleRecord) -> RoleRecord:
        """
        Persist `role.policies` if the stored revision still equals `role.revision`.

        Returns the role with its bumped revision; raises
        ConcurrentModificationError when the revision moved.
        """

    @abstractmethod
    async def delete_role(self, role_id: str) -> None:
        ...

    # ------------------------------------------------------------------
    # User permissions
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_user_permissions(self, subject: str) -> Optional[UserPermissionsRecord]:
        ...

    @abstractmethod
    async def create_user_permissions(self, subject: str) -> UserPermissionsRecord:
        """Insert an empty record. Raises DuplicateRecordError if the subject exists."""

    @abstractmethod
    async def save_user_permissions(self, record: UserPermissionsRecord) -> UserPermissionsRecord:
        """Versioned save of `role_ids` and `policy_ids`, same contract as save_role."""

    @abstractmethod
    async def count_user_permissions_with_role(self, role_id: str) -> int:
        ...

    @abstractmethod
    async def remove_role_from_all_user_permissions(self, role_id: str) -> int:
        """Strip the role from every record holding it; returns how many changed."""

    @abstractmethod
    async def delete_user_permissions(self, subject: str) -> int:
        ...

    # ------------------------------------------------------------------
    # Denormalized index
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_granted_keys(self, subject: str, policy_map_keys: Set[str]) -> Set[str]:
        """Distinct keys among `policy_map_keys` that have at least one row for `subject`."""

    @abstractmethod
    async def find_subjects_with_role(self, role_key: str) -> Set[str]:
        ...

    @abstractmethod
    async def find_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> List[UserPoliciesDenormRecord]:
        ...

    @abstractmethod
    async def count_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        ...

    @abstractmethod
    async def insert_denorm(self, rows: List[UserPoliciesDenormRecord]) -> int:
        ...

    @abstractmethod
    async def delete_denorm(
        self,
        subject: Optional[str] = None,
        policy_map_key: Optional[str] = None,
        role_key: Optional[str] = None,
        direct_only: bool = False,
    ) -> int:
        """
        Delete rows matching every given filter. `direct_only` restricts the
        match to rows without a role key.
        """

    # ------------------------------------------------------------------
    # Users (externally owned)
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user(self, user_id: Any) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def delete_user(self, user_id: Any) -> None:
        ...


class AuthorizationStore(ABC):
    backend: str = ""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables or indexes."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def session(self) -> AbstractAsyncContextManager[StoreSession]:
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[StoreSession]:
        ...


def check_denorm_filters(
    subject: Optional[str],
    policy_map_key: Optional[str],
    role_key: Optional[str],
    direct_only: bool,
) -> None:
    """Refuse an unfiltered delete, which would wipe the whole index."""
    if subject is None and policy_map_key is None and role_key is None and not direct_only:
        raise ValueError("at least one denorm filter is required")


def check_filter_fields(where: Optional[Dict[str, Any]], allowed: Set[str]) -> Dict[str, Any]:
    where = dict(where or {})
    unknown = set(where) - allowed
    if unknown:
        raise InvalidRequestError(f"unsupported filter fields: {sorted(unknown)}", allowed=sorted(allowed))
    return where
