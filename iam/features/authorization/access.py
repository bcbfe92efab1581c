"""
Access check over the denormalized index.

A subject holds a set of permissions iff every requested policy map key has
at least one index row for that subject, granted by a role or directly.
"""
from collections.abc import Mapping
from typing import Any, Iterable, Optional, Set, Tuple

from iam.features.authorization.exceptions import InvalidRequestError, SubjectEmptyError
from iam.features.authorization.policy_key import encode_policy_map_key
from iam.features.authorization.repositories.base import AuthorizationStore, StoreSession
from iam.utils import get_logger


log = get_logger(__name__)


def _resource_action(permission: Any) -> Tuple[Any, Any]:
    if isinstance(permission, Mapping):
        return permission.get("resource"), permission.get("action")
    if isinstance(permission, tuple):
        return permission
    return permission.resource, permission.action


def required_keys(permissions: Iterable[Any]) -> Set[str]:
    """Encode permissions ((resource, action) tuples, dicts or objects) into a key set."""
    return {encode_policy_map_key(*_resource_action(permission)) for permission in permissions}


class AccessEvaluator:

    def __init__(self, store: AuthorizationStore, subject_key: str):
        self.store = store
        self.subject_key = subject_key

    async def resolve_subject(self, session: StoreSession, subject: Optional[str], user_id: Any) -> str:
        if subject:
            return subject
        if user_id is None or user_id == "":
            raise InvalidRequestError("'id' or 'subject' must be present")
        user = await session.get_user(user_id)
        if user is None:
            raise InvalidRequestError("'id' does not resolve to a user", id=user_id)
        if not user.subject:
            raise SubjectEmptyError(self.subject_key, user_id)
        return user.subject

    async def check_access(
        self,
        permissions: Iterable[Any],
        subject: Optional[str] = None,
        user_id: Any = None,
    ) -> bool:
        """
        Return True iff the subject (or the user's subject) holds every permission.

        An empty permission list is vacuously granted once the caller resolves.
        """
        permissions = list(permissions)
        async with self.store.session() as session:
            subject = await self.resolve_subject(session, subject, user_id)
            required = required_keys(permissions)
            if not required:
                return True
            granted = await session.find_granted_keys(subject, required)

        missing = required - granted
        if missing:
            log.debug(f"Subject {subject} denied, missing {sorted(missing)}")
            return False
        log.debug(f"Subject {subject} granted {sorted(required)}")
        return True
