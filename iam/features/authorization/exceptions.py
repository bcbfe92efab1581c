"""
Domain errors raised by the authorization service.

Every error carries a stable `kind` and `code` plus the HTTP status the API
layer answers with, so callers can branch on the category without parsing
messages.
"""
import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION_FAILED = "precondition_failed"
    INVALID_INPUT = "invalid_input"
    INTERNAL = "internal"


class AuthorizationError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "AUTHORIZATION_ERROR"
    status_code: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(AuthorizationError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(AuthorizationError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class PreconditionFailedError(AuthorizationError):
    kind = ErrorKind.PRECONDITION_FAILED
    status_code = 424


class InvalidInputError(AuthorizationError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 400


# ============================================================================
# Not found
# ============================================================================

class RoleNotFoundError(NotFoundError):
    code = "ROLE_NOT_FOUND"

    def __init__(self, role_id: Any = None, name: Optional[str] = None):
        super().__init__(f"role not found with id={role_id}", role_id=role_id, name=name)


class PolicyNotFoundError(NotFoundError):
    code = "POLICY_NOT_FOUND"

    def __init__(self, policy_id: Any = None, resource: Optional[str] = None, action: Optional[str] = None):
        super().__init__(
            f"policy not found with id={policy_id}",
            policy_id=policy_id,
            resource=resource,
            action=action,
        )


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: Any):
        super().__init__(f"user not found with id={user_id}", user_id=user_id)


class PolicyNotAttachedOnRoleError(NotFoundError):
    code = "POLICY_NOT_ATTACHED_ON_ROLE"

    def __init__(self, policy_id: Any, role_id: Any):
        super().__init__(
            f"policy {policy_id} is not attached on role {role_id}",
            policy_id=policy_id,
            role_id=role_id,
        )


class PolicyNotAttachedOnUserError(NotFoundError):
    code = "POLICY_NOT_ATTACHED_ON_USER"

    def __init__(self, policy_id: Any, user_id: Any):
        super().__init__(
            f"policy {policy_id} is not attached on user {user_id}",
            policy_id=policy_id,
            user_id=user_id,
        )


# ============================================================================
# Conflicts
# ============================================================================

class RoleExistsError(ConflictError):
    code = "ROLE_EXISTS"

    def __init__(self, name: str):
        super().__init__(f"role {name} already exists", name=name)


class PolicyExistsError(ConflictError):
    code = "POLICY_EXISTS"

    def __init__(self, resource: str, action: str):
        super().__init__(
            f"policy with resource {resource} and action {action} already exists",
            resource=resource,
            action=action,
        )


class RoleAlreadyExistsOnUserError(ConflictError):
    code = "ROLE_ALREADY_EXISTS_ON_USER"

    def __init__(self, role: str, subject: str):
        super().__init__(f"role {role} already exists on user {subject}", role=role, subject=subject)


class PolicyAlreadyAttachedOnRoleError(ConflictError):
    code = "POLICY_ALREADY_ATTACHED_ON_ROLE"

    def __init__(self, policy_id: Any, role_id: Any):
        super().__init__(
            f"policy {policy_id} is already attached on role {role_id}",
            policy_id=policy_id,
            role_id=role_id,
        )


class PolicyAlreadyAttachedOnUserError(ConflictError):
    code = "POLICY_ALREADY_ATTACHED_ON_USER"

    def __init__(self, policy_id: Any, user_id: Any):
        super().__init__(
            f"policy {policy_id} is already attached on user {user_id}",
            policy_id=policy_id,
            user_id=user_id,
        )


class RoleAttachedOnUsersError(ConflictError):
    code = "ROLE_ATTACHED_ON_USERS"

    def __init__(self, role_id: Any, user_count: int):
        super().__init__(
            f"role {role_id} is attached on {user_count} users, pass force_remove to delete it",
            role_id=role_id,
            user_count=user_count,
        )


class ConflictingPolicyDataError(ConflictError):
    code = "CONFLICTING_POLICY_DATA"

    def __init__(self, by_key_id: Any, by_id: Any):
        super().__init__(
            "policyId and resource/action refer to different policies",
            by_resource_action=by_key_id,
            by_id=by_id,
        )


class DuplicateRecordError(ConflictError):
    """Raised by store adapters when a unique constraint or index is violated."""
    code = "DUPLICATE_RECORD"

    def __init__(self, entity: str, **details: Any):
        super().__init__(f"duplicate {entity}", entity=entity, **details)


class ConcurrentModificationError(ConflictError):
    """A versioned save found a different revision than the one it read."""
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, record_id: Any, revision: int):
        super().__init__(
            f"{entity} {record_id} was modified concurrently (expected revision {revision})",
            entity=entity,
            record_id=record_id,
            revision=revision,
        )


# ============================================================================
# Preconditions
# ============================================================================

class EmptyRoleError(PreconditionFailedError):
    code = "EMPTY_ROLE"

    def __init__(self, role_id: Any):
        super().__init__(f"role {role_id} has no policies and cannot be attached", role_id=role_id)


class RoleCannotBeEmptyError(PreconditionFailedError):
    code = "ROLE_CANNOT_BE_EMPTY"

    def __init__(self, role_id: Any):
        super().__init__(
            f"removing the last policy of role {role_id} would leave it empty",
            role_id=role_id,
        )


class RoleNotAttachedOnUserError(PreconditionFailedError):
    code = "ROLE_NOT_ATTACHED_ON_USER"

    def __init__(self, role_id: Any, user_id: Any):
        super().__init__(
            f"role {role_id} is not attached on user {user_id}",
            role_id=role_id,
            user_id=user_id,
        )


# ============================================================================
# Invalid input
# ============================================================================

class InsufficientPolicyDataError(InvalidInputError):
    code = "INSUFFICIENT_POLICY_DATA"

    def __init__(self):
        super().__init__("either policyId or both resource and action must be provided")


class InvalidPolicyDataError(InvalidInputError):
    code = "INVALID_POLICY_DATA"

    def __init__(self, field: str, value: Any):
        super().__init__(f"invalid policy {field}: {value!r}", field=field, value=value)


class InvalidRequestError(InvalidInputError):
    code = "INVALID_REQUEST"


class SubjectEmptyError(InvalidInputError):
    code = "SUBJECT_EMPTY"

    def __init__(self, subject_key: str, user_id: Any = None):
        super().__init__(
            f"subject attribute '{subject_key}' of user is empty",
            subject_key=subject_key,
            user_id=user_id,
        )


# ============================================================================
# Internal
# ============================================================================

class InternalError(AuthorizationError):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal Server Error", **details: Any):
        super().__init__(message, **details)
