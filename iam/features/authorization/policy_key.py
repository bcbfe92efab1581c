"""
Policy map key codec.

Writers building denormalized rows and the access check building lookup keys
must both go through `encode_policy_map_key`; any divergence silently denies
(or grants) access.
"""
from typing import Any

from iam.features.authorization.exceptions import InvalidPolicyDataError

SEPARATOR = "$"


def _validate(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidPolicyDataError(field, value)
    # The key is not escaped, so a separator inside a component would collide
    if SEPARATOR in value:
        raise InvalidPolicyDataError(field, value)
    return value


def encode_policy_map_key(resource: str, action: str) -> str:
    """
    Encode (resource, action) as `$<resource>$<action>`.

    Raises InvalidPolicyDataError for empty components or components containing `$`.
    """
    resource = _validate("resource", resource)
    action = _validate("action", action)
    return f"{SEPARATOR}{resource}{SEPARATOR}{action}"


def policy_map_key(policy: Any) -> str:
    """Encode anything with `resource` and `action` attributes (records, ORM rows, schemas)."""
    return encode_policy_map_key(policy.resource, policy.action)
