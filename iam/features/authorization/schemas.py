"""
Pydantic schemas for the authorization feature.

Records are the backend-agnostic shapes that cross the storage interface;
request and response models back the service results and the API routes.
"""
from typing import Any, List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, model_validator


# ============================================================================
# Records
# ============================================================================

class PolicyRecord(BaseModel):
    id: str
    resource: str
    action: str

    model_config = ConfigDict(from_attributes=True)


class RoleRecord(BaseModel):
    id: str
    name: str
    revision: int = 0
    policies: List[PolicyRecord] = []

    model_config = ConfigDict(from_attributes=True)

    @property
    def policy_ids(self) -> List[str]:
        return [policy.id for policy in self.policies]

    def has_policy(self, policy_id: str) -> bool:
        return policy_id in self.policy_ids


class UserPermissionsRecord(BaseModel):
    id: str
    subject: str
    revision: int = 0
    role_ids: List[str] = []
    policy_ids: List[str] = []


class UserPoliciesDenormRecord(BaseModel):
    subject: str
    policy_map_key: str
    role_key: Optional[str] = None


class UserRecord(BaseModel):
    """The two facts the library needs about an externally owned user."""
    id: Union[str, int]
    subject: Optional[str] = None


# ============================================================================
# Requests
# ============================================================================

class CreateRoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Unique role name")


class CreateOrFindPolicyRequest(BaseModel):
    resource: str = Field(..., min_length=1, max_length=255, description="Resource (e.g. 'doc')")
    action: str = Field(..., min_length=1, max_length=255, description="Action (e.g. 'edit')")


class PolicyReference(BaseModel):
    """Identifies a policy by id, by (resource, action), or by both."""
    policy_id: Optional[str] = Field(None, description="Policy ID")
    resource: Optional[str] = Field(None, description="Resource")
    action: Optional[str] = Field(None, description="Action")


class RemovePolicyFromUserRequest(BaseModel):
    policy_id: str = Field(..., description="Policy ID")


class RemoveRoleRequest(BaseModel):
    force_remove: bool = Field(False, description="Detach the role from every user before deleting it")


class RemoveUserRequest(BaseModel):
    delete_user: bool = Field(False, description="Also delete the underlying user record")


class Permission(BaseModel):
    resource: str
    action: str


class CheckUserAccessRequest(BaseModel):
    subject: Optional[str] = Field(None, description="Subject to check")
    id: Optional[Union[str, int]] = Field(None, description="User ID, used when subject is absent")
    permissions: List[Permission] = []

    @model_validator(mode="after")
    def subject_or_id(self) -> "CheckUserAccessRequest":
        if not self.subject and self.id is None:
            raise ValueError("'id' or 'subject' must be present")
        return self


# ============================================================================
# Responses
# ============================================================================

class SuccessResponse(BaseModel):
    success: bool = True


class RemoveRoleResponse(BaseModel):
    role: RoleRecord
    users_affected: int


class RemoveUserResponse(BaseModel):
    user: UserRecord
    success: bool = True


class RolePolicyResponse(BaseModel):
    """Result of attaching a policy to, or removing it from, a role."""
    role: RoleRecord
    policy: PolicyRecord


class AttachPolicyToUserResponse(BaseModel):
    user_permissions: UserPermissionsRecord


class AccessCheckResponse(BaseModel):
    has_permission: bool


def project(records: List[BaseModel], fields: Optional[List[str]]) -> List[Any]:
    """Return records unchanged, or as dicts restricted to `fields`."""
    if not fields:
        return list(records)
    include = set(fields)
    return [record.model_dump(include=include) for record in records]
