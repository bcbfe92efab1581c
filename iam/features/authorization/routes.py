"""
Authorization API routes.

Exposes every service operation; mount it under a prefix of the host's choosing:

    app.include_router(authorization_router, prefix="/iam", tags=["iam"])

Guarding these routes is left to the host (for example with `require_permissions`).
"""
from typing import Any, List, Optional
from fastapi import APIRouter, Depends, Query, status

from iam.features.authorization.dependencies import get_authorization_service
from iam.features.authorization.schemas import (
    AccessCheckResponse,
    AttachPolicyToUserResponse,
    CheckUserAccessRequest,
    CreateOrFindPolicyRequest,
    CreateRoleRequest,
    PolicyRecord,
    PolicyReference,
    RemovePolicyFromUserRequest,
    RemoveRoleRequest,
    RemoveRoleResponse,
    RemoveUserRequest,
    RemoveUserResponse,
    RolePolicyResponse,
    RoleRecord,
    SuccessResponse,
)
from iam.features.authorization.service import AuthorizationService


router = APIRouter()


def _where(**filters: Any) -> dict:
    return {field: value for field, value in filters.items() if value is not None}


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/role", response_model=RoleRecord, status_code=status.HTTP_201_CREATED)
async def create_role(
    params: CreateRoleRequest,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Create an empty role."""
    return await service.create_role(params.name)


@router.get("/role/find", response_model=List[Any])
async def find_roles(
    id: Optional[str] = None,
    name: Optional[str] = None,
    fields: Optional[List[str]] = Query(None, description="Return only these fields"),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """List roles with optional equality filters."""
    return await service.get_roles(_where(id=id, name=name), fields)


@router.get("/role/{role_id}", response_model=RoleRecord)
async def get_role(
    role_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Get a role with its policies."""
    return await service.get_role(role_id)


@router.delete("/role/{role_id}", response_model=RemoveRoleResponse)
async def remove_role(
    role_id: str,
    params: Optional[RemoveRoleRequest] = None,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Delete a role; `force_remove` detaches it from its users first."""
    params = params or RemoveRoleRequest()
    return await service.remove_role(role_id, params.force_remove)


@router.post("/role/{role_id}/attach_policy", response_model=RolePolicyResponse)
async def attach_policy_to_role(
    role_id: str,
    params: PolicyReference,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Attach a policy (by id or by resource/action) to a role."""
    return await service.attach_policy_to_role(role_id, params.policy_id, params.resource, params.action)


@router.delete("/role/{role_id}/policy", response_model=RolePolicyResponse)
async def remove_policy_from_role(
    role_id: str,
    params: PolicyReference,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Detach a policy from a role."""
    return await service.remove_policy_from_role(role_id, params.policy_id, params.resource, params.action)


@router.delete("/role/{role_id}/from_user/{user_id}", response_model=SuccessResponse)
async def remove_role_from_user(
    role_id: str,
    user_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Detach a role from a user."""
    return await service.remove_role_from_user(role_id, user_id)


# ============================================================================
# Policy Routes
# ============================================================================

@router.post("/policy", response_model=PolicyRecord)
async def create_or_find_policy(
    params: CreateOrFindPolicyRequest,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Return the policy for (resource, action), creating it if needed."""
    return await service.create_or_find_policy(params.resource, params.action)


@router.get("/policy/find", response_model=List[Any])
async def find_policies(
    id: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    fields: Optional[List[str]] = Query(None, description="Return only these fields"),
    service: AuthorizationService = Depends(get_authorization_service),
):
    """List policies with optional equality filters."""
    return await service.get_policies(_where(id=id, resource=resource, action=action), fields)


# ============================================================================
# User Routes
# ============================================================================

@router.post("/user/{user_id}/role/{role_id}", response_model=SuccessResponse)
async def attach_role_to_user(
    user_id: str,
    role_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Grant a role to a user."""
    return await service.attach_role_to_user(user_id, role_id)


@router.post("/user/{user_id}/attach_policy", response_model=AttachPolicyToUserResponse)
async def attach_policy_to_user(
    user_id: str,
    params: PolicyReference,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Grant a policy directly to a user."""
    return await service.attach_policy_to_user(user_id, params.policy_id, params.resource, params.action)


@router.delete("/user/{user_id}/policy", response_model=SuccessResponse)
async def remove_policy_from_user(
    user_id: str,
    params: RemovePolicyFromUserRequest,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Revoke a directly granted policy."""
    return await service.remove_policy_from_user(user_id, params.policy_id)


@router.delete("/user/{user_id}", response_model=RemoveUserResponse)
async def remove_user(
    user_id: str,
    params: Optional[RemoveUserRequest] = None,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Drop every grant of a user; `delete_user` also deletes the user record."""
    params = params or RemoveUserRequest()
    return await service.remove_user(user_id, params.delete_user)


@router.get("/user/{user_id}/roles", response_model=List[RoleRecord])
async def get_roles_for_user(
    user_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    return await service.get_roles_for_user(user_id)


@router.get("/user/{user_id}/policies", response_model=List[PolicyRecord])
async def get_policies_for_user(
    user_id: str,
    service: AuthorizationService = Depends(get_authorization_service),
):
    return await service.get_policies_for_user(user_id)


# ============================================================================
# Access Check Routes
# ============================================================================

@router.post("/check", response_model=AccessCheckResponse)
async def check_user_access(
    params: CheckUserAccessRequest,
    service: AuthorizationService = Depends(get_authorization_service),
):
    """Check whether a subject (or the user with `id`) holds every permission."""
    has_permission = await service.check_user_access(
        subject=params.subject,
        id=params.id,
        permissions=params.permissions,
    )
    return AccessCheckResponse(has_permission=has_permission)
