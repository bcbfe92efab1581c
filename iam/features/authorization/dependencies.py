"""
FastAPI dependencies for the authorization feature.

Implements:
- Access to the AuthorizationService stored on the application state
- `require_permissions`, a route guard backed by the access check
"""
import json
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import Depends, HTTPException, Request, status

from iam.features.authorization.service import AuthorizationService
from iam.utils import get_logger


log = get_logger(__name__)

DYNAMIC_SOURCES = ("params", "headers", "query", "body")

PermissionConfig = Union[Tuple[str, str], Dict[str, str]]


# ============================================================================
# Service
# ============================================================================

def get_authorization_service(request: Request) -> AuthorizationService:
    """
    Return the service the host stored on `app.state.authorization`.

    Usage:
        app.state.authorization = await create_authorization_service()
    """
    service = getattr(request.app.state, "authorization", None)
    if service is None:
        raise RuntimeError("app.state.authorization is not set; create the authorization service on startup")
    return service


# ============================================================================
# Dynamic permission values
# ============================================================================

def is_dynamic(value: Any) -> bool:
    if not isinstance(value, str) or ":" not in value:
        return False
    return value.split(":", 1)[0] in DYNAMIC_SOURCES


async def _request_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


async def resolve_value(request: Request, value: str) -> Optional[str]:
    """
    Resolve `params:<name>`, `headers:<name>`, `query:<name>` or `body:<name>`
    against the request. Literal values are returned as-is.
    """
    if not is_dynamic(value):
        return value
    source, key = value.split(":", 1)
    if source == "params":
        found = request.path_params.get(key)
    elif source == "headers":
        found = request.headers.get(key)
    elif source == "query":
        found = request.query_params.get(key)
    else:
        found = (await _request_body(request)).get(key)
    return None if found is None else str(found)


def _current_user(request: Request) -> Any:
    user = getattr(request.state, "user", None)
    if user is None:
        user = request.scope.get("user")
    return user


def _user_attribute(user: Any, key: str) -> Any:
    if isinstance(user, dict):
        return user.get(key)
    return getattr(user, key, None)


# ============================================================================
# Route guard
# ============================================================================

def require_permissions(permissions: List[PermissionConfig]):
    """
    FastAPI dependency requiring every listed permission.

    The authenticated caller is read from `request.state.user` (or the ASGI
    scope `user` set by an authentication middleware). Its subject attribute
    is preferred; its `id` is the fallback. A plain string user is taken as
    the subject.

    Usage:
        @router.put("/documents/{doc_id}")
        async def edit_document(
            doc_id: str,
            user=Depends(require_permissions([("doc", "edit")]))
        ):
            pass

        # Resource taken from the path parameter `kind`
        Depends(require_permissions([{"resource": "params:kind", "action": "read"}]))

    Raises:
        HTTPException: 401 without a caller, 400 when a dynamic value cannot
        be resolved, 403 when a permission is missing
    """
    configured = [
        (config["resource"], config["action"]) if isinstance(config, dict) else tuple(config)
        for config in permissions
    ]

    async def permission_dependency(
        request: Request,
        service: AuthorizationService = Depends(get_authorization_service),
    ) -> Any:
        user = _current_user(request)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )

        required = []
        for resource, action in configured:
            resolved = (await resolve_value(request, resource), await resolve_value(request, action))
            if None in resolved:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Cannot resolve permission ({resource}, {action}) from request",
                )
            required.append({"resource": resolved[0], "action": resolved[1]})

        if isinstance(user, str):
            subject, user_id = user, None
        else:
            subject = _user_attribute(user, service.get_subject_key())
            user_id = _user_attribute(user, "id")

        allowed = await service.check_user_access(
            subject=str(subject) if subject else None,
            id=user_id,
            permissions=required,
        )
        if not allowed:
            log.info(f"Access denied for subject={subject} id={user_id}: {required}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User not authorized to access resource",
            )
        return user

    return permission_dependency
