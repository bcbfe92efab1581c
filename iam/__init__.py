"""
Denormalized role/policy authorization library.

Usage:
    from iam import AuthorizationOptions, create_authorization_service

    service = await create_authorization_service(AuthorizationOptions.from_env())
    allowed = await service.check_user_access(subject="u1", permissions=[...])
"""
from iam.core.config import AuthorizationOptions
from iam.features.authorization.service import AuthorizationService, create_authorization_service

__all__ = ["AuthorizationOptions", "AuthorizationService", "create_authorization_service"]
