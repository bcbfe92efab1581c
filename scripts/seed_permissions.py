"""
Seed script to populate default policies and roles.

Run this script after configuring DATABASE_URL to create:
- Default policies (resource, action)
- Default roles with their policies attached

Re-running is safe: existing policies are reused and existing roles only get
the policies they are missing.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from iam.features.authorization.service import AuthorizationService, create_authorization_service
from iam.features.authorization.schemas import PolicyRecord
from iam.utils import get_logger


log = get_logger(__name__)


DEFAULT_POLICIES = [
    # Documents
    ("documents", "create"),
    ("documents", "read"),
    ("documents", "update"),
    ("documents", "delete"),
    ("documents", "publish"),

    # Reports
    ("reports", "read"),
    ("reports", "generate"),
    ("reports", "export"),

    # User management
    ("users", "read"),
    ("users", "update"),
    ("users", "manage_roles"),

    # Authorization management
    ("roles", "read"),
    ("roles", "manage"),
    ("policies", "read"),
    ("policies", "manage"),

    # Audit logs
    ("audit", "read"),
]


DEFAULT_ROLES = {
    "admin": "ALL",  # Special case - gets every default policy
    "editor": [
        "documents:create", "documents:read", "documents:update", "documents:publish",
        "reports:read",
    ],
    "viewer": [
        "documents:read",
        "reports:read",
    ],
    "auditor": [
        "documents:read",
        "reports:read", "reports:export",
        "users:read",
        "roles:read", "policies:read",
        "audit:read",
    ],
}


async def seed_policies(service: AuthorizationService) -> dict[str, PolicyRecord]:
    """
    Create default policies.

    Returns:
        Dictionary mapping "resource:action" to the policy record
    """
    log.info("Creating default policies...")
    policies = {}
    for resource, action in DEFAULT_POLICIES:
        policies[f"{resource}:{action}"] = await service.create_or_find_policy(resource, action)
    log.info(f"Ensured {len(policies)} policies")
    return policies


async def seed_roles(service: AuthorizationService, policies: dict[str, PolicyRecord]):
    """
    Create default roles and attach their policies.

    Args:
        service: Authorization service
        policies: Dictionary of "resource:action" -> policy record
    """
    log.info("Creating default roles...")

    for role_name, policy_names in DEFAULT_ROLES.items():
        existing = await service.get_roles({"name": role_name})
        if existing:
            role = existing[0]
            log.debug(f"Role '{role_name}' already exists, attaching missing policies")
        else:
            role = await service.create_role(role_name)
            log.info(f"Created role '{role_name}'")

        wanted = list(policies) if policy_names == "ALL" else policy_names
        attached = 0
        for policy_name in wanted:
            policy = policies.get(policy_name)
            if policy is None:
                log.warning(f"Policy '{policy_name}' not found for role '{role_name}'")
                continue
            if role.has_policy(policy.id):
                continue
            role = (await service.attach_policy_to_role(role.id, policy_id=policy.id)).role
            attached += 1
        log.info(f"Role '{role_name}' has {len(role.policies)} policies ({attached} attached now)")

    log.info("Default roles created successfully")


async def main():
    """Main function to seed policies and roles."""
    log.info("Starting policy seeding...")
    service = await create_authorization_service()
    try:
        policies = await seed_policies(service)
        await seed_roles(service, policies)
        log.info("Policy seeding completed successfully!")
    except Exception as e:
        log.error(f"Error seeding policies: {e}", exc_info=True)
        raise
    finally:
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())
