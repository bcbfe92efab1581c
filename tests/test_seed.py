from scripts.seed_permissions import DEFAULT_POLICIES, DEFAULT_ROLES, seed_policies, seed_roles


async def test_seed_creates_default_roles(service):
    policies = await seed_policies(service)
    await seed_roles(service, policies)

    roles = {role.name: role for role in await service.get_roles()}
    assert set(roles) == set(DEFAULT_ROLES)
    assert len(roles["admin"].policies) == len(DEFAULT_POLICIES)
    assert sorted(f"{p.resource}:{p.action}" for p in roles["viewer"].policies) == ["documents:read", "reports:read"]


async def test_seed_is_idempotent(service):
    await seed_roles(service, await seed_policies(service))
    await seed_roles(service, await seed_policies(service))

    assert len(await service.get_policies()) == len(DEFAULT_POLICIES)
    assert len(await service.get_roles()) == len(DEFAULT_ROLES)
    admin = (await service.get_roles({"name": "admin"}))[0]
    assert len(admin.policies) == len(DEFAULT_POLICIES)
