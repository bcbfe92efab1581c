"""
API tests.

The app runs in the test's event loop through httpx's ASGI transport, with the
fixture's service injected on `app.state` (lifespan is not run).
"""
import typing as t

import httpx
import pytest_asyncio
from fastapi import Depends, Request

from iam.features.authorization.dependencies import require_permissions
from iam.main import create_app


@pytest_asyncio.fixture
async def app(service):
    app = create_app()
    app.state.authorization = service

    @app.middleware("http")
    async def fake_authentication(request: Request, call_next):
        # Stands in for the host's authentication layer
        email = request.headers.get("x-user")
        if email:
            request.state.user = {"email": email}
        return await call_next(request)

    @app.get("/documents/{kind}")
    async def read_document(kind: str, user=Depends(require_permissions([{"resource": "params:kind", "action": "read"}]))):
        return {"kind": kind, "user": user["email"]}

    @app.post("/documents")
    async def create_document(
        request: Request,
        user=Depends(require_permissions([("body:kind", "create"), ("doc", "headers:x-action")])),
    ):
        return {"created": True}

    return app


@pytest_asyncio.fixture
async def client(app) -> t.AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ---------------------------
# Router
# ---------------------------

async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_role_lifecycle(client, make_user):
    response = await client.post("/iam/role", json={"name": "editor"})
    assert response.status_code == 201
    role_id = response.json()["id"]

    response = await client.post(f"/iam/role/{role_id}/attach_policy", json={"resource": "doc", "action": "edit"})
    assert response.status_code == 200
    assert response.json()["policy"]["resource"] == "doc"

    user_id = await make_user("u1")
    response = await client.post(f"/iam/user/{user_id}/role/{role_id}")
    assert response.json() == {"success": True}

    response = await client.post(
        "/iam/check", json={"subject": "u1", "permissions": [{"resource": "doc", "action": "edit"}]}
    )
    assert response.json() == {"has_permission": True}

    response = await client.get(f"/iam/user/{user_id}/roles")
    assert [role["name"] for role in response.json()] == ["editor"]

    response = await client.request("DELETE", f"/iam/role/{role_id}")
    assert response.status_code == 409
    assert response.json()["code"] == "ROLE_ATTACHED_ON_USERS"

    response = await client.request("DELETE", f"/iam/role/{role_id}", json={"force_remove": True})
    assert response.status_code == 200
    assert response.json()["users_affected"] == 1


async def test_domain_errors_are_rendered(client):
    await client.post("/iam/role", json={"name": "editor"})
    response = await client.post("/iam/role", json={"name": "editor"})
    assert response.status_code == 409
    body = response.json()
    assert body["kind"] == "conflict"
    assert body["code"] == "ROLE_EXISTS"
    assert body["details"] == {"name": "editor"}

    response = await client.get("/iam/role/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "ROLE_NOT_FOUND"


async def test_find_with_projection(client):
    await client.post("/iam/role", json={"name": "editor"})
    await client.post("/iam/role", json={"name": "viewer"})

    response = await client.get("/iam/role/find", params={"name": "viewer", "fields": ["name"]})
    assert response.json() == [{"name": "viewer"}]

    await client.post("/iam/policy", json={"resource": "doc", "action": "edit"})
    response = await client.get("/iam/policy/find", params={"resource": "doc"})
    assert [(p["resource"], p["action"]) for p in response.json()] == [("doc", "edit")]


async def test_direct_policy_routes(client, make_user):
    user_id = await make_user("u1")
    response = await client.post(f"/iam/user/{user_id}/attach_policy", json={"resource": "doc", "action": "read"})
    assert response.status_code == 200
    policy_id = response.json()["user_permissions"]["policy_ids"][0]

    response = await client.get(f"/iam/user/{user_id}/policies")
    assert [p["id"] for p in response.json()] == [policy_id]

    response = await client.request("DELETE", f"/iam/user/{user_id}/policy", json={"policy_id": policy_id})
    assert response.json() == {"success": True}

    response = await client.request("DELETE", f"/iam/user/{user_id}", json={"delete_user": True})
    assert response.json()["success"] is True
    assert (await client.get(f"/iam/user/{user_id}/roles")).status_code == 404


async def test_check_requires_subject_or_id(client):
    response = await client.post("/iam/check", json={"permissions": []})
    assert response.status_code == 400


# ---------------------------
# Guard
# ---------------------------

async def test_guard_without_user(client):
    response = await client.get("/documents/report")
    assert response.status_code == 401


async def test_guard_resolves_path_parameter(client, service, make_user):
    user_id = await make_user("u1")
    await service.attach_policy_to_user(user_id, resource="report", action="read")

    response = await client.get("/documents/report", headers={"x-user": "u1"})
    assert response.status_code == 200
    assert response.json() == {"kind": "report", "user": "u1"}

    response = await client.get("/documents/invoice", headers={"x-user": "u1"})
    assert response.status_code == 403


async def test_guard_resolves_body_and_headers(client, service, make_user):
    user_id = await make_user("u1")
    await service.attach_policy_to_user(user_id, resource="memo", action="create")
    await service.attach_policy_to_user(user_id, resource="doc", action="publish")

    response = await client.post(
        "/documents", json={"kind": "memo"}, headers={"x-user": "u1", "x-action": "publish"}
    )
    assert response.status_code == 200

    response = await client.post(
        "/documents", json={"kind": "memo"}, headers={"x-user": "u1", "x-action": "delete"}
    )
    assert response.status_code == 403

    response = await client.post("/documents", json={"kind": "memo"}, headers={"x-user": "u1"})
    assert response.status_code == 400
