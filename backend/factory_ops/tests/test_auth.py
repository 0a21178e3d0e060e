import uuid

from factory_ops import auth
from .conftest import client, make_profile


def test_register_and_login(client):
    email = f"user-{uuid.uuid4().hex[:8]}@example.com"
    resp = client.post("/api/auth/register", json={"email": email, "password": "secret", "name": "Rafi"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]
    assert token

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == email
    assert me["permission"] == "department"
    assert me["is_admin"] is False

    login = client.post("/api/auth/login", json={"email": email, "password": "secret"})
    assert login.status_code == 200


def test_duplicate_registration_is_rejected(client):
    email = f"dup-{uuid.uuid4().hex[:8]}@example.com"
    assert client.post("/api/auth/register", json={"email": email, "password": "secret"}).status_code == 200
    again = client.post("/api/auth/register", json={"email": email, "password": "other"})
    assert again.status_code == 400
    assert again.json()["detail"] == "Email already registered"


def test_wrong_password(client):
    email = f"wrong-{uuid.uuid4().hex[:8]}@example.com"
    client.post("/api/auth/register", json={"email": email, "password": "secret"})
    assert client.post("/api/auth/login", json={"email": email, "password": "nope"}).status_code == 401


def test_invalid_token_is_rejected(client):
    resp = client.get("/api/users/me", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


def test_password_hashing_round_trip():
    hashed = auth.get_password_hash("hunter2")
    assert hashed != "hunter2"
    assert auth.verify_password("hunter2", hashed)
    assert not auth.verify_password("hunter3", hashed)
    assert not auth.verify_password("hunter2", "not-a-bcrypt-hash")


def test_update_own_name(client):
    _, headers, _ = make_profile()
    resp = client.put("/api/users/me", json={"name": "Shift Lead"}, headers=headers)
    assert resp.json()["name"] == "Shift Lead"


def test_only_admins_change_permissions(client):
    target_id, target_headers, _ = make_profile("department")
    _, admin_headers, _ = make_profile("admin")

    denied = client.put(f"/api/users/{target_id}/permission", json={"permission": "admin"}, headers=target_headers)
    assert denied.status_code == 403

    unknown = client.put(f"/api/users/{target_id}/permission", json={"permission": "owner"}, headers=admin_headers)
    assert unknown.status_code == 400

    granted = client.put(f"/api/users/{target_id}/permission", json={"permission": "finance"}, headers=admin_headers)
    assert granted.status_code == 200
    assert granted.json()["permission"] == "finance"

    assert client.get("/api/users/", headers=target_headers).status_code == 403
    assert client.get("/api/users/", headers=admin_headers).status_code == 200


def test_every_api_route_is_authenticated():
    from fastapi.routing import APIRoute
    from factory_ops.main import app

    public = {"/api/auth/login", "/api/auth/register"}
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api") and route.path not in public:
            assert auth.get_current_user in [dep.call for dep in route.dependant.dependencies], route.path
