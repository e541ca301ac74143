from datetime import timedelta

from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.schemas.auth import UserRole

from conftest import PASSWORD, audit_entries, bearer, make_token


def _actions(client):
    return [(e.action, e.result) for e in audit_entries(client)]


# ---------- setup ----------

def test_setup_creates_first_admin_once(client):
    payload = {"username": "root", "email": "root@example.com", "password": PASSWORD}

    resp = client.post("/api/admin/setup", json=payload)
    assert resp.status_code == 201
    assert resp.json()["role"] == "admin"

    again = client.post("/api/admin/setup", json={**payload, "username": "root2", "email": "r2@example.com"})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "SETUP_COMPLETED"

    entries = audit_entries(client)
    assert len(entries) == 1
    assert entries[0].action == AuditAction.USER_CREATED
    assert entries[0].username == "root"


# ---------- register ----------

def test_self_registration_as_viewer(client):
    resp = client.post(
        "/api/auth/register",
        json={"username": "newbie", "email": "newbie@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["role"] == "viewer"
    assert "password_hash" not in body
    assert _actions(client) == [(AuditAction.USER_CREATED, AuditResult.SUCCESS)]


def test_elevated_registration_requires_admin(client, admin):
    payload = {"username": "ops", "email": "ops@example.com", "password": PASSWORD, "role": "operator"}

    denied = client.post("/api/auth/register", json=payload)
    assert denied.status_code == 403

    _, token = admin
    allowed = client.post("/api/auth/register", json=payload, headers=bearer(token))
    assert allowed.status_code == 201
    assert allowed.json()["role"] == "operator"


def test_duplicate_registration_conflicts(client, viewer):
    resp = client.post(
        "/api/auth/register",
        json={"username": "viewer", "email": "other@example.com", "password": PASSWORD},
    )
    assert resp.status_code == 409


def test_register_validation_uses_error_envelope(client):
    resp = client.post("/api/auth/register", json={"username": "x", "email": "nope", "password": "short"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"


# ---------- login / logout ----------

def test_login_success_is_audited(client, admin):
    user, _ = admin
    resp = client.post("/api/auth/login", json={"username": "admin", "password": PASSWORD})

    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["id"] == user.id
    assert body["tokens"]["token_type"] == "bearer"

    me = client.get("/api/auth/me", headers=bearer(body["tokens"]["access_token"]))
    assert me.json()["username"] == "admin"

    entries = audit_entries(client)
    assert entries[0].action == AuditAction.LOGIN
    assert entries[0].user_id == user.id
    assert entries[0].ip_address == "testclient"


def test_login_by_email(client, viewer):
    resp = client.post("/api/auth/login", json={"email": "viewer@example.com", "password": PASSWORD})
    assert resp.status_code == 200


def test_failed_login_is_audited_without_leaking_password(client, admin):
    resp = client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "wrong-password"},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "pytest-agent"},
    )

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_CREDENTIALS"

    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.LOGIN_FAILED
    assert entry.result == AuditResult.FAILURE
    assert entry.user_id is None
    assert entry.ip_address == "203.0.113.7"
    assert entry.user_agent == "pytest-agent"
    assert "wrong-password" not in (entry.details or "")


def test_failed_login_still_answers_when_audit_store_breaks(client, admin, monkeypatch):
    async def broken_append(data):
        raise RuntimeError("disk full")

    monkeypatch.setattr(client.app.state.audit_store, "append", broken_append)

    resp = client.post("/api/auth/login", json={"username": "admin", "password": "nope-nope"})
    assert resp.status_code == 401
    ok = client.post("/api/auth/login", json={"username": "admin", "password": PASSWORD})
    assert ok.status_code == 200


def test_logout_is_audited(client, viewer):
    user, token = viewer
    resp = client.post("/api/auth/logout", headers=bearer(token))
    assert resp.status_code == 200

    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.LOGOUT
    assert entry.user_id == user.id


def test_expired_token_rejected(client, settings, viewer):
    user, _ = viewer
    token = make_token(settings, user_id=user.id, username="viewer", role="viewer", expires_delta=timedelta(seconds=-5))
    resp = client.get("/api/auth/me", headers=bearer(token))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_TOKEN"
    assert "expired" in resp.json()["error"]["details"]


# ---------- users ----------

def test_admin_lists_users(client, admin, viewer):
    _, token = admin
    resp = client.get("/api/users", headers=bearer(token))
    assert resp.status_code == 200
    assert {u["username"] for u in resp.json()} == {"admin", "viewer"}


def test_viewer_cannot_list_users(client, viewer):
    _, token = viewer
    assert client.get("/api/users", headers=bearer(token)).status_code == 403


def test_role_change_is_audited(client, admin, viewer):
    _, token = admin
    target, _ = viewer

    resp = client.patch(f"/api/users/{target.id}/role", json={"role": "operator"}, headers=bearer(token))

    assert resp.status_code == 200
    assert resp.json()["role"] == UserRole.OPERATOR.value
    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.ROLE_CHANGED
    assert entry.resource == f"user:{target.id}"
    assert entry.details == "Changed role of viewer from viewer to operator"


def test_admin_cannot_demote_or_delete_self(client, admin):
    user, token = admin

    demote = client.patch(f"/api/users/{user.id}/role", json={"role": "viewer"}, headers=bearer(token))
    assert demote.status_code == 400
    assert demote.json()["error"]["code"] == "CANNOT_DEMOTE_SELF"

    delete = client.delete(f"/api/users/{user.id}", headers=bearer(token))
    assert delete.status_code == 400
    assert delete.json()["error"]["code"] == "CANNOT_DELETE_SELF"

    results = {e.result for e in audit_entries(client)}
    assert results == {AuditResult.DENIED}


def test_delete_user(client, admin, viewer):
    _, token = admin
    target, _ = viewer

    assert client.delete(f"/api/users/{target.id}", headers=bearer(token)).status_code == 200
    assert client.delete(f"/api/users/{target.id}", headers=bearer(token)).status_code == 404

    entry = audit_entries(client)[0]
    assert entry.action == AuditAction.USER_DELETED
