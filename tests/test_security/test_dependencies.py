"""Tests for the FastAPI adapter and the admin router."""
from __future__ import annotations

from fastapi import Depends, Request
from fastapi.testclient import TestClient
import pytest

from access_engine.errors import ErrorKind
from access_engine.main import create_app
from access_engine.security.decision import AccessRequirement
from access_engine.security.dependencies import http_status_for, require_access


@pytest.fixture
def client(access_engine):
    app = create_app(access_engine)

    @app.middleware("http")
    async def fake_identity(request: Request, call_next):
        # Stand-in for the identity collaborator.
        user_id = request.headers.get("X-User-Id")
        if user_id is not None:
            request.state.principal_id = int(user_id)
        request.state.escalation_verified = request.headers.get("X-Escalated") == "1"
        return await call_next(request)

    @app.post(
        "/courses/publish",
        dependencies=[Depends(require_access(AccessRequirement.capability("content:courses:publish")))],
    )
    def publish() -> dict:
        return {"published": True}

    with TestClient(app) as c:
        yield c


def _as(user_id: int, *, escalated: bool = False, department: int | None = None) -> dict[str, str]:
    headers = {"X-User-Id": str(user_id)}
    if escalated:
        headers["X-Escalated"] = "1"
    if department is not None:
        headers["X-Department-Id"] = str(department)
    return headers


def test_status_mapping():
    assert http_status_for(ErrorKind.NOT_FOUND) == 404
    assert http_status_for(ErrorKind.VALIDATION) == 400
    assert http_status_for(ErrorKind.CONFLICT) == 409
    assert http_status_for(ErrorKind.FORBIDDEN) == 403
    assert http_status_for(ErrorKind.LAST_ADMIN_PROTECTED) == 403
    assert http_status_for(ErrorKind.IMMUTABLE_ROLE) == 403
    assert http_status_for(ErrorKind.ROLE_IN_USE) == 409
    assert http_status_for(ErrorKind.STORAGE_ERROR) == 503


def test_unauthenticated_request(client):
    assert client.post("/courses/publish").status_code == 401


def test_unknown_principal_is_unauthenticated(client):
    assert client.post("/courses/publish", headers=_as(99999)).status_code == 401


def test_allowed_in_department_context(client, org):
    resp = client.post("/courses/publish", headers=_as(org.dept_admin, department=org.c))
    assert resp.status_code == 200
    assert resp.json() == {"published": True}


def test_denied_is_generic_403(client, org):
    resp = client.post("/courses/publish", headers=_as(org.instructor, department=org.b))
    assert resp.status_code == 403
    assert resp.json()["detail"] == {"message": "Forbidden", "reason": "MISSING_CAPABILITY"}


def test_bad_department_header(client, org):
    resp = client.post("/courses/publish", headers={**_as(org.dept_admin), "X-Department-Id": "abc"})
    assert resp.status_code == 400


def test_admin_routes_require_escalation(client, org):
    resp = client.get(f"/admin/users/{org.instructor}/roles", headers=_as(org.admin))
    assert resp.status_code == 403
    assert resp.json()["detail"]["reason"] == "ESCALATION_REQUIRED"


def test_admin_routes_reject_non_admins(client, org):
    resp = client.get(f"/admin/users/{org.instructor}/roles", headers=_as(org.dept_admin, escalated=True))
    assert resp.status_code == 403
    assert resp.json()["detail"]["reason"] == "ADMIN_ROLE_REQUIRED"


def test_admin_get_user_roles(client, org):
    resp = client.get(f"/admin/users/{org.instructor}/roles", headers=_as(org.admin, escalated=True))
    assert resp.status_code == 200
    body = resp.json()
    assert body["user_kind"] == "staff"
    assert body["memberships"][0]["roles"] == ["instructor"]
    assert "grades:own-classes:manage" in body["calculated_capabilities"]


def test_admin_assign_and_conflict(client, org):
    headers = _as(org.admin, escalated=True)
    payload = {"department_id": org.d, "role_name": "instructor"}

    first = client.post(f"/admin/users/{org.fresh_staff}/roles", json=payload, headers=headers)
    second = client.post(f"/admin/users/{org.fresh_staff}/roles", json=payload, headers=headers)

    assert first.status_code == 201
    assert first.json()["roles"] == ["instructor"]
    assert second.status_code == 409
    assert second.json()["kind"] == "CONFLICT"


def test_admin_last_admin_protected(client, org):
    resp = client.delete(
        f"/admin/users/{org.admin}/roles/{org.admin_grant}",
        params={"role": "system-admin"},
        headers=_as(org.admin, escalated=True),
    )
    assert resp.status_code == 403
    assert resp.json()["kind"] == "LAST_ADMIN_PROTECTED"


def test_admin_built_in_role_is_immutable(client, org):
    resp = client.post(
        "/admin/role-definitions/instructor/access-rights",
        json={"capability": "audit:logs:view"},
        headers=_as(org.admin, escalated=True),
    )
    assert resp.status_code == 403
    assert resp.json()["kind"] == "IMMUTABLE_ROLE"


def test_admin_bulk_assign(client, org):
    resp = client.post(
        "/admin/users/bulk/assign-roles",
        json={
            "assignments": [
                {"user_id": org.fresh_staff, "department_id": org.b, "role_name": "instructor"},
                {"user_id": org.learner, "department_id": org.b, "role_name": "instructor"},
            ]
        },
        headers=_as(org.admin, escalated=True),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["successful"] == 1
    assert body["failed"] == 1
    assert body["results"][1]["error_kind"] == "VALIDATION"


def test_admin_lists_access_rights(client, org):
    headers = _as(org.admin, escalated=True)

    everything = client.get("/admin/access-rights", headers=headers)
    grades = client.get("/admin/access-rights", params={"domain": "grades"}, headers=headers)
    unknown = client.get("/admin/access-rights", params={"domain": "payroll"}, headers=headers)

    assert everything.status_code == 200
    assert {"key": "audit:logs:view", "domain": "audit", "description": "View audit logs"} in everything.json()
    assert {r["domain"] for r in grades.json()} == {"grades"}
    assert unknown.status_code == 400
    assert unknown.json()["kind"] == "VALIDATION"


def test_admin_access_rights_for_role(client, org):
    resp = client.get("/admin/role-definitions/instructor/access-rights", headers=_as(org.admin, escalated=True))
    missing = client.get("/admin/role-definitions/ghost-role/access-rights", headers=_as(org.admin, escalated=True))

    assert resp.status_code == 200
    assert "grades:own-classes:manage" in [r["key"] for r in resp.json()["access_rights"]]
    assert missing.status_code == 404


def test_my_roles_needs_only_authentication(client, org):
    resp = client.get("/me/roles", headers=_as(org.instructor, department=org.b))
    elsewhere = client.get("/me/roles", headers=_as(org.instructor, department=org.d))

    assert resp.status_code == 200
    assert resp.json()["roles"] == ["instructor"]
    assert resp.json()["department_id"] == org.b
    assert elsewhere.json()["roles"] == []
    assert client.get("/me/roles").status_code == 401
    assert client.get("/me/roles", headers=_as(99999)).status_code == 401
