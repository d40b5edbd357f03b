"""Tests for the AccessEngine facade (one snapshot per call, real database)."""
from __future__ import annotations

import pytest

from access_engine.errors import NotFoundError
from access_engine.security.decision import AccessRequirement, DecisionReason
from access_engine.security.masking import ViewerCategory


def test_decide_department_relative(access_engine, org):
    publish = AccessRequirement.capability("content:courses:publish")

    assert access_engine.decide(org.dept_admin, publish, org.c).allowed
    assert access_engine.decide(org.instructor, publish, org.b).reason == DecisionReason.MISSING_CAPABILITY
    assert access_engine.decide(org.dept_admin, publish, org.d).reason == DecisionReason.MISSING_CAPABILITY


def test_decide_system_admin_needs_escalation(access_engine, org):
    required = AccessRequirement.capability("system:*", requires_escalation=True, admin_roles=["system-admin"])

    assert access_engine.decide(org.admin, required).reason == DecisionReason.ESCALATION_REQUIRED
    assert access_engine.decide(org.admin, required, escalation_present=True).allowed


def test_resolve_learner_includes_baseline(access_engine, org):
    caps = access_engine.resolve(org.learner, org.d)
    assert caps == access_engine.registry.learner_baseline


def test_scoped_department_set(access_engine, org):
    assert access_engine.scoped_department_set(org.dept_admin, org.a) == {org.a, org.b, org.c}
    assert access_engine.scoped_department_set(org.instructor, org.b) == {org.b}
    assert access_engine.scoped_department_set(org.instructor, 99999) == frozenset()


def test_unknown_principal(access_engine):
    with pytest.raises(NotFoundError):
        access_engine.resolve(99999)


def test_viewer_category_uses_subject_department(access_engine, org):
    assert access_engine.viewer_category(org.admin, org.d) == ViewerCategory.PRIVILEGED
    assert access_engine.viewer_category(org.instructor, org.b) == ViewerCategory.MASKED_STAFF
    assert access_engine.viewer_category(org.instructor, org.d) == ViewerCategory.OTHER


def test_mask_reads_department_from_subject(access_engine, org):
    subject = {"id": org.learner, "last_name": "Doe", "department_id": org.c}
    assert access_engine.mask(org.dept_admin, subject)["last_name"] == "D."
    assert access_engine.mask(org.admin, subject)["last_name"] == "Doe"


def test_mask_many_per_subject_department(access_engine, org):
    subjects = [
        {"last_name": "Doe", "department_id": org.b},
        {"last_name": "Roe", "department_id": org.d},
    ]

    masked = access_engine.mask_many(org.admin, subjects)

    assert [s["last_name"] for s in masked] == ["Doe", "Roe"]
    assert access_engine.mask_many(org.instructor, []) == []
    assert access_engine.mask_many(org.instructor, None) == []


def test_registry_picks_up_custom_roles(access_engine, org):
    service = access_engine.role_management()
    service.create_custom_role("reviewer", "staff", ["content:courses:view"], org.admin)

    assert access_engine.registry.get("reviewer") is not None


def test_my_roles_follow_department_context(access_engine, org):
    inside = access_engine.my_roles(org.dept_admin, org.c)
    outside = access_engine.my_roles(org.dept_admin, org.d)

    assert inside.roles == ["department-admin"]
    assert inside.department_id == org.c
    assert "content:courses:publish" in inside.capabilities
    assert outside.roles == []
    assert outside.capabilities == []


def test_my_roles_for_learner_and_global_admin(access_engine, org):
    learner = access_engine.my_roles(org.learner, org.d)
    admin = access_engine.my_roles(org.admin)

    assert learner.user_kind == "learner"
    assert learner.roles == []
    assert learner.capabilities == sorted(access_engine.registry.learner_baseline)
    assert admin.roles == ["system-admin"]
    assert "system:*" in admin.capabilities
