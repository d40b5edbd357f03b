"""Tests for AccessDecisionEngine gate ordering and OR semantics."""
from __future__ import annotations

import logging

import pytest

from access_engine.errors import ValidationFailed
from access_engine.security.context import GlobalAdminGrant, Membership, Principal, UserKind
from access_engine.security.decision import AccessDecisionEngine, AccessRequirement, DecisionReason
from access_engine.security.hierarchy import DepartmentHierarchy
from access_engine.security.resolver import CapabilityResolver

MASTER, A, B = 100, 1, 2


@pytest.fixture
def decider(registry):
    hierarchy = DepartmentHierarchy({MASTER: None, A: None, B: A})
    return AccessDecisionEngine(CapabilityResolver(registry, hierarchy))


def _staff(dept: int, *roles: str) -> Principal:
    return Principal(
        user_id=7,
        user_kind=UserKind.STAFF,
        memberships=(Membership(id=1, department_id=dept, roles=frozenset(roles)),),
    )


def _system_admin() -> Principal:
    return Principal(
        user_id=1,
        user_kind=UserKind.GLOBAL_ADMIN,
        global_admin=GlobalAdminGrant(id=1, department_id=MASTER, roles=frozenset({"system-admin"})),
    )


def test_allowed_when_capability_held(decider):
    decision = decider.decide(_staff(B, "instructor"), AccessRequirement.capability("learner:progress:view"), B)
    assert decision.allowed
    assert decision.reason == DecisionReason.ALLOWED
    assert decision


def test_missing_capability(decider):
    decision = decider.decide(_staff(B, "instructor"), AccessRequirement.capability("content:courses:publish"), B)
    assert not decision
    assert decision.reason == DecisionReason.MISSING_CAPABILITY


def test_any_of_requirement_is_or(decider):
    principal = _staff(B, "instructor")
    required = AccessRequirement.any_capability(["content:courses:publish", "learner:progress:view"])

    assert decider.decide(principal, required, B).allowed
    # Equivalent to the disjunction of the individual decisions.
    singles = [decider.decide(principal, AccessRequirement.capability(k), B).allowed for k in required.any_of]
    assert any(singles)


def test_any_of_none_held(decider):
    required = AccessRequirement.any_capability(["billing:department:manage", "audit:logs:view"])
    assert decider.decide(_staff(B, "instructor"), required, B).reason == DecisionReason.MISSING_CAPABILITY


def test_empty_requirement_rejected():
    with pytest.raises(ValidationFailed):
        AccessRequirement(any_of=())


def test_escalation_checked_before_everything(decider):
    required = AccessRequirement.capability("system:*", requires_escalation=True, admin_roles=["system-admin"])

    # Even a principal lacking the role and capability is told escalation first.
    assert decider.decide(_staff(B, "instructor"), required).reason == DecisionReason.ESCALATION_REQUIRED
    assert decider.decide(_system_admin(), required).reason == DecisionReason.ESCALATION_REQUIRED
    assert decider.decide(_system_admin(), required, escalation_present=True).allowed


def test_admin_role_gate_before_capability(decider):
    required = AccessRequirement.capability("content:courses:view", admin_roles=["system-admin"])
    decision = decider.decide(_staff(A, "department-admin"), required, A)
    assert decision.reason == DecisionReason.ADMIN_ROLE_REQUIRED


def test_wildcard_is_not_a_prefix(decider):
    decision = decider.decide(_system_admin(), AccessRequirement.capability("system:settings"))
    assert decision.reason == DecisionReason.MISSING_CAPABILITY


def test_unmet_keys_logged_not_returned(decider, caplog):
    with caplog.at_level(logging.INFO, logger="access_engine.security.decision"):
        decision = decider.decide(_staff(B, "instructor"), AccessRequirement.capability("audit:logs:view"), B)

    assert not hasattr(decision, "unmet")
    assert any("audit:logs:view" in r.getMessage() for r in caplog.records)
