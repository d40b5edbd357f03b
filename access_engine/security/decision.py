"""
Access decision engine.

Given a principal, a requirement and an optional department/escalation
context, answer allow/deny with a reason. Gates run cheapest and coarsest
first:

1. escalation credential present?
2. holds one of the required admin roles?
3. capability check (single key, or any-of list).

The unmet capability keys are logged server-side only; they never appear on
the returned :class:`Decision`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import enum
import logging
from typing import Iterable

from access_engine.errors import ValidationFailed
from access_engine.security.context import Principal
from access_engine.security.resolver import CapabilityResolver

logger = logging.getLogger(__name__)


class DecisionReason(str, enum.Enum):
    ALLOWED = "ALLOWED"
    ESCALATION_REQUIRED = "ESCALATION_REQUIRED"
    ADMIN_ROLE_REQUIRED = "ADMIN_ROLE_REQUIRED"
    MISSING_CAPABILITY = "MISSING_CAPABILITY"


@dataclass(frozen=True)
class AccessRequirement:
    """
    What an operation needs.

    ``any_of`` holds one key (plain requirement) or several keys (OR: any one
    suffices). Escalation and admin roles are AND'ed with the capability check.
    """

    any_of: tuple[str, ...]
    requires_escalation: bool = False
    required_admin_roles: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not self.any_of:
            raise ValidationFailed("AccessRequirement needs at least one capability key")

    @classmethod
    def capability(cls, key: str, *, requires_escalation: bool = False, admin_roles: Iterable[str] = ()) -> AccessRequirement:
        return cls((key,), requires_escalation, frozenset(admin_roles))

    @classmethod
    def any_capability(
        cls,
        keys: Iterable[str],
        *,
        requires_escalation: bool = False,
        admin_roles: Iterable[str] = (),
    ) -> AccessRequirement:
        return cls(tuple(keys), requires_escalation, frozenset(admin_roles))


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DecisionReason

    def __bool__(self) -> bool:
        return self.allowed


_ALLOW = Decision(True, DecisionReason.ALLOWED)


class AccessDecisionEngine:
    def __init__(self, resolver: CapabilityResolver) -> None:
        self._resolver = resolver

    def decide(
        self,
        principal: Principal,
        requirement: AccessRequirement,
        department_context: int | None = None,
        escalation_present: bool = False,
        at: datetime | None = None,
    ) -> Decision:
        if requirement.requires_escalation and not escalation_present:
            logger.debug("Access denied user=%s reason=%s", principal.user_id, DecisionReason.ESCALATION_REQUIRED.value)
            return Decision(False, DecisionReason.ESCALATION_REQUIRED)

        if requirement.required_admin_roles:
            held = self._resolver.active_role_names(principal, department_context, at)
            if not held & requirement.required_admin_roles:
                logger.debug(
                    "Access denied user=%s reason=%s held=%s",
                    principal.user_id,
                    DecisionReason.ADMIN_ROLE_REQUIRED.value,
                    sorted(held),
                )
                return Decision(False, DecisionReason.ADMIN_ROLE_REQUIRED)

        caps = self._resolver.resolve(principal, department_context, at)
        if caps.intersection(requirement.any_of):
            return _ALLOW

        logger.info(
            "Access denied user=%s reason=%s context=%s unmet=%s",
            principal.user_id,
            DecisionReason.MISSING_CAPABILITY.value,
            department_context,
            list(requirement.any_of),
        )
        return Decision(False, DecisionReason.MISSING_CAPABILITY)
