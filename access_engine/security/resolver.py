from __future__ import annotations

from datetime import datetime
import logging

from access_engine.security.context import Membership, Principal, UserKind, utcnow
from access_engine.security.hierarchy import DepartmentHierarchy
from access_engine.security.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class CapabilityResolver:
    """
    Merge a principal's role memberships into an effective capability set.

    Pure: output depends only on the principal, the registry/hierarchy
    snapshots and ``at``. Safe to call concurrently.

    Rules:
    - global-admin: union of the active global-admin roles; department
      context is ignored.
    - staff / learner: union over current memberships whose scoped
      department set (see DepartmentHierarchy) contains the context, or over
      all current memberships when there is no context.
    - learners always get the registry's learner baseline on top.
    """

    def __init__(self, registry: CapabilityRegistry, hierarchy: DepartmentHierarchy) -> None:
        self._registry = registry
        self._hierarchy = hierarchy

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def hierarchy(self) -> DepartmentHierarchy:
        return self._hierarchy

    def _applicable_memberships(
        self,
        principal: Principal,
        department_context: int | None,
        at: datetime,
    ) -> list[Membership]:
        current = principal.current_memberships(at)
        if department_context is None:
            return list(current)
        return [
            m
            for m in current
            if department_context in self._hierarchy.scoped_department_set(principal, m.department_id, at)
        ]

    def active_role_names(
        self,
        principal: Principal,
        department_context: int | None = None,
        at: datetime | None = None,
    ) -> frozenset[str]:
        """Role names that apply to the principal in the given scope."""

        at = at or utcnow()
        if principal.user_kind == UserKind.GLOBAL_ADMIN:
            grant = principal.global_admin
            if grant is None or not grant.is_active:
                return frozenset()
            return frozenset(grant.roles)

        names: set[str] = set()
        for membership in self._applicable_memberships(principal, department_context, at):
            names.update(membership.roles)
        return frozenset(names)

    def resolve(
        self,
        principal: Principal,
        department_context: int | None = None,
        at: datetime | None = None,
    ) -> frozenset[str]:
        at = at or utcnow()
        roles = self.active_role_names(principal, department_context, at)
        caps = set(self._registry.capabilities_for(roles))

        if principal.user_kind == UserKind.LEARNER:
            caps.update(self._registry.learner_baseline)

        logger.debug(
            "Resolved capabilities user=%s kind=%s context=%s roles=%s count=%d",
            principal.user_id,
            principal.user_kind.value,
            department_context,
            sorted(roles),
            len(caps),
        )
        return frozenset(caps)
