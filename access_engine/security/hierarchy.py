"""
Department hierarchy resolver.

Departments form a forest via ``parent_id``. A membership in a root
(top-level) department grants scope over the whole subtree; a membership
anywhere else is scoped to that single department.

The hierarchy is an immutable snapshot with a children index built once at
construction. Traversal is bounded and revisit-aware, so malformed data
(cycles, absurd depth) degrades to a smaller result plus an error log, never
an infinite loop. Unknown ids produce empty results: "no department" means
"no access".
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Iterable, Mapping

from access_engine.security.context import Principal, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


class DepartmentHierarchy:
    def __init__(self, parents: Mapping[int, int | None], max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self._parents = dict(parents)
        self._max_depth = max_depth

        children: dict[int, list[int]] = {}
        for dept_id, parent_id in self._parents.items():
            if parent_id is not None:
                children.setdefault(parent_id, []).append(dept_id)
        self._children = {k: tuple(sorted(v)) for k, v in children.items()}

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[int, int | None]], max_depth: int = DEFAULT_MAX_DEPTH) -> DepartmentHierarchy:
        return cls(dict(edges), max_depth=max_depth)

    def __contains__(self, department_id: object) -> bool:
        return department_id in self._parents

    def parent_of(self, department_id: int) -> int | None:
        return self._parents.get(department_id)

    def children_of(self, department_id: int) -> tuple[int, ...]:
        return self._children.get(department_id, ())

    def is_root(self, department_id: int) -> bool:
        return department_id in self._parents and self._parents[department_id] is None

    def descendants(self, department_id: int) -> frozenset[int]:
        """The department itself plus every transitive child."""

        if department_id not in self._parents:
            return frozenset()

        seen: set[int] = {department_id}
        frontier = [department_id]
        depth = 0
        while frontier:
            if depth >= self._max_depth:
                logger.error(
                    "Department traversal exceeded max depth=%d from department=%s; truncating",
                    self._max_depth,
                    department_id,
                )
                break
            next_frontier: list[int] = []
            for current in frontier:
                for child in self.children_of(current):
                    if child in seen:
                        logger.error(
                            "Department cycle detected: %s revisited below %s (root=%s)",
                            child,
                            current,
                            department_id,
                        )
                        continue
                    seen.add(child)
                    next_frontier.append(child)
            frontier = next_frontier
            depth += 1

        return frozenset(seen)

    def ancestors(self, department_id: int) -> list[int]:
        """Ordered path from the department up to its root (inclusive). Diagnostic use."""

        if department_id not in self._parents:
            return []

        path = [department_id]
        seen = {department_id}
        current = self._parents[department_id]
        while current is not None:
            if current in seen:
                logger.error("Department cycle detected in ancestors of %s at %s", department_id, current)
                break
            if len(path) > self._max_depth:
                logger.error("Department ancestry of %s exceeded max depth=%d", department_id, self._max_depth)
                break
            if current not in self._parents:
                # Dangling parent link: report what we can reach.
                logger.warning("Department %s references unknown parent %s", path[-1], current)
                break
            path.append(current)
            seen.add(current)
            current = self._parents[current]
        return path

    # ---- Principal-relative scoping ---------------------------------------------------

    def is_top_level_membership(self, principal: Principal, department_id: int, at: datetime | None = None) -> bool:
        at = at or utcnow()
        if principal.active_membership_in(department_id, at) is None:
            return False
        return self.is_root(department_id)

    def scoped_department_set(self, principal: Principal, department_id: int, at: datetime | None = None) -> frozenset[int]:
        if department_id not in self._parents:
            return frozenset()
        if self.is_top_level_membership(principal, department_id, at):
            return self.descendants(department_id)
        return frozenset({department_id})
