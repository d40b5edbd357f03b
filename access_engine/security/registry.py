"""
Capability registry: the catalogue of capability keys and role definitions.

Key ideas:
- Built-in roles come from YAML and never change at runtime.
- Custom roles come from the database and are merged on top.
- A registry value is immutable. Custom-role mutations build a new registry
  and swap it into the :class:`RegistryProvider`; readers never see a
  half-updated role map.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import threading
from typing import TYPE_CHECKING, Iterable, Mapping

from access_engine.errors import NotFoundError
from access_engine.security.context import UserKind

if TYPE_CHECKING:
    from access_engine.security.config import AccessConfigModel

logger = logging.getLogger(__name__)

SYSTEM_WILDCARD = "system:*"
SYSTEM_ADMIN_ROLE = "system-admin"

_CAPABILITY_KEY_RE = re.compile(r"^[a-z][a-z-]*(?::[a-z][a-z-]*){1,2}$")
ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9-]{2,49}$")


def is_valid_capability_key(key: object) -> bool:
    """True for ``domain:action``, ``domain:resource:action`` or the literal ``system:*``."""
    if not isinstance(key, str):
        return False
    return key == SYSTEM_WILDCARD or bool(_CAPABILITY_KEY_RE.match(key))


@dataclass(frozen=True)
class RoleDefinition:
    """Named bundle of capabilities assignable to principals of one kind."""

    name: str
    user_kind: UserKind
    capabilities: frozenset[str]
    is_built_in: bool = False
    description: str | None = None


class CapabilityRegistry:
    """
    Immutable role → capability catalogue.

    Usage:
        registry = CapabilityRegistry.from_config(load_access_config(path))
        caps = registry.capabilities_for({"instructor"})
    """

    def __init__(
        self,
        roles: Mapping[str, RoleDefinition],
        capabilities: Mapping[str, str] | None = None,
        learner_baseline: Iterable[str] = (),
    ) -> None:
        self._roles = dict(roles)
        self._capabilities = dict(capabilities or {})
        self._learner_baseline = frozenset(learner_baseline)

    @classmethod
    def from_config(cls, config: AccessConfigModel) -> CapabilityRegistry:
        roles = {
            name: RoleDefinition(
                name=name,
                user_kind=role.user_kind,
                capabilities=frozenset(role.capabilities),
                is_built_in=True,
                description=role.description,
            )
            for name, role in config.roles.items()
        }
        return cls(roles, config.capabilities, config.learner_baseline)

    # ---- Lookups -----------------------------------------------------------------------

    @property
    def learner_baseline(self) -> frozenset[str]:
        return self._learner_baseline

    @property
    def capability_catalogue(self) -> Mapping[str, str]:
        return dict(self._capabilities)

    def get(self, name: str) -> RoleDefinition | None:
        return self._roles.get(name)

    def require(self, name: str) -> RoleDefinition:
        role = self._roles.get(name)
        if role is None:
            raise NotFoundError(f"Role {name!r} not found", details={"role": name})
        return role

    def roles(self, user_kind: UserKind | None = None) -> list[RoleDefinition]:
        found = [r for r in self._roles.values() if user_kind is None or r.user_kind == user_kind]
        return sorted(found, key=lambda r: (not r.is_built_in, r.name))

    def is_known_capability(self, key: str) -> bool:
        # Custom roles may only reference catalogued keys; the catalogue is empty in
        # ad-hoc registries (tests, embedding apps), which accept any well-formed key.
        if not self._capabilities:
            return is_valid_capability_key(key)
        return key in self._capabilities

    def describe(self, key: str) -> str:
        return self._capabilities.get(key, key)

    def capabilities_for(self, role_names: Iterable[str]) -> frozenset[str]:
        """Union of capabilities for the given roles. Unknown roles contribute nothing."""
        caps: set[str] = set()
        for name in role_names:
            role = self._roles.get(name)
            if role is None:
                logger.debug("Registry: ignoring unknown role %r", name)
                continue
            caps.update(role.capabilities)
        return frozenset(caps)

    # ---- Snapshot derivation ----------------------------------------------------------

    def with_custom_roles(self, custom: Iterable[RoleDefinition]) -> CapabilityRegistry:
        """Return a new registry: built-ins from this one plus exactly ``custom``."""
        roles = {name: role for name, role in self._roles.items() if role.is_built_in}
        for role in custom:
            if role.name in roles:
                logger.error("Custom role %r shadows a built-in role; ignored", role.name)
                continue
            roles[role.name] = role
        return CapabilityRegistry(roles, self._capabilities, self._learner_baseline)


class RegistryProvider:
    """
    Holds the current registry snapshot.

    Readers grab ``provider.current`` once per request and use that value for
    the whole decision. Writers build a new registry and swap it in.
    """

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry
        self._lock = threading.Lock()

    @property
    def current(self) -> CapabilityRegistry:
        return self._registry

    def refresh_custom_roles(self, custom: Iterable[RoleDefinition]) -> CapabilityRegistry:
        with self._lock:
            self._registry = self._registry.with_custom_roles(custom)
            logger.info("Capability registry refreshed roles=%d", len(self._registry.roles()))
            return self._registry
