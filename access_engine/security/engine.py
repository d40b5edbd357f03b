"""
Facade used by collaborators.

Each call loads one snapshot (principal + department hierarchy) in a short
session, then runs the pure decision functions against it. The registry
snapshot is read once per call from the provider.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import Any

from pydantic import BaseModel
from sqlalchemy.orm import Session

from access_engine.db.queries import load_custom_roles, load_hierarchy, load_principal
from access_engine.db.session import SessionFactory, SessionLocal, storage_errors
from access_engine.schemas.security import MyRolesOut
from access_engine.security.config import AccessConfigModel, load_access_config
from access_engine.security.context import Principal
from access_engine.security.decision import AccessDecisionEngine, AccessRequirement, Decision
from access_engine.security.masking import MaskingPolicy, ViewerCategory
from access_engine.security.registry import CapabilityRegistry, RegistryProvider
from access_engine.security.resolver import CapabilityResolver
from access_engine.services.audit import AuditSink, SqlAuditSink
from access_engine.services.role_management import RoleManagementService
from access_engine.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class AccessEngine:
    def __init__(
        self,
        session_factory: SessionFactory,
        registry_provider: RegistryProvider,
        masking_policy: MaskingPolicy,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry_provider = registry_provider
        self._masking_policy = masking_policy
        self._settings = settings or get_settings()

    @classmethod
    def from_config(
        cls,
        config: AccessConfigModel,
        session_factory: SessionFactory,
        settings: Settings | None = None,
        *,
        sync_custom_roles: bool = True,
    ) -> AccessEngine:
        settings = settings or get_settings()
        policy = MaskingPolicy(
            unmasked_roles=frozenset(config.masking.unmasked_roles),
            masked_roles=frozenset(config.masking.masked_roles),
            mask_email=settings.mask_email,
            mask_phone=settings.mask_phone,
        )
        engine = cls(session_factory, RegistryProvider(CapabilityRegistry.from_config(config)), policy, settings)
        if sync_custom_roles:
            engine.sync_registry()
        return engine

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
        *,
        sync_custom_roles: bool = True,
    ) -> AccessEngine:
        settings = settings or get_settings()
        path = settings.resolved_access_config_path()
        config = load_access_config(path)
        logger.info("Loaded access control config: %s", path)
        return cls.from_config(
            config,
            session_factory or SessionLocal,
            settings,
            sync_custom_roles=sync_custom_roles,
        )

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry_provider.current

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def masking_policy(self) -> MaskingPolicy:
        return self._masking_policy

    def sync_registry(self) -> None:
        with storage_errors("load custom roles"), self._session_factory() as db:
            custom = load_custom_roles(db)
        self._registry_provider.refresh_custom_roles(custom)

    def role_management(self, audit_sink: AuditSink | None = None) -> RoleManagementService:
        """Service bound to this engine's registry; audits to the database unless a sink is given."""
        sink = audit_sink if audit_sink is not None else SqlAuditSink(self._session_factory)
        return RoleManagementService(self._session_factory, self._registry_provider, sink, self._settings)

    # ---- Snapshot -------------------------------------------------------------------

    def _snapshot(self, db: Session, principal_id: int) -> tuple[Principal, CapabilityResolver]:
        principal = load_principal(db, principal_id)
        hierarchy = load_hierarchy(db, self._settings.max_hierarchy_depth)
        return principal, CapabilityResolver(self.registry, hierarchy)

    def load_principal(self, principal_id: int) -> Principal:
        with storage_errors("load principal"), self._session_factory() as db:
            return load_principal(db, principal_id)

    # ---- Decisions ------------------------------------------------------------------

    def decide(
        self,
        principal_id: int,
        requirement: AccessRequirement,
        department_context: int | None = None,
        escalation_present: bool = False,
    ) -> Decision:
        with storage_errors("access decision"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, principal_id)
        return AccessDecisionEngine(resolver).decide(principal, requirement, department_context, escalation_present)

    def resolve(self, principal_id: int, department_context: int | None = None) -> frozenset[str]:
        with storage_errors("resolve capabilities"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, principal_id)
        return resolver.resolve(principal, department_context)

    def my_roles(self, principal_id: int, department_context: int | None = None) -> MyRolesOut:
        """Roles and capabilities that apply to the principal in ``department_context``."""
        with storage_errors("my roles"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, principal_id)
        return MyRolesOut(
            user_id=principal.user_id,
            user_kind=principal.user_kind.value,
            department_id=department_context,
            roles=sorted(resolver.active_role_names(principal, department_context)),
            capabilities=sorted(resolver.resolve(principal, department_context)),
        )

    def scoped_department_set(self, principal_id: int, department_id: int) -> frozenset[int]:
        with storage_errors("scope departments"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, principal_id)
        return resolver.hierarchy.scoped_department_set(principal, department_id)

    # ---- Masking --------------------------------------------------------------------

    def viewer_category(self, viewer_id: int, department_id: int | None = None) -> ViewerCategory:
        with storage_errors("viewer category"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, viewer_id)
        return self._masking_policy.categorize(resolver.active_role_names(principal, department_id))

    def mask(self, viewer_id: int, subject: Any, department_id: int | None = None) -> Any:
        if department_id is None:
            department_id = _department_of(subject)
        return self._masking_policy.mask(subject, self.viewer_category(viewer_id, department_id))

    def mask_many(self, viewer_id: int, subjects: Any, department_context: int | None = None) -> list[Any]:
        """
        Mask a collection of subjects.

        The viewer category is resolved once per subject department (the
        subject's ``department_id`` when it has one, else ``department_context``).
        """

        if subjects is None or isinstance(subjects, (str, bytes, Mapping, BaseModel)):
            return []
        try:
            items = list(subjects)
        except TypeError:
            return []
        if not items:
            return []

        with storage_errors("viewer category"), self._session_factory() as db:
            principal, resolver = self._snapshot(db, viewer_id)

        categories: dict[int | None, ViewerCategory] = {}
        out: list[Any] = []
        for item in items:
            dept = _department_of(item)
            if dept is None:
                dept = department_context
            if dept not in categories:
                categories[dept] = self._masking_policy.categorize(resolver.active_role_names(principal, dept))
            out.append(self._masking_policy.mask(item, categories[dept]))
        return out


def _department_of(subject: Any) -> int | None:
    if isinstance(subject, Mapping):
        value = subject.get("department_id")
    else:
        value = getattr(subject, "department_id", None)
    return value if isinstance(value, int) else None
