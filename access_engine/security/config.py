"""
YAML loader for the capability catalogue and built-in roles.

Expected shape (simplified):

    access_control:
      capabilities:
        content:courses:view: View courses
      learner_baseline: [content:courses:view]
      roles:
        instructor:
          user_kind: staff
          description: ...
          capabilities: [content:courses:view]
      masking:
        unmasked_roles: [system-admin]
        masked_roles: [instructor]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from access_engine.security.context import UserKind
from access_engine.security.registry import SYSTEM_ADMIN_ROLE, SYSTEM_WILDCARD, is_valid_capability_key

logger = logging.getLogger(__name__)


class AccessConfigError(ValueError):
    """Raised when the access-control YAML configuration is invalid."""


class RoleConfig(BaseModel):
    user_kind: UserKind
    description: str | None = None
    capabilities: list[str] = Field(default_factory=list)


class MaskingConfig(BaseModel):
    unmasked_roles: list[str] = Field(default_factory=lambda: ["enrollment-admin", "system-admin"])
    masked_roles: list[str] = Field(default_factory=lambda: ["instructor", "department-admin"])


class AccessConfigModel(BaseModel):
    capabilities: dict[str, str] = Field(default_factory=dict)
    learner_baseline: list[str] = Field(default_factory=list)
    roles: dict[str, RoleConfig] = Field(default_factory=dict)
    masking: MaskingConfig = Field(default_factory=MaskingConfig)


def parse_access_config(raw: dict[str, Any]) -> AccessConfigModel:
    """Validate an already-parsed mapping (the value under ``access_control``)."""

    try:
        model = AccessConfigModel.model_validate(raw)
    except ValidationError as exc:
        raise AccessConfigError(f"invalid access control config: {exc}") from exc

    for key in model.capabilities:
        if not is_valid_capability_key(key):
            raise AccessConfigError(f"capability {key!r} is not of the form domain:resource:action")

    known = set(model.capabilities)
    for role_name, role in model.roles.items():
        if not role.capabilities:
            raise AccessConfigError(f"role {role_name!r} must grant at least one capability")
        unknown = set(role.capabilities) - known
        if unknown:
            raise AccessConfigError(f"role {role_name!r} references unknown capabilities: {sorted(unknown)}")
        if SYSTEM_WILDCARD in role.capabilities and role_name != SYSTEM_ADMIN_ROLE:
            raise AccessConfigError(f"{SYSTEM_WILDCARD!r} may only be granted to {SYSTEM_ADMIN_ROLE!r}")

    unknown_baseline = set(model.learner_baseline) - known
    if unknown_baseline:
        raise AccessConfigError(f"learner_baseline references unknown capabilities: {sorted(unknown_baseline)}")

    for role_name in [*model.masking.unmasked_roles, *model.masking.masked_roles]:
        if role_name not in model.roles:
            raise AccessConfigError(f"masking references unknown role {role_name!r}")

    return model


def load_access_config(path: Path) -> AccessConfigModel:
    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "access_control" not in raw:
        raise AccessConfigError(f"Missing top-level 'access_control' key in config: {path}")

    model = parse_access_config(raw["access_control"] or {})
    logger.debug(
        "Loaded access config path=%s capabilities=%d roles=%d",
        path,
        len(model.capabilities),
        len(model.roles),
    )
    return model
