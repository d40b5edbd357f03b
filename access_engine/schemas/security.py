from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MembershipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    department_id: int
    roles: list[str]
    is_primary: bool
    is_active: bool
    joined_at: datetime
    expires_at: datetime | None


class GlobalAdminOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    department_id: int
    roles: list[str]
    is_active: bool


class RoleDefinitionOut(BaseModel):
    name: str
    user_kind: str
    capabilities: list[str]
    is_built_in: bool
    description: str | None = None
    user_count: int | None = None


class UserRolesOut(BaseModel):
    user_id: int
    user_kind: str
    memberships: list[MembershipOut] = Field(default_factory=list)
    global_admin: GlobalAdminOut | None = None
    calculated_capabilities: list[str] = Field(default_factory=list)


class CustomRoleDeletedOut(BaseModel):
    name: str
    forced: bool
    stripped_memberships: list[int] = Field(default_factory=list)
    deactivated_memberships: list[int] = Field(default_factory=list)


class AssignRoleIn(BaseModel):
    department_id: int
    role_name: str
    is_primary: bool = False
    expires_at: datetime | None = None


class UpdateMembershipIn(BaseModel):
    is_primary: bool | None = None
    expires_at: datetime | None = None


class GlobalAdminIn(BaseModel):
    user_id: int
    roles: list[str]


class GlobalAdminRolesIn(BaseModel):
    roles: list[str]


class CustomRoleIn(BaseModel):
    name: str
    user_kind: str
    capabilities: list[str]
    description: str | None = None


class AccessRightsIn(BaseModel):
    capabilities: list[str]


class AccessRightIn(BaseModel):
    capability: str


class AccessRightOut(BaseModel):
    key: str
    domain: str
    description: str


class RoleAccessRightsOut(BaseModel):
    name: str
    user_kind: str
    is_built_in: bool
    access_rights: list[AccessRightOut] = Field(default_factory=list)


class MyRolesOut(BaseModel):
    """The caller's own roles and capabilities in one department context."""

    user_id: int
    user_kind: str
    department_id: int | None = None
    roles: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
