from __future__ import annotations

from fastapi import APIRouter, Depends, status

from access_engine.schemas.bulk import BulkAssignIn, BulkRemoveIn, BulkResult
from access_engine.schemas.security import (
    AccessRightIn,
    AccessRightOut,
    AccessRightsIn,
    AssignRoleIn,
    CustomRoleDeletedOut,
    CustomRoleIn,
    GlobalAdminIn,
    GlobalAdminOut,
    GlobalAdminRolesIn,
    MembershipOut,
    RoleAccessRightsOut,
    RoleDefinitionOut,
    UpdateMembershipIn,
    UserRolesOut,
)
from access_engine.security.decision import AccessRequirement
from access_engine.security.dependencies import get_access_engine, get_principal_id, require_access
from access_engine.security.engine import AccessEngine
from access_engine.security.registry import SYSTEM_ADMIN_ROLE, SYSTEM_WILDCARD
from access_engine.services.role_management import UNSET, RoleManagementService

# Every admin endpoint needs the system wildcard, the system-admin role and a verified escalation.
ADMIN_REQUIREMENT = AccessRequirement.capability(
    SYSTEM_WILDCARD,
    requires_escalation=True,
    admin_roles=[SYSTEM_ADMIN_ROLE],
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_access(ADMIN_REQUIREMENT))])


def get_role_service(engine: AccessEngine = Depends(get_access_engine)) -> RoleManagementService:
    return engine.role_management()


# ---- User role assignment ---------------------------------------------------------------


@router.get("/users/{user_id}/roles", response_model=UserRolesOut)
def get_user_roles(user_id: int, service: RoleManagementService = Depends(get_role_service)) -> UserRolesOut:
    return service.get_user_roles(user_id)


@router.post(
    "/users/{user_id}/roles",
    response_model=MembershipOut | GlobalAdminOut,
    status_code=status.HTTP_201_CREATED,
)
def assign_role(
    user_id: int,
    body: AssignRoleIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> MembershipOut | GlobalAdminOut:
    return service.assign_role(
        user_id,
        body.department_id,
        body.role_name,
        actor_id,
        is_primary=body.is_primary,
        expires_at=body.expires_at,
    )


@router.delete("/users/{user_id}/roles/{membership_id}", response_model=MembershipOut | GlobalAdminOut)
def remove_role(
    user_id: int,
    membership_id: int,
    role: str,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> MembershipOut | GlobalAdminOut:
    return service.remove_role(user_id, membership_id, role, actor_id)


@router.put("/users/{user_id}/roles/{membership_id}", response_model=MembershipOut)
def update_role_membership(
    user_id: int,
    membership_id: int,
    body: UpdateMembershipIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> MembershipOut:
    # Only an explicitly sent ``expires_at: null`` clears the expiry.
    expires_at = body.expires_at if "expires_at" in body.model_fields_set else UNSET
    return service.update_role_membership(
        user_id,
        membership_id,
        actor_id,
        is_primary=body.is_primary,
        expires_at=expires_at,
    )


@router.post("/users/bulk/assign-roles", response_model=BulkResult)
def bulk_assign_roles(
    body: BulkAssignIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> BulkResult:
    return service.bulk_assign_roles(body.assignments, actor_id)


@router.post("/users/bulk/remove-roles", response_model=BulkResult)
def bulk_remove_roles(
    body: BulkRemoveIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> BulkResult:
    return service.bulk_remove_roles(body.removals, actor_id)


# ---- Global admins ----------------------------------------------------------------------


@router.get("/global-admins", response_model=list[GlobalAdminOut])
def list_global_admins(service: RoleManagementService = Depends(get_role_service)) -> list[GlobalAdminOut]:
    return service.list_global_admins()


@router.post("/global-admins", response_model=GlobalAdminOut, status_code=status.HTTP_201_CREATED)
def create_global_admin(
    body: GlobalAdminIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> GlobalAdminOut:
    return service.create_global_admin(body.user_id, body.roles, actor_id)


@router.put("/global-admins/{user_id}/roles", response_model=GlobalAdminOut)
def update_global_admin_roles(
    user_id: int,
    body: GlobalAdminRolesIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> GlobalAdminOut:
    return service.update_global_admin_roles(user_id, body.roles, actor_id)


@router.delete("/global-admins/{user_id}", response_model=GlobalAdminOut)
def remove_global_admin(
    user_id: int,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> GlobalAdminOut:
    return service.remove_global_admin(user_id, actor_id)


# ---- Role definitions -------------------------------------------------------------------


@router.get("/role-definitions", response_model=list[RoleDefinitionOut])
def list_role_definitions(
    user_kind: str | None = None,
    service: RoleManagementService = Depends(get_role_service),
) -> list[RoleDefinitionOut]:
    return service.list_role_definitions(user_kind)


@router.get("/role-definitions/{role_name}", response_model=RoleDefinitionOut)
def get_role_definition(role_name: str, service: RoleManagementService = Depends(get_role_service)) -> RoleDefinitionOut:
    return service.get_role_definition(role_name)


@router.post("/role-definitions", response_model=RoleDefinitionOut, status_code=status.HTTP_201_CREATED)
def create_custom_role(
    body: CustomRoleIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> RoleDefinitionOut:
    return service.create_custom_role(body.name, body.user_kind, body.capabilities, actor_id, body.description)


@router.delete("/role-definitions/{role_name}", response_model=CustomRoleDeletedOut)
def delete_custom_role(
    role_name: str,
    force: bool = False,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> CustomRoleDeletedOut:
    return service.delete_custom_role(role_name, actor_id, force=force)


@router.put("/role-definitions/{role_name}/access-rights", response_model=RoleDefinitionOut)
def update_role_access_rights(
    role_name: str,
    body: AccessRightsIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> RoleDefinitionOut:
    return service.update_role_access_rights(role_name, body.capabilities, actor_id)


@router.post("/role-definitions/{role_name}/access-rights", response_model=RoleDefinitionOut)
def add_access_right(
    role_name: str,
    body: AccessRightIn,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> RoleDefinitionOut:
    return service.add_access_right(role_name, body.capability, actor_id)


@router.delete("/role-definitions/{role_name}/access-rights/{capability}", response_model=RoleDefinitionOut)
def remove_access_right(
    role_name: str,
    capability: str,
    actor_id: int = Depends(get_principal_id),
    service: RoleManagementService = Depends(get_role_service),
) -> RoleDefinitionOut:
    return service.remove_access_right(role_name, capability, actor_id)


# ---- Access right catalogue -------------------------------------------------------------


@router.get("/access-rights", response_model=list[AccessRightOut])
def list_access_rights(
    domain: str | None = None,
    service: RoleManagementService = Depends(get_role_service),
) -> list[AccessRightOut]:
    return service.list_access_rights(domain)


@router.get("/role-definitions/{role_name}/access-rights", response_model=RoleAccessRightsOut)
def get_access_rights_for_role(
    role_name: str,
    service: RoleManagementService = Depends(get_role_service),
) -> RoleAccessRightsOut:
    return service.get_access_rights_for_role(role_name)
