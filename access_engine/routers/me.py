from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from access_engine.errors import NotFoundError
from access_engine.schemas.security import MyRolesOut
from access_engine.security.dependencies import get_access_engine, get_department_context, get_principal_id
from access_engine.security.engine import AccessEngine

router = APIRouter(prefix="/me", tags=["me"])


@router.get("/roles", response_model=MyRolesOut)
def get_my_roles(
    principal_id: int = Depends(get_principal_id),
    department_context: int | None = Depends(get_department_context),
    engine: AccessEngine = Depends(get_access_engine),
) -> MyRolesOut:
    # Any authenticated principal may read its own roles; the department header picks the scope.
    try:
        return engine.my_roles(principal_id, department_context)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
