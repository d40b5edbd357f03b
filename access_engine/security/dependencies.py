"""
FastAPI adapter.

The identity collaborator authenticates the request and places
``principal_id`` (and, after a step-up, ``escalation_verified``) on
``request.state``. Routes declare what they need:

    @router.post("/courses/{id}/publish",
                 dependencies=[Depends(require_access(AccessRequirement.capability("content:courses:publish")))])

Denials are a generic 403; the reason code is the only detail returned.
"""

from __future__ import annotations

from collections.abc import Callable
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from access_engine.errors import AccessControlError, ErrorKind, NotFoundError
from access_engine.security.decision import AccessRequirement, Decision
from access_engine.security.engine import AccessEngine

logger = logging.getLogger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.LAST_ADMIN_PROTECTED: status.HTTP_403_FORBIDDEN,
    ErrorKind.IMMUTABLE_ROLE: status.HTTP_403_FORBIDDEN,
    ErrorKind.ROLE_IN_USE: status.HTTP_409_CONFLICT,
    ErrorKind.STORAGE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_status_for(kind: ErrorKind) -> int:
    return _STATUS_BY_KIND.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_access_engine(request: Request) -> AccessEngine:
    engine = getattr(request.app.state, "access_engine", None)
    if engine is None:
        raise RuntimeError("Access engine not loaded. Did app startup run?")
    return engine


def get_principal_id(request: Request) -> int:
    principal_id = getattr(request.state, "principal_id", None)
    if principal_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return principal_id


def get_department_context(request: Request, engine: AccessEngine = Depends(get_access_engine)) -> int | None:
    header = engine.settings.department_header
    raw = request.headers.get(header)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {header} header")


def require_access(requirement: AccessRequirement) -> Callable[..., Decision]:
    """Build a dependency that enforces ``requirement`` for the current principal."""

    def dependency(
        request: Request,
        engine: AccessEngine = Depends(get_access_engine),
        principal_id: int = Depends(get_principal_id),
        department_context: int | None = Depends(get_department_context),
    ) -> Decision:
        escalation = bool(getattr(request.state, "escalation_verified", False))
        try:
            decision = engine.decide(principal_id, requirement, department_context, escalation)
        except NotFoundError:
            # Inactive or unknown principal: treat as unauthenticated.
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

        if not decision.allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": "Forbidden", "reason": decision.reason.value},
            )
        return decision

    return dependency


def install_error_handlers(app: FastAPI) -> None:
    """Map engine errors raised from route handlers to JSON responses."""

    @app.exception_handler(AccessControlError)
    async def _access_control_error(request: Request, exc: AccessControlError) -> JSONResponse:
        code = http_status_for(exc.kind)
        if code >= 500:
            logger.error("Access engine failure on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=code, content=exc.to_dict())
