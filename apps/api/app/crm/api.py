from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.schemas import OpportunityChangeStageRequest, OpportunityNextStagesRead, OpportunityRead
from app.crm.service import ActorUser, opportunity_service

opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles) | set(auth_user.permissions),
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _failure(request: Request, exc: HTTPException, default_code: str) -> JSONResponse:
    code = default_code
    message = str(exc.detail)
    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code", default_code))
        message = str(exc.detail.get("message", message))
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=exc.detail)


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_get_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/next-stages", response_model=OpportunityNextStagesRead)
def get_opportunity_next_stages(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityNextStagesRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_next_stages(db, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_next_stages_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/stage", response_model=OpportunityRead)
def change_opportunity_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityChangeStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.change_stage")
        return opportunity_service.change_stage(db, user, opportunity_id, dto, idempotency_key)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_change_stage_failed")
