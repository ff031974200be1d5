from __future__ import annotations

import uuid
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser
from app.ticketing.errors import QuotationDispatchError
from app.ticketing.rendering import ChannelRenderer, ChannelSettings
from app.ticketing.schemas import (
    QuotationCreate,
    QuotationRead,
    QuotationRejectRequest,
    QuotationSendRequest,
)
from app.ticketing.service import QuotationDispatchService, quotation_service
from app.ticketing.transport import build_email_transport

quotations_router = APIRouter(prefix="/api/ticketing/customer-quotations", tags=["ticketing.quotations"])


@lru_cache
def get_dispatch_service() -> QuotationDispatchService:
    settings = get_settings()
    return QuotationDispatchService(
        renderer=ChannelRenderer(ChannelSettings.from_settings(settings)),
        email_transport=build_email_transport(settings),
    )


def dispatch_error_response(request: Request, exc: QuotationDispatchError) -> JSONResponse:
    if exc.correlation_id is None:
        exc.correlation_id = getattr(getattr(request.state, "context", None), "correlation_id", None)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@quotations_router.post("", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def create_quotation(
    request: Request,
    dto: QuotationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "ticketing.quotations.create")
        return quotation_service.create_quotation(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="ticketing_quotation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotations_router.get("/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "ticketing.quotations.read")
        return quotation_service.get_quotation(db, quotation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="ticketing_quotation_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@quotations_router.post("/{quotation_id}/send", response_model=None)
def send_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    dto: QuotationSendRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    dispatch_service: QuotationDispatchService = Depends(get_dispatch_service),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "ticketing.quotations.send")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="ticketing_quotation_send_forbidden",
            message=str(exc.detail),
            details=exc.detail,
        )
    return dispatch_service.dispatch(db, user, quotation_id, dto).to_response()


@quotations_router.post("/{quotation_id}/reject", response_model=QuotationRead)
def reject_quotation(
    request: Request,
    quotation_id: uuid.UUID,
    dto: QuotationRejectRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuotationRead | JSONResponse:
    try:
        require_permission(user, "ticketing.quotations.reject")
        return quotation_service.reject_quotation(db, user, quotation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="ticketing_quotation_reject_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
