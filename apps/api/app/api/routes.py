from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import opportunities_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.ticketing.api import quotations_router

router = APIRouter()
router.include_router(quotations_router)
router.include_router(opportunities_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "email_transport": bool(settings.smtp_host),
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "permissions": user.permissions,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in {*user.roles, *user.permissions}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
