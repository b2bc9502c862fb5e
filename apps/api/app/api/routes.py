from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import ai_router as crm_ai_router, import_router as crm_import_router
from app.metrics import generate_metrics_payload, metrics_content_type


METRICS_ROLE = "system.metrics.read"

system_router = APIRouter(tags=["system"])


@system_router.get("/health")
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@system_router.get("/me", tags=["auth"])
async def whoami(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    """Echo the caller's identity, including the workspaces the token is scoped to."""
    return {"sub": user.sub, "roles": user.roles, "workspaces": user.workspaces}


@system_router.get("/metrics")
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


router = APIRouter()
router.include_router(system_router)
router.include_router(crm_import_router)
router.include_router(crm_ai_router)
