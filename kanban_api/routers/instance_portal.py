"""Instance portal endpoints proxied to the admin portal."""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..services import settings_service
from ..services.auth_service import Principal, oauth2_scheme, require_admin
from ..services.tenant_service import TenantContext, get_tenant
from ..services.upstream_service import fetch_billing_history

router = APIRouter(tags=["Instance Portal"])


@router.get(
    "/api/instance-portal/billing-history",
    summary="Billing history of this instance",
    description="Forwarded to the admin portal with the caller's token.",
    responses={
        403: {"description": "Only the instance owner can access billing history"},
        404: {"description": "Admin portal URL not configured"},
        502: {"description": "Admin portal unavailable"},
        504: {"description": "Admin portal timed out"},
    },
)
async def billing_history(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    token: Annotated[str, Depends(oauth2_scheme)],
) -> Any:
    owner = await settings_service.get_setting(tenant.db, settings_service.OWNER)
    if not owner or owner != principal.email:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the instance owner can access billing history",
        )

    portal_url = await settings_service.get_setting(tenant.db, settings_service.ADMIN_PORTAL_URL)
    if not portal_url:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Admin portal URL not configured",
        )

    instance_id = await settings_service.get_setting(tenant.db, settings_service.INSTANCE_ID)
    response = await fetch_billing_history(portal_url, instance_id, token)

    if response.is_error:
        detail = "Failed to fetch billing history from admin portal"
        if isinstance(response.body, dict):
            detail = response.body.get("error") or response.body.get("detail") or detail
        return JSONResponse(status_code=response.status_code, content={"detail": detail})
    return response.body
