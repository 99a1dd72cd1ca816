"""
Endpoints called by the admin portal.

Authenticated with the shared INSTANCE_TOKEN rather than a user JWT. These
routes stay reachable when the instance is suspended, and in multi-tenant
mode the target tenant may be named with ``?tenantId=`` or ``X-Tenant-Id``.
"""

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..config import settings
from ..database import Executor
from ..schemas import InstanceInfo, SettingEntry, SettingValue
from ..services import settings_service
from ..services.auth_service import require_instance_token
from ..services.tenant_service import ADMIN_PORTAL_PREFIX, TenantContext, get_tenant
from ..services.transaction_service import run_transaction

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=ADMIN_PORTAL_PREFIX,
    tags=["Admin Portal"],
    dependencies=[Depends(require_instance_token)],
)


@router.get("/info", summary="Instance identity")
async def instance_info(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
) -> dict[str, Any]:
    info = InstanceInfo(
        instance_name=settings.instance_name,
        instance_token="configured" if settings.instance_token else "not-configured",
        tenant_id=tenant.tenant_id,
        domain=settings.site_url or "not-configured",
        version=settings.app_version,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc),
    )
    return {"success": True, "data": info.model_dump(mode="json", by_alias=True)}


@router.get("/settings", summary="All settings of the tenant")
async def list_settings(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
) -> dict[str, Any]:
    return {"success": True, "data": await settings_service.list_settings(tenant.db)}


@router.put(
    "/settings/{key}",
    summary="Set one setting",
    responses={400: {"description": "Setting value is required"}},
)
async def update_setting(
    key: str,
    body: SettingValue,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
) -> dict[str, Any]:
    if body.value is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Setting value is required",
        )

    async def work(executor: Executor) -> None:
        await settings_service.set_setting(executor, key, body.value)

    await run_transaction(tenant.db, work)
    logger.info(f"Admin portal set {key} (tenant={tenant.tenant_id or 'default'})")
    return {
        "success": True,
        "message": "Setting updated successfully",
        "data": SettingEntry(key=key, value=body.value).model_dump(),
    }


@router.put("/settings", summary="Set several settings at once")
async def update_settings(
    values: Annotated[dict[str, Optional[str]], Body()],
    tenant: Annotated[TenantContext, Depends(get_tenant)],
) -> dict[str, Any]:
    """Null values are skipped. All writes commit together or not at all."""
    entries = [SettingEntry(key=k, value=v) for k, v in values.items() if v is not None]

    async def work(executor: Executor) -> None:
        for entry in entries:
            await settings_service.set_setting(executor, entry.key, entry.value)

    if entries:
        await run_transaction(tenant.db, work)
    logger.info(
        f"Admin portal set {len(entries)} settings (tenant={tenant.tenant_id or 'default'})"
    )
    return {
        "success": True,
        "message": f"{len(entries)} settings updated successfully",
        "data": [entry.model_dump() for entry in entries],
    }


@router.get("/health", summary="Database reachability of the tenant")
async def portal_health(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
) -> Any:
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        await tenant.db.ping()
    except Exception as e:
        logger.error(f"Admin portal health check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "status": "unhealthy", "timestamp": timestamp},
        )
    return {
        "success": True,
        "status": "healthy",
        "timestamp": timestamp,
        "database": "connected",
    }
