from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.dependencies import get_db_session
from routerfleet.schemas.audit import AuditLogOut, AuditStatsOut
from routerfleet.services import audit as audit_service

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=List[AuditLogOut])
async def list_audit_logs(
    limit: int = 50,
    offset: int = 0,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    actor: Optional[str] = None,
    success: Optional[bool] = None,
    session: AsyncSession = Depends(get_db_session),
) -> List[AuditLogOut]:
    bounded_limit = max(1, min(limit, 1000))
    logs = await audit_service.list_logs(
        session,
        limit=bounded_limit,
        offset=max(0, offset),
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=success,
    )
    return [AuditLogOut.model_validate(entry) for entry in logs]


@router.get("/stats", response_model=AuditStatsOut)
async def audit_stats(
    session: AsyncSession = Depends(get_db_session),
) -> AuditStatsOut:
    return AuditStatsOut(**await audit_service.get_stats(session))


@router.get("/{log_id}", response_model=AuditLogOut)
async def get_audit_log(
    log_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> AuditLogOut:
    entry = await audit_service.get_log(session, log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit log not found")
    return AuditLogOut.model_validate(entry)
