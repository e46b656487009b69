from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.logger import get_logger
from routerfleet.models.audit_log import AuditLog
from routerfleet.services.dispatcher import ClusterOperationReport, ReportOutcome

_logger = get_logger("services.audit")


@dataclass(frozen=True)
class AuditRecord:
    action: str
    resource_type: str
    actor: str
    success: bool
    outcome: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def build_audit_record(
    report: ClusterOperationReport,
    *,
    action: str,
    resource_type: str,
    actor: str = "system",
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditRecord:
    """Correlate one dispatch report into a single audit record with per-node detail."""
    nodes: List[Dict[str, Any]] = [
        {"node_id": item.node.id, "node_name": item.node.name, "ok": True}
        for item in report.successes
    ]
    nodes.extend(
        {
            "node_id": item.node.id,
            "node_name": item.node.name,
            "ok": False,
            "kind": item.kind,
            "reason": item.reason,
        }
        for item in report.failures
    )
    payload: Dict[str, Any] = dict(details or {})
    payload.update(
        {
            "operation": report.operation,
            "profile": report.profile.value,
            "counts": {
                "total": report.total,
                "successes": len(report.successes),
                "failures": len(report.failures),
            },
            "nodes": nodes,
        }
    )
    return AuditRecord(
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=report.outcome in {ReportOutcome.SUCCESS, ReportOutcome.EMPTY},
        outcome=report.outcome,
        resource_id=resource_id,
        details=payload,
    )


async def record(
    session: AsyncSession,
    entry: AuditRecord,
    *,
    ip_address: Optional[str] = None,
    commit: bool = True,
) -> AuditLog:
    row = AuditLog(
        id=str(uuid4()),
        actor=entry.actor,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        success=entry.success,
        outcome=entry.outcome,
        details=entry.details,
        ip_address=ip_address,
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    if commit:
        await session.commit()
    log = _logger.info if entry.success else _logger.warning
    log(
        "audit.record",
        "Recorded audit entry",
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id or "",
        outcome=entry.outcome,
        actor=entry.actor,
    )
    return row


async def record_cluster_operation(
    session: AsyncSession,
    report: ClusterOperationReport,
    *,
    action: str,
    resource_type: str,
    actor: str = "system",
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    entry = build_audit_record(
        report,
        action=action,
        resource_type=resource_type,
        actor=actor,
        resource_id=resource_id,
        details=details,
    )
    return await record(session, entry, ip_address=ip_address)


async def log_success(
    session: AsyncSession,
    action: str,
    resource_type: str,
    *,
    actor: str = "system",
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLog:
    entry = AuditRecord(
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=True,
        outcome=ReportOutcome.SUCCESS,
        resource_id=resource_id,
        details=dict(details or {}),
    )
    return await record(session, entry, commit=commit)


async def log_failure(
    session: AsyncSession,
    action: str,
    resource_type: str,
    error: str,
    *,
    actor: str = "system",
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLog:
    payload = dict(details or {})
    payload["error"] = error
    entry = AuditRecord(
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=False,
        outcome=ReportOutcome.FAILURE,
        resource_id=resource_id,
        details=payload,
    )
    return await record(session, entry, commit=commit)


def _apply_filters(
    query: Select[Any],
    *,
    action: Optional[str],
    resource_type: Optional[str],
    actor: Optional[str],
    success: Optional[bool],
) -> Select[Any]:
    if action:
        query = query.where(AuditLog.action == action)
    if resource_type:
        query = query.where(AuditLog.resource_type == resource_type)
    if actor:
        query = query.where(AuditLog.actor == actor)
    if success is not None:
        query = query.where(AuditLog.success == success)
    return query


async def list_logs(
    session: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    actor: Optional[str] = None,
    success: Optional[bool] = None,
) -> List[AuditLog]:
    query = _apply_filters(
        select(AuditLog),
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=success,
    )
    query = query.order_by(AuditLog.created_at.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_log(session: AsyncSession, log_id: str) -> Optional[AuditLog]:
    return await session.get(AuditLog, log_id)


async def count_logs(
    session: AsyncSession,
    *,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    actor: Optional[str] = None,
    success: Optional[bool] = None,
) -> int:
    query = _apply_filters(
        select(func.count(AuditLog.id)),
        action=action,
        resource_type=resource_type,
        actor=actor,
        success=success,
    )
    return int((await session.execute(query)).scalar_one())


async def get_stats(session: AsyncSession) -> Dict[str, int]:
    start_of_day = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    total = await count_logs(session)
    today = (
        await session.execute(
            select(func.count(AuditLog.id)).where(AuditLog.created_at >= start_of_day)
        )
    ).scalar_one()
    failures = await count_logs(session, success=False)
    return {"total": total, "today": int(today), "failures": failures}


async def prune_old_logs(
    session: AsyncSession,
    *,
    retention_days: int,
    batch_size: int = 5000,
    max_batches: int = 20,
) -> int:
    if retention_days <= 0:
        return 0
    capped_batch = max(100, min(batch_size, 100000))
    capped_batches = max(1, min(max_batches, 200))
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)

    total_deleted = 0
    for _ in range(capped_batches):
        id_rows = await session.execute(
            select(AuditLog.id)
            .where(AuditLog.created_at < cutoff)
            .order_by(AuditLog.created_at.asc())
            .limit(capped_batch)
        )
        ids = [str(row[0]) for row in id_rows.all() if row and row[0]]
        if not ids:
            break

        await session.execute(
            delete(AuditLog).where(AuditLog.id.in_(ids)).execution_options(synchronize_session=False)
        )
        total_deleted += len(ids)
        await session.commit()

        if len(ids) < capped_batch:
            break

    if total_deleted > 0:
        _logger.info(
            "audit.prune",
            "Pruned audit logs past retention",
            retention_days=retention_days,
            deleted=total_deleted,
            cutoff=cutoff.isoformat(),
        )
    return total_deleted
