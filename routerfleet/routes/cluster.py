from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.dependencies import (
    get_actor,
    get_client_factory,
    get_client_ip,
    get_db_session,
    get_dispatcher,
    get_prober,
)
from routerfleet.errors import ValidationError
from routerfleet.routeros import ClientFactory
from routerfleet.routes.resources import report_response, resolve_targets_or_http
from routerfleet.schemas.cluster import (
    ClusterHealthOut,
    ClusterOperationOut,
    ClusterStatsOut,
    NodeHealthOut,
)
from routerfleet.schemas.resources import ResourceWrite
from routerfleet.services import audit as audit_service
from routerfleet.services import registry as registry_service
from routerfleet.services import resources as resource_service
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.services.health import ClusterHealthSummary, HealthProber

router = APIRouter(prefix="/cluster", tags=["cluster"])


def _health_out(summary: ClusterHealthSummary) -> ClusterHealthOut:
    return ClusterHealthOut(
        checked_at=summary.checked_at,
        total=summary.total,
        healthy=summary.healthy,
        unhealthy=summary.unhealthy,
        nodes=[
            NodeHealthOut(
                node_id=item.node_id,
                node_name=item.node_name,
                online=item.online,
                resources=item.resources,
                error_kind=item.error_kind,
                error=item.error,
            )
            for item in summary.nodes
        ],
    )


@router.get("/stats", response_model=ClusterStatsOut)
async def cluster_stats(
    session: AsyncSession = Depends(get_db_session),
) -> ClusterStatsOut:
    return ClusterStatsOut(**await registry_service.cluster_stats(session))


@router.get("/health", response_model=ClusterHealthOut)
async def cluster_health(
    prober: HealthProber = Depends(get_prober),
) -> ClusterHealthOut:
    return _health_out(prober.last_summary)


@router.post("/health/check", response_model=ClusterHealthOut)
async def run_health_check(
    prober: HealthProber = Depends(get_prober),
) -> ClusterHealthOut:
    return _health_out(await prober.check_now())


@router.post("/dns/cache/flush", response_model=ClusterOperationOut)
async def flush_dns_cache(
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.flush_dns_cache(dispatcher, targets, client_factory)
    await audit_service.record_cluster_operation(
        session,
        report,
        action="flush_cache",
        resource_type="dns_cache",
        actor=actor,
        ip_address=ip_address,
    )
    return report_response(report, resource="dns_cache")


@router.get("/dns/cache", response_model=ClusterOperationOut)
async def list_dns_cache(
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.list_dns_cache(dispatcher, targets, client_factory)
    return report_response(report, resource="dns_cache")


@router.get("/dns/settings", response_model=ClusterOperationOut)
async def get_dns_settings(
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.get_dns_settings(dispatcher, targets, client_factory)
    return report_response(report, resource="dns_server")


@router.patch("/dns/settings", response_model=ClusterOperationOut)
async def update_dns_settings(
    payload: ResourceWrite,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, payload.nodes)
    try:
        report = await resource_service.update_dns_settings(
            dispatcher, targets, payload.attributes, client_factory
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await audit_service.record_cluster_operation(
        session,
        report,
        action="update_settings",
        resource_type="dns_server",
        actor=actor,
        details={"settings": resource_service.redact(payload.attributes)},
        ip_address=ip_address,
    )
    return report_response(report, resource="dns_server")


@router.get("/users/groups", response_model=ClusterOperationOut)
async def list_user_groups(
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.list_user_groups(dispatcher, targets, client_factory)
    return report_response(report, resource="user_group")


@router.get("/users/active", response_model=ClusterOperationOut)
async def list_active_users(
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.list_active_users(dispatcher, targets, client_factory)
    return report_response(report, resource="active_user")
