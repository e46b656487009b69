from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.dependencies import (
    get_actor,
    get_client_factory,
    get_client_ip,
    get_db_session,
    get_dispatcher,
)
from routerfleet.errors import NodeNotFoundError, ValidationError
from routerfleet.models.node import Node
from routerfleet.routeros import ClientFactory
from routerfleet.schemas.cluster import ClusterOperationOut
from routerfleet.schemas.resources import ResourceWrite
from routerfleet.services import audit as audit_service
from routerfleet.services import registry as registry_service
from routerfleet.services import resources as resource_service
from routerfleet.services.dispatcher import ClusterDispatcher, ClusterOperationReport, ReportOutcome

router = APIRouter(prefix="/cluster/resources", tags=["resources"])

_STATUS_BY_OUTCOME = {
    ReportOutcome.EMPTY: 200,
    ReportOutcome.SUCCESS: 200,
    ReportOutcome.PARTIAL: 207,
    ReportOutcome.FAILURE: 502,
}


def report_status_code(report: ClusterOperationReport) -> int:
    if not report.degraded:
        return 200
    return _STATUS_BY_OUTCOME[report.outcome]


def report_response(report: ClusterOperationReport, *, resource: str) -> JSONResponse:
    body = ClusterOperationOut.from_report(report, resource=resource)
    return JSONResponse(status_code=report_status_code(report), content=body.model_dump(mode="json"))


async def resolve_targets_or_http(session: AsyncSession, node_ids: Optional[List[str]]) -> List[Node]:
    try:
        return await registry_service.resolve_targets(session, node_ids)
    except NodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _kind_or_404(kind: str) -> resource_service.ResourceKind:
    try:
        return resource_service.get_kind(kind)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def _audit_write(
    session: AsyncSession,
    report: ClusterOperationReport,
    *,
    action: str,
    kind: resource_service.ResourceKind,
    name: Optional[str],
    attrs: Optional[Dict[str, Any]],
    actor: str,
    ip_address: Optional[str],
) -> None:
    details: Dict[str, Any] = {"kind": kind.name}
    if attrs is not None:
        details["attributes"] = resource_service.redact(attrs)
    await audit_service.record_cluster_operation(
        session,
        report,
        action=action,
        resource_type=kind.name,
        actor=actor,
        resource_id=name,
        details=details,
        ip_address=ip_address,
    )


@router.get("/{kind}", response_model=ClusterOperationOut)
async def list_resources(
    kind: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    resource_kind = _kind_or_404(kind)
    targets = await resolve_targets_or_http(session, nodes)
    report = await resource_service.list_resources(dispatcher, targets, resource_kind, client_factory)
    return report_response(report, resource=resource_kind.name)


@router.post("/{kind}", response_model=ClusterOperationOut)
async def create_resource(
    kind: str,
    payload: ResourceWrite,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    resource_kind = _kind_or_404(kind)
    targets = await resolve_targets_or_http(session, payload.nodes)
    try:
        report = await resource_service.create_resource(
            dispatcher, targets, resource_kind, payload.attributes, client_factory
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await _audit_write(
        session,
        report,
        action="create",
        kind=resource_kind,
        name=str(payload.attributes.get(resource_kind.key_field) or "") or None,
        attrs=payload.attributes,
        actor=actor,
        ip_address=ip_address,
    )
    return report_response(report, resource=resource_kind.name)


@router.patch("/{kind}/{name}", response_model=ClusterOperationOut)
async def update_resource(
    kind: str,
    name: str,
    payload: ResourceWrite,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    resource_kind = _kind_or_404(kind)
    targets = await resolve_targets_or_http(session, payload.nodes)
    try:
        report = await resource_service.update_resource(
            dispatcher, targets, resource_kind, name, payload.attributes, client_factory
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await _audit_write(
        session,
        report,
        action="update",
        kind=resource_kind,
        name=name,
        attrs=payload.attributes,
        actor=actor,
        ip_address=ip_address,
    )
    return report_response(report, resource=resource_kind.name)


@router.delete("/{kind}/{name}", response_model=ClusterOperationOut)
async def delete_resource(
    kind: str,
    name: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    resource_kind = _kind_or_404(kind)
    targets = await resolve_targets_or_http(session, nodes)
    try:
        report = await resource_service.delete_resource(
            dispatcher, targets, resource_kind, name, client_factory
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await _audit_write(
        session,
        report,
        action="delete",
        kind=resource_kind,
        name=name,
        attrs=None,
        actor=actor,
        ip_address=ip_address,
    )
    return report_response(report, resource=resource_kind.name)
