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
)
from routerfleet.errors import ValidationError
from routerfleet.logger import get_logger
from routerfleet.routeros import ClientFactory
from routerfleet.routes.resources import report_response, resolve_targets_or_http
from routerfleet.schemas.cluster import ClusterOperationOut
from routerfleet.schemas.resources import AddressAssign, KeyPairOut, ResourceWrite
from routerfleet.services import audit as audit_service
from routerfleet.services import resources as resource_service
from routerfleet.services import tunnels as tunnel_service
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.wireguard import generate_key_pair

router = APIRouter(prefix="/cluster/tunnels", tags=["tunnels"])
_logger = get_logger("api.tunnels")

PEER_RESOURCE = "wireguard_peer"


def _interface_type_or_404(kind: str) -> str:
    try:
        return tunnel_service.interface_resource_type(kind)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/wireguard/keypair", response_model=KeyPairOut)
async def generate_wireguard_keypair() -> KeyPairOut:
    pair = generate_key_pair()
    _logger.info("wireguard.keypair", "Generated wireguard key pair", public_key=pair.public_key)
    return KeyPairOut(private_key=pair.private_key, public_key=pair.public_key)


@router.get("/{interface_kind}/{name}/addresses", response_model=ClusterOperationOut)
async def list_interface_addresses(
    interface_kind: str,
    name: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    resource_type = _interface_type_or_404(interface_kind)
    targets = await resolve_targets_or_http(session, nodes)
    try:
        report = await tunnel_service.list_addresses(dispatcher, targets, name, client_factory)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return report_response(report, resource=resource_type)


@router.post("/{interface_kind}/{name}/addresses", response_model=ClusterOperationOut)
async def assign_interface_address(
    interface_kind: str,
    name: str,
    payload: AddressAssign,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    resource_type = _interface_type_or_404(interface_kind)
    targets = await resolve_targets_or_http(session, payload.nodes)
    try:
        report = await tunnel_service.assign_address(
            dispatcher, targets, name, payload.address, client_factory
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await audit_service.record_cluster_operation(
        session,
        report,
        action="assign_ip",
        resource_type=resource_type,
        actor=actor,
        resource_id=name,
        details={"address": payload.address},
        ip_address=ip_address,
    )
    return report_response(report, resource=resource_type)


@router.delete("/{interface_kind}/{name}/addresses/{address:path}", response_model=ClusterOperationOut)
async def remove_interface_address(
    interface_kind: str,
    name: str,
    address: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    resource_type = _interface_type_or_404(interface_kind)
    targets = await resolve_targets_or_http(session, nodes)
    try:
        report = await tunnel_service.remove_address(dispatcher, targets, name, address, client_factory)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await audit_service.record_cluster_operation(
        session,
        report,
        action="remove_ip",
        resource_type=resource_type,
        actor=actor,
        resource_id=name,
        details={"address": address},
        ip_address=ip_address,
    )
    return report_response(report, resource=resource_type)


@router.get("/wireguard/{name}/peers", response_model=ClusterOperationOut)
async def list_wireguard_peers(
    name: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    try:
        report = await tunnel_service.list_peers(dispatcher, targets, name, client_factory)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return report_response(report, resource=PEER_RESOURCE)


@router.post("/wireguard/{name}/peers", response_model=ClusterOperationOut)
async def create_wireguard_peer(
    name: str,
    payload: ResourceWrite,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, payload.nodes)
    try:
        report = await tunnel_service.create_peer(dispatcher, targets, name, payload.attributes, client_factory)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await audit_service.record_cluster_operation(
        session,
        report,
        action="create",
        resource_type=PEER_RESOURCE,
        actor=actor,
        resource_id=str(payload.attributes.get("public-key")),
        details={"interface": name, "attributes": resource_service.redact(payload.attributes)},
        ip_address=ip_address,
    )
    return report_response(report, resource=PEER_RESOURCE)


@router.delete("/wireguard/{name}/peers/{public_key:path}", response_model=ClusterOperationOut)
async def delete_wireguard_peer(
    name: str,
    public_key: str,
    nodes: Optional[List[str]] = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
    actor: str = Depends(get_actor),
    ip_address: Optional[str] = Depends(get_client_ip),
) -> JSONResponse:
    targets = await resolve_targets_or_http(session, nodes)
    try:
        report = await tunnel_service.delete_peer(dispatcher, targets, name, public_key, client_factory)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    await audit_service.record_cluster_operation(
        session,
        report,
        action="delete",
        resource_type=PEER_RESOURCE,
        actor=actor,
        resource_id=public_key,
        details={"interface": name},
        ip_address=ip_address,
    )
    return report_response(report, resource=PEER_RESOURCE)
