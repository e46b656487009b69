from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.dependencies import (
    get_actor,
    get_client_factory,
    get_db_session,
    get_dispatcher,
    get_vault,
)
from routerfleet.models.node import Node
from routerfleet.routeros import ClientFactory
from routerfleet.schemas.nodes import ConnectionTestOut, NodeCreate, NodeOut, NodeUpdate
from routerfleet.services import health as health_service
from routerfleet.services import registry as registry_service
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.vault import Vault

router = APIRouter(prefix="/nodes", tags=["nodes"])


async def _require_node(session: AsyncSession, node_id: str) -> Node:
    node = await registry_service.get_node(session, node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    return node


@router.get("", response_model=List[NodeOut])
async def list_nodes(
    session: AsyncSession = Depends(get_db_session),
) -> List[NodeOut]:
    nodes = await registry_service.list_nodes(session)
    return [NodeOut.model_validate(node) for node in nodes]


@router.get("/{node_id}", response_model=NodeOut)
async def get_node(
    node_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> NodeOut:
    node = await _require_node(session, node_id)
    return NodeOut.model_validate(node)


@router.post("", response_model=NodeOut, status_code=status.HTTP_201_CREATED)
async def create_node(
    payload: NodeCreate,
    session: AsyncSession = Depends(get_db_session),
    vault: Vault = Depends(get_vault),
    actor: str = Depends(get_actor),
) -> NodeOut:
    if payload.id and await registry_service.get_node(session, payload.id):
        raise HTTPException(status_code=409, detail="Node id already exists")
    if await registry_service.get_node_by_name(session, payload.name):
        raise HTTPException(status_code=409, detail="Node name already exists")
    if await registry_service.get_node_by_address(session, payload.host, payload.port):
        raise HTTPException(status_code=409, detail="Node host:port already registered")
    node = await registry_service.create_node(session, vault, payload, actor=actor)
    return NodeOut.model_validate(node)


@router.patch("/{node_id}", response_model=NodeOut)
async def update_node(
    node_id: str,
    payload: NodeUpdate,
    session: AsyncSession = Depends(get_db_session),
    vault: Vault = Depends(get_vault),
    actor: str = Depends(get_actor),
) -> NodeOut:
    node = await _require_node(session, node_id)
    if payload.name and payload.name != node.name:
        if await registry_service.get_node_by_name(session, payload.name):
            raise HTTPException(status_code=409, detail="Node name already exists")
    host = payload.host or node.host
    port = payload.port or node.port
    if (host, port) != (node.host, node.port):
        if await registry_service.get_node_by_address(session, host, port):
            raise HTTPException(status_code=409, detail="Node host:port already registered")
    updated = await registry_service.update_node(session, vault, node, payload, actor=actor)
    return NodeOut.model_validate(updated)


@router.delete("/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(
    node_id: str,
    session: AsyncSession = Depends(get_db_session),
    actor: str = Depends(get_actor),
) -> Response:
    node = await _require_node(session, node_id)
    await registry_service.delete_node(session, node, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{node_id}/test", response_model=ConnectionTestOut)
async def test_node_connection(
    node_id: str,
    session: AsyncSession = Depends(get_db_session),
    dispatcher: ClusterDispatcher = Depends(get_dispatcher),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> ConnectionTestOut:
    node = await _require_node(session, node_id)
    ok, detail = await health_service.check_connection(
        session,
        dispatcher,
        node,
        health_service.make_probe(client_factory),
    )
    return ConnectionTestOut(node_id=node.id, ok=ok, status=node.status, detail=detail)
