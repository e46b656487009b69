from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from routerfleet.errors import NodeNotFoundError, ValidationError
from routerfleet.logger import get_logger
from routerfleet.models.node import NODE_STATUS_OFFLINE, NODE_STATUS_ONLINE, Node
from routerfleet.schemas.nodes import NodeCreate, NodeUpdate
from routerfleet.services import audit as audit_service
from routerfleet.vault import Vault

_logger = get_logger("services.registry")


def _utcnow_seconds() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


async def list_nodes(session: AsyncSession, limit: int = 1000) -> List[Node]:
    result = await session.execute(select(Node).order_by(Node.name.asc()).limit(limit))
    return list(result.scalars().all())


async def list_active_nodes(session: AsyncSession) -> List[Node]:
    result = await session.execute(
        select(Node).where(Node.status != NODE_STATUS_OFFLINE).order_by(Node.name.asc())
    )
    return list(result.scalars().all())


async def get_node(session: AsyncSession, node_id: str) -> Optional[Node]:
    result = await session.execute(select(Node).where(Node.id == node_id))
    return result.scalar_one_or_none()


async def get_node_by_name(session: AsyncSession, name: str) -> Optional[Node]:
    result = await session.execute(select(Node).where(Node.name == name))
    return result.scalar_one_or_none()


async def get_node_by_address(session: AsyncSession, host: str, port: int) -> Optional[Node]:
    result = await session.execute(select(Node).where(Node.host == host, Node.port == port))
    return result.scalar_one_or_none()


async def resolve_targets(
    session: AsyncSession,
    node_ids: Optional[Sequence[str]] = None,
) -> List[Node]:
    """Default fan-out targets are the active nodes; explicit ids are taken as given."""
    if node_ids is None:
        return await list_active_nodes(session)

    if len(set(node_ids)) != len(node_ids):
        raise ValidationError("duplicate node ids in target selection")
    if not node_ids:
        return []

    result = await session.execute(select(Node).where(Node.id.in_(list(node_ids))))
    by_id = {node.id: node for node in result.scalars().all()}
    for node_id in node_ids:
        if node_id not in by_id:
            raise NodeNotFoundError(node_id)
    return [by_id[node_id] for node_id in node_ids]


async def create_node(
    session: AsyncSession,
    vault: Vault,
    payload: NodeCreate,
    *,
    actor: str = "system",
) -> Node:
    async with _logger.operation("node.create", "Creating node", node_name=payload.name, host=payload.host) as op:
        node = Node(
            id=payload.id or uuid4().hex,
            name=payload.name,
            host=payload.host,
            port=payload.port,
            use_tls=payload.use_tls,
            verify_tls=payload.verify_tls,
            username_encrypted=vault.encrypt(payload.username),
            password_encrypted=vault.encrypt(payload.password),
            status=NODE_STATUS_OFFLINE,
        )
        session.add(node)
        op.step("credentials.encrypt", "Encrypted node credentials")
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            await audit_service.log_failure(
                session,
                "create",
                "node",
                "duplicate node name or address",
                actor=actor,
                details={"attempted_name": payload.name, "host": payload.host},
            )
            raise ValidationError("node name or host:port already exists") from exc

        await audit_service.log_success(
            session,
            "create",
            "node",
            actor=actor,
            resource_id=node.id,
            details={"node_name": node.name, "host": node.host},
            commit=False,
        )
        await session.commit()
        await session.refresh(node)
        op.step("db.commit", "Committed node create", node_id=node.id)
        return node


async def update_node(
    session: AsyncSession,
    vault: Vault,
    node: Node,
    payload: NodeUpdate,
    *,
    actor: str = "system",
) -> Node:
    async with _logger.operation("node.update", "Updating node", node_id=node.id) as op:
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        for field_name in ("name", "host", "port", "use_tls", "verify_tls"):
            if field_name in changes:
                setattr(node, field_name, changes[field_name])
        # Credentials never travel in plaintext past this point.
        if "username" in changes:
            node.username_encrypted = vault.encrypt(changes["username"])
        if "password" in changes:
            node.password_encrypted = vault.encrypt(changes["password"])
        op.step("fields.apply", "Applied node changes", changes=",".join(sorted(changes)) or "none")

        node_id, node_name = node.id, node.name
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            await audit_service.log_failure(
                session,
                "update",
                "node",
                "duplicate node name or address",
                actor=actor,
                resource_id=node_id,
                details={"node_name": node_name},
            )
            raise ValidationError("node name or host:port already exists") from exc

        await audit_service.log_success(
            session,
            "update",
            "node",
            actor=actor,
            resource_id=node.id,
            details={"node_name": node.name, "changes": sorted(changes)},
            commit=False,
        )
        await session.commit()
        await session.refresh(node)
        return node


async def delete_node(session: AsyncSession, node: Node, *, actor: str = "system") -> None:
    node_id, node_name = node.id, node.name
    await session.delete(node)
    await audit_service.log_success(
        session,
        "delete",
        "node",
        actor=actor,
        resource_id=node_id,
        details={"node_name": node_name},
        commit=False,
    )
    await session.commit()
    _logger.info("registry.delete", "Deleted node", node_id=node_id, name=node_name)


async def touch_online(
    session: AsyncSession,
    node_id: str,
    *,
    seen_at: Optional[datetime] = None,
) -> None:
    stamp = (seen_at or _utcnow_seconds()).replace(microsecond=0)
    await session.execute(
        update(Node)
        .where(Node.id == node_id)
        .values(status=NODE_STATUS_ONLINE, last_seen_at=stamp)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    _logger.debug("registry.touch_online", "Marked node online", node_id=node_id)


async def set_offline(session: AsyncSession, node_id: str) -> None:
    await session.execute(
        update(Node)
        .where(Node.id == node_id)
        .values(status=NODE_STATUS_OFFLINE)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    _logger.debug("registry.set_offline", "Marked node offline", node_id=node_id)


async def cluster_stats(session: AsyncSession) -> Dict[str, int]:
    total = int((await session.execute(select(func.count(Node.id)))).scalar_one())
    active = int(
        (
            await session.execute(
                select(func.count(Node.id)).where(Node.status != NODE_STATUS_OFFLINE)
            )
        ).scalar_one()
    )
    return {
        "total_nodes": total,
        "active_nodes": active,
        "offline_nodes": total - active,
    }
