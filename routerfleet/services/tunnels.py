"""Tunnel plumbing shared by GRE and WireGuard interfaces.

Addresses live in ``/ip/address`` keyed by interface name and peers in
``/interface/wireguard/peers`` keyed by public key. Writes converge: assigning
an address or adding a peer that is already present leaves the node as is, and
removing something absent counts as success.
"""

from __future__ import annotations

import ipaddress
from typing import Any, Dict, List, Mapping, Sequence

from routerfleet.errors import ValidationError
from routerfleet.logger import get_logger
from routerfleet.routeros import ClientFactory, RouterOSClient
from routerfleet.services.dispatcher import (
    ClusterDispatcher,
    ClusterOperationReport,
    DispatchProfile,
    NodeSession,
    TargetLike,
)
from routerfleet.services.resources import clean_attributes
from routerfleet.wireguard import decode_key

_logger = get_logger("services.tunnels")

ADDRESS_PATH = "/ip/address"
PEERS_PATH = "/interface/wireguard/peers"

INTERFACE_KINDS: Dict[str, str] = {
    "wireguard": "wireguard_interface",
    "gre": "gre_interface",
}


def interface_resource_type(kind: str) -> str:
    resource_type = INTERFACE_KINDS.get(kind)
    if resource_type is None:
        raise ValidationError(f"unknown interface type: {kind}")
    return resource_type


def normalize_address(address: str) -> str:
    """``10.0.0.1`` becomes ``10.0.0.1/32``; RouterOS stores the prefix form."""
    try:
        return ipaddress.ip_interface(address.strip()).with_prefixlen
    except ValueError as exc:
        raise ValidationError(f"invalid interface address: {address}") from exc


def _require_interface(name: str) -> str:
    value = name.strip()
    if not value:
        raise ValidationError("interface name must not be empty")
    return value


def _public_key(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("peer public-key is required")
    decode_key(value)
    return value.strip()


def _same_address(item: Mapping[str, Any], address: str) -> bool:
    raw = item.get("address")
    if not isinstance(raw, str):
        return False
    try:
        return normalize_address(raw) == address
    except ValidationError:
        return False


async def _interface_items(client: RouterOSClient, path: str, interface: str) -> List[Dict[str, Any]]:
    items = await client.list_items(path, params={"interface": interface})
    return [item for item in items if item.get("interface") == interface]


async def list_addresses(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)

    async def _list(node: NodeSession) -> Any:
        return await _interface_items(client_factory(node), ADDRESS_PATH, name)

    return await dispatcher.dispatch(targets, _list, name="interface_address.list", profile=DispatchProfile.READ)


async def assign_address(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    address: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)
    normalized = normalize_address(address)

    async def _assign(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await _interface_items(client, ADDRESS_PATH, name)
        if any(_same_address(item, normalized) for item in items):
            return {"action": "exists", "address": normalized}
        created = await client.add_item(ADDRESS_PATH, {"address": normalized, "interface": name})
        return {"action": "assigned", "item": created}

    _logger.info("tunnels.assign_ip", "Assigning interface address", interface=name, address=normalized)
    return await dispatcher.dispatch(
        targets, _assign, name="interface_address.assign", profile=DispatchProfile.WRITE
    )


async def remove_address(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    address: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)
    normalized = normalize_address(address)

    async def _remove(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await _interface_items(client, ADDRESS_PATH, name)
        existing = next((item for item in items if _same_address(item, normalized)), None)
        if existing is None:
            return {"action": "not_found"}
        await client.delete_item(ADDRESS_PATH, str(existing.get(".id", "")))
        return {"action": "removed"}

    return await dispatcher.dispatch(
        targets, _remove, name="interface_address.remove", profile=DispatchProfile.WRITE
    )


async def list_peers(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)

    async def _list(node: NodeSession) -> Any:
        return await _interface_items(client_factory(node), PEERS_PATH, name)

    return await dispatcher.dispatch(targets, _list, name="wireguard_peer.list", profile=DispatchProfile.READ)


async def create_peer(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    attrs: Mapping[str, Any],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)
    cleaned = clean_attributes(attrs)
    public_key = _public_key(cleaned.get("public-key"))
    peer = {**cleaned, "public-key": public_key, "interface": name}

    async def _create(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await _interface_items(client, PEERS_PATH, name)
        existing = next((item for item in items if item.get("public-key") == public_key), None)
        if existing is None:
            created = await client.add_item(PEERS_PATH, peer)
            return {"action": "created", "item": created}
        changes = {key: value for key, value in peer.items() if key not in ("public-key", "interface")}
        if not changes:
            return {"action": "exists", "item": existing}
        updated = await client.update_item(PEERS_PATH, str(existing.get(".id", "")), changes)
        return {"action": "updated", "item": updated}

    _logger.info("tunnels.peer_create", "Adding wireguard peer", interface=name, public_key=public_key)
    return await dispatcher.dispatch(targets, _create, name="wireguard_peer.create", profile=DispatchProfile.WRITE)


async def delete_peer(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    interface: str,
    public_key: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    name = _require_interface(interface)
    key = _public_key(public_key)

    async def _delete(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await _interface_items(client, PEERS_PATH, name)
        existing = next((item for item in items if item.get("public-key") == key), None)
        if existing is None:
            return {"action": "not_found"}
        await client.delete_item(PEERS_PATH, str(existing.get(".id", "")))
        return {"action": "deleted"}

    return await dispatcher.dispatch(
        targets,
        _delete,
        name="wireguard_peer.delete",
        profile=DispatchProfile.WRITE,
    )
