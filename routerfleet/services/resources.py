"""Cluster-wide CRUD for RouterOS resources.

Each resource kind is just a REST path plus its key field; every operation is a
closure over the client factory handed to the one dispatcher. Nothing is cached
locally: reads always go to the nodes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from routerfleet.errors import ValidationError
from routerfleet.logger import get_logger
from routerfleet.routeros import ClientFactory
from routerfleet.services.dispatcher import (
    ClusterDispatcher,
    ClusterOperationReport,
    DispatchProfile,
    NodeSession,
    Operation,
    TargetLike,
)
from routerfleet.wireguard import generate_private_key

_logger = get_logger("services.resources")

_SECRET_MARKERS = ("password", "private-key", "preshared-key", "secret")

DNS_SETTINGS_PATH = "/ip/dns"
DNS_CACHE_PATH = "/ip/dns/cache"
USER_GROUPS_PATH = "/user/group"
ACTIVE_USERS_PATH = "/user/active"


@dataclass(frozen=True)
class ResourceKind:
    name: str
    path: str
    key_field: str = "name"
    required: tuple[str, ...] = ("name",)
    # Attributes filled in once per cluster write when the caller leaves them out.
    generated: tuple[tuple[str, Callable[[], str]], ...] = ()


RESOURCE_KINDS: Dict[str, ResourceKind] = {
    kind.name: kind
    for kind in (
        ResourceKind("dns_record", "/ip/dns/static"),
        ResourceKind(
            "wireguard_interface",
            "/interface/wireguard",
            generated=(("private-key", generate_private_key),),
        ),
        ResourceKind("gre_interface", "/interface/gre", required=("name", "remote-address")),
        ResourceKind("routeros_user", "/user", required=("name", "password")),
    )
}


def get_kind(name: str) -> ResourceKind:
    kind = RESOURCE_KINDS.get(name)
    if kind is None:
        raise ValidationError(f"unknown resource type: {name}")
    return kind


def clean_attributes(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop blank values; RouterOS rejects empty strings for most properties."""
    cleaned: Dict[str, Any] = {}
    for key, value in attrs.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("attribute names must be non-empty strings")
        if value is None or value == "":
            continue
        cleaned[key.strip()] = value
    return cleaned


def redact(attrs: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: "***" if any(marker in key.lower() for marker in _SECRET_MARKERS) else value
        for key, value in attrs.items()
    }


def _require_name(name: str) -> str:
    value = name.strip()
    if not value:
        raise ValidationError("resource name must not be empty")
    return value


def list_operation(kind: ResourceKind, client_factory: ClientFactory) -> Operation:
    return _read_operation(kind.path, client_factory)


def create_operation(kind: ResourceKind, attrs: Dict[str, Any], client_factory: ClientFactory) -> Operation:
    async def _create(node: NodeSession) -> Any:
        return await client_factory(node).add_item(kind.path, attrs)

    return _create


def update_by_name_operation(
    kind: ResourceKind,
    name: str,
    attrs: Dict[str, Any],
    client_factory: ClientFactory,
) -> Operation:
    async def _update(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await client.list_items(kind.path)
        existing = next((item for item in items if item.get(kind.key_field) == name), None)
        if existing is None:
            # Nodes missing the resource get it created, so the cluster converges on one shape.
            created = await client.add_item(kind.path, {kind.key_field: name, **attrs})
            return {"action": "created", "item": created}
        updated = await client.update_item(kind.path, str(existing.get(".id", "")), attrs)
        return {"action": "updated", "item": updated}

    return _update


def delete_by_name_operation(kind: ResourceKind, name: str, client_factory: ClientFactory) -> Operation:
    async def _delete(node: NodeSession) -> Any:
        client = client_factory(node)
        items = await client.list_items(kind.path)
        existing = next((item for item in items if item.get(kind.key_field) == name), None)
        if existing is None:
            return {"action": "not_found"}
        await client.delete_item(kind.path, str(existing.get(".id", "")))
        return {"action": "deleted"}

    return _delete


async def list_resources(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    kind: ResourceKind,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    return await dispatcher.dispatch(
        targets,
        list_operation(kind, client_factory),
        name=f"{kind.name}.list",
        profile=DispatchProfile.READ,
    )


async def create_resource(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    kind: ResourceKind,
    attrs: Mapping[str, Any],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    cleaned = clean_attributes(attrs)
    missing = [field_name for field_name in kind.required if field_name not in cleaned]
    if missing:
        raise ValidationError(f"missing required attributes: {', '.join(missing)}")
    for attribute, make in kind.generated:
        if attribute not in cleaned:
            cleaned[attribute] = make()
    _logger.info(
        "resources.create",
        "Creating resource across nodes",
        kind=kind.name,
        name=str(cleaned.get(kind.key_field, "")),
        nodes=len(targets),
    )
    return await dispatcher.dispatch(
        targets,
        create_operation(kind, cleaned, client_factory),
        name=f"{kind.name}.create",
        profile=DispatchProfile.WRITE,
    )


async def update_resource(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    kind: ResourceKind,
    name: str,
    attrs: Mapping[str, Any],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    resource_name = _require_name(name)
    cleaned = clean_attributes(attrs)
    if not cleaned:
        raise ValidationError("no attributes to update")
    return await dispatcher.dispatch(
        targets,
        update_by_name_operation(kind, resource_name, cleaned, client_factory),
        name=f"{kind.name}.update",
        profile=DispatchProfile.WRITE,
    )


async def delete_resource(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    kind: ResourceKind,
    name: str,
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    resource_name = _require_name(name)
    return await dispatcher.dispatch(
        targets,
        delete_by_name_operation(kind, resource_name, client_factory),
        name=f"{kind.name}.delete",
        profile=DispatchProfile.WRITE,
    )


async def flush_dns_cache(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    client_factory: ClientFactory,
    *,
    timeout: Optional[float] = None,
) -> ClusterOperationReport:
    async def _flush(node: NodeSession) -> Any:
        await client_factory(node).flush_dns_cache()
        return {"action": "flushed"}

    return await dispatcher.dispatch(
        targets,
        _flush,
        name="dns_cache.flush",
        timeout=timeout,
        profile=DispatchProfile.WRITE,
    )


def _read_operation(path: str, client_factory: ClientFactory) -> Operation:
    async def _read(node: NodeSession) -> Any:
        return await client_factory(node).list_items(path)

    return _read


async def _read_menu(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    path: str,
    client_factory: ClientFactory,
    *,
    name: str,
) -> ClusterOperationReport:
    return await dispatcher.dispatch(
        targets,
        _read_operation(path, client_factory),
        name=name,
        profile=DispatchProfile.READ,
    )


async def list_dns_cache(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    return await _read_menu(dispatcher, targets, DNS_CACHE_PATH, client_factory, name="dns_cache.list")


async def list_user_groups(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    return await _read_menu(dispatcher, targets, USER_GROUPS_PATH, client_factory, name="user_group.list")


async def list_active_users(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    return await _read_menu(dispatcher, targets, ACTIVE_USERS_PATH, client_factory, name="active_user.list")


async def get_dns_settings(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    async def _get(node: NodeSession) -> Any:
        return await client_factory(node).get_settings(DNS_SETTINGS_PATH)

    return await dispatcher.dispatch(targets, _get, name="dns_settings.get", profile=DispatchProfile.READ)


async def update_dns_settings(
    dispatcher: ClusterDispatcher,
    targets: Sequence[TargetLike],
    attrs: Mapping[str, Any],
    client_factory: ClientFactory,
) -> ClusterOperationReport:
    """Apply server settings to every target and return what each node now reports."""
    cleaned = clean_attributes(attrs)
    if not cleaned:
        raise ValidationError("no dns settings to update")

    async def _update(node: NodeSession) -> Any:
        client = client_factory(node)
        await client.set_settings(DNS_SETTINGS_PATH, cleaned)
        return await client.get_settings(DNS_SETTINGS_PATH)

    _logger.info("dns.settings", "Updating dns settings across nodes", keys=",".join(sorted(cleaned)))
    return await dispatcher.dispatch(targets, _update, name="dns_settings.update", profile=DispatchProfile.WRITE)
