from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from routerfleet.logger import get_logger
from routerfleet.models.node import Node
from routerfleet.routeros import ClientFactory
from routerfleet.services import registry as registry_service
from routerfleet.services.dispatcher import (
    ClusterDispatcher,
    ClusterOperationReport,
    DispatchProfile,
    NodeSession,
    NodeTarget,
    Operation,
)

_logger = get_logger("services.health")

_INT_FIELDS = {
    "cpu_load": "cpu-load",
    "free_memory": "free-memory",
    "total_memory": "total-memory",
    "free_hdd": "free-hdd-space",
    "total_hdd": "total-hdd-space",
    "cpu_count": "cpu-count",
}
_TEXT_FIELDS = {
    "uptime": "uptime",
    "version": "version",
    "board_name": "board-name",
    "architecture": "architecture-name",
    "cpu": "cpu",
}


def _parse_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    text = str(value).strip()
    digits = ""
    for index, char in enumerate(text):
        if char.isdigit() or (index == 0 and char == "-"):
            digits += char
            continue
        break
    try:
        return int(digits)
    except ValueError:
        return 0


def parse_resources(resources: Mapping[str, Any]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {key: _parse_int(resources.get(raw)) for key, raw in _INT_FIELDS.items()}
    for key, raw in _TEXT_FIELDS.items():
        value = resources.get(raw)
        parsed[key] = str(value) if value is not None else None
    return parsed


def make_probe(client_factory: ClientFactory) -> Operation:
    """Identity + resource fetch, the operation every health cycle dispatches."""

    async def _probe(node: NodeSession) -> Dict[str, Any]:
        client = client_factory(node)
        resources = parse_resources(await client.system_resource())
        identity = await client.system_identity()
        resources["identity"] = identity.get("name")
        return resources

    return _probe


@dataclass(frozen=True)
class NodeHealth:
    node_id: str
    node_name: str
    online: bool
    resources: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ClusterHealthSummary:
    checked_at: Optional[datetime] = None
    nodes: tuple[NodeHealth, ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return len(self.nodes)

    @property
    def healthy(self) -> int:
        return sum(1 for item in self.nodes if item.online)

    @property
    def unhealthy(self) -> int:
        return self.total - self.healthy

    @classmethod
    def from_report(cls, report: ClusterOperationReport, checked_at: datetime) -> "ClusterHealthSummary":
        entries = [
            NodeHealth(
                node_id=item.node.id,
                node_name=item.node.name,
                online=True,
                resources=item.result if isinstance(item.result, dict) else None,
            )
            for item in report.successes
        ]
        entries.extend(
            NodeHealth(
                node_id=item.node.id,
                node_name=item.node.name,
                online=False,
                error_kind=item.kind,
                error=item.reason,
            )
            for item in report.failures
        )
        entries.sort(key=lambda entry: entry.node_name)
        return cls(checked_at=checked_at, nodes=tuple(entries))


class HealthProber:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        dispatcher: ClusterDispatcher,
        probe: Operation,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._dispatcher = dispatcher
        self._probe = probe
        self._timeout_seconds = timeout_seconds
        self._last_summary = ClusterHealthSummary()
        self._cycle_lock = asyncio.Lock()

    @property
    def last_summary(self) -> ClusterHealthSummary:
        return self._last_summary

    async def run_once(self) -> ClusterHealthSummary:
        async with self._cycle_lock:
            # Every node is probed, offline ones included, so they can recover.
            async with self._sessionmaker() as session:
                targets = [NodeTarget.from_node(node) for node in await registry_service.list_nodes(session)]
            _logger.debug("health.cycle", "Probing nodes", nodes=len(targets))

            report = await self._dispatcher.dispatch(
                targets,
                self._probe,
                name="health.probe",
                timeout=self._timeout_seconds,
                profile=DispatchProfile.READ,
            )
            seen_at = datetime.now(timezone.utc).replace(microsecond=0)

            async with self._sessionmaker() as session:
                for success in report.successes:
                    await registry_service.touch_online(session, success.node.id, seen_at=seen_at)
                for failure in report.failures:
                    await registry_service.set_offline(session, failure.node.id)

            summary = ClusterHealthSummary.from_report(report, seen_at)
            self._last_summary = summary
            if summary.unhealthy:
                _logger.info(
                    "health.summary",
                    "Health cycle found unreachable nodes",
                    healthy=summary.healthy,
                    unhealthy=summary.unhealthy,
                    offline=",".join(item.node_name for item in summary.nodes if not item.online),
                )
            else:
                _logger.debug("health.summary", "Health cycle complete", healthy=summary.healthy)
            return summary

    async def check_now(self) -> ClusterHealthSummary:
        _logger.info("health.check_now", "Running on-demand health check")
        return await self.run_once()


async def check_connection(
    session: AsyncSession,
    dispatcher: ClusterDispatcher,
    node: Node,
    probe: Operation,
) -> tuple[bool, str]:
    report = await dispatcher.dispatch([node], probe, name="node.test_connection")
    if report.successes:
        await registry_service.touch_online(session, node.id)
        await session.refresh(node)
        return True, "Connection successful"
    failure = report.failures[0]
    return False, f"Connection failed: {failure.kind}: {failure.reason}"
