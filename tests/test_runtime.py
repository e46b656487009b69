from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from routerfleet.config import Settings
from routerfleet.models import AuditLog
from routerfleet.runtime import RuntimeController
from routerfleet.services import audit as audit_service
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.services.health import HealthProber, make_probe


def _settings(database_url: str, **overrides) -> Settings:
    values = {
        "database_url": database_url,
        "log_file": "",
        "health_check_initial_delay_seconds": 0,
        "health_check_interval_seconds": 60,
        "audit_retention_days": 0,
    }
    values.update(overrides)
    return Settings(**values)


async def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.02)
    return False


@pytest.mark.asyncio
async def test_health_loop_runs_first_cycle_after_initial_delay(
    sessionmaker, session, database_url: str, vault, fleet, make_node
) -> None:
    await make_node(session, "alpha")
    prober = HealthProber(sessionmaker, ClusterDispatcher(vault, timeout_seconds=1.0), make_probe(fleet))
    runtime = RuntimeController(_settings(database_url), sessionmaker, prober)

    await runtime.start()
    try:
        async def _checked() -> bool:
            return prober.last_summary.checked_at is not None

        assert await _wait_for(_checked)
        assert runtime.running
    finally:
        await runtime.stop()

    assert not runtime.running
    assert prober.last_summary.healthy == 1


@pytest.mark.asyncio
async def test_disabled_health_loop_never_probes(sessionmaker, database_url: str, vault, fleet) -> None:
    prober = HealthProber(sessionmaker, ClusterDispatcher(vault), make_probe(fleet))
    runtime = RuntimeController(
        _settings(database_url, health_check_enabled=False), sessionmaker, prober
    )

    await runtime.start()
    await asyncio.sleep(0.05)
    await runtime.stop()

    assert prober.last_summary.checked_at is None


@pytest.mark.asyncio
async def test_prune_loop_removes_expired_audit_entries(
    sessionmaker, session, database_url: str, vault, fleet
) -> None:
    session.add(
        AuditLog(
            id="expired",
            actor="system",
            action="create",
            resource_type="node",
            success=True,
            outcome="success",
            details={},
            created_at=datetime.now(timezone.utc) - timedelta(days=200),
        )
    )
    await session.commit()
    prober = HealthProber(sessionmaker, ClusterDispatcher(vault), make_probe(fleet))
    runtime = RuntimeController(
        _settings(database_url, health_check_enabled=False, audit_retention_days=90),
        sessionmaker,
        prober,
    )

    await runtime.start()
    try:
        async def _pruned() -> bool:
            async with sessionmaker() as fresh:
                return await audit_service.count_logs(fresh) == 0

        assert await _wait_for(_pruned)
    finally:
        await runtime.stop()
