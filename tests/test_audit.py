from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from routerfleet.models import AuditLog
from routerfleet.services import audit as audit_service
from routerfleet.services.dispatcher import (
    ClusterOperationReport,
    DispatchProfile,
    NodeFailure,
    NodeSuccess,
    NodeTarget,
    ReportOutcome,
)

ALPHA = NodeTarget(id="n-alpha", name="alpha", host="10.0.0.1")
BRAVO = NodeTarget(id="n-bravo", name="bravo", host="10.0.0.2")


def _report(successes=(), failures=()) -> ClusterOperationReport:
    return ClusterOperationReport(
        operation="dns_record.create",
        profile=DispatchProfile.WRITE,
        successes=tuple(successes),
        failures=tuple(failures),
    )


def test_all_success_record() -> None:
    entry = audit_service.build_audit_record(
        _report(successes=[NodeSuccess(ALPHA, {"x": 1}), NodeSuccess(BRAVO)]),
        action="create",
        resource_type="dns_record",
        actor="ops",
        resource_id="www.lan",
    )

    assert entry.success is True
    assert entry.outcome == ReportOutcome.SUCCESS
    assert entry.details["counts"] == {"total": 2, "successes": 2, "failures": 0}
    assert entry.details["nodes"] == [
        {"node_id": "n-alpha", "node_name": "alpha", "ok": True},
        {"node_id": "n-bravo", "node_name": "bravo", "ok": True},
    ]


def test_partial_record_names_failed_nodes() -> None:
    entry = audit_service.build_audit_record(
        _report(
            successes=[NodeSuccess(ALPHA)],
            failures=[NodeFailure(BRAVO, "timeout", "timeout")],
        ),
        action="create",
        resource_type="dns_record",
        details={"kind": "dns_record"},
    )

    assert entry.success is False
    assert entry.outcome == ReportOutcome.PARTIAL
    assert entry.actor == "system"
    assert entry.details["kind"] == "dns_record"
    assert entry.details["operation"] == "dns_record.create"
    assert entry.details["profile"] == "write"
    assert entry.details["nodes"][1] == {
        "node_id": "n-bravo",
        "node_name": "bravo",
        "ok": False,
        "kind": "timeout",
        "reason": "timeout",
    }


def test_total_failure_and_empty_records() -> None:
    failed = audit_service.build_audit_record(
        _report(failures=[NodeFailure(ALPHA, "credential", "decryption_failed")]),
        action="delete",
        resource_type="routeros_user",
    )
    empty = audit_service.build_audit_record(_report(), action="delete", resource_type="routeros_user")

    assert (failed.outcome, failed.success) == (ReportOutcome.FAILURE, False)
    assert (empty.outcome, empty.success) == (ReportOutcome.EMPTY, True)
    assert empty.details["nodes"] == []


@pytest.mark.asyncio
async def test_record_cluster_operation_persists_and_filters(session) -> None:
    await audit_service.record_cluster_operation(
        session,
        _report(successes=[NodeSuccess(ALPHA)], failures=[NodeFailure(BRAVO, "connectivity", "http_500")]),
        action="create",
        resource_type="dns_record",
        actor="ops",
        ip_address="127.0.0.1",
    )
    await audit_service.log_success(session, "create", "node", actor="admin")
    await audit_service.log_failure(session, "update", "node", "duplicate", actor="admin")

    partial = await audit_service.list_logs(session, resource_type="dns_record")
    failures = await audit_service.list_logs(session, success=False)
    by_admin = await audit_service.list_logs(session, actor="admin")

    assert len(partial) == 1
    assert partial[0].outcome == ReportOutcome.PARTIAL
    assert partial[0].ip_address == "127.0.0.1"
    assert partial[0].details["counts"]["failures"] == 1
    assert {entry.action for entry in failures} == {"create", "update"}
    assert len(by_admin) == 2
    assert await audit_service.get_stats(session) == {"total": 3, "today": 3, "failures": 2}


@pytest.mark.asyncio
async def test_list_logs_paginates_newest_first(session) -> None:
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    for index in range(5):
        session.add(
            AuditLog(
                id=f"log-{index}",
                actor="system",
                action="create",
                resource_type="node",
                success=True,
                outcome="success",
                details={},
                created_at=base + timedelta(minutes=index),
            )
        )
    await session.commit()

    first_page = await audit_service.list_logs(session, limit=2)
    second_page = await audit_service.list_logs(session, limit=2, offset=2)

    assert [entry.id for entry in first_page] == ["log-4", "log-3"]
    assert [entry.id for entry in second_page] == ["log-2", "log-1"]


@pytest.mark.asyncio
async def test_prune_removes_only_entries_past_retention(session) -> None:
    now = datetime.now(timezone.utc)
    for index, age_days in enumerate((120, 91, 30, 0)):
        session.add(
            AuditLog(
                id=f"log-{index}",
                actor="system",
                action="create",
                resource_type="node",
                success=True,
                outcome="success",
                details={},
                created_at=now - timedelta(days=age_days),
            )
        )
    await session.commit()

    assert await audit_service.prune_old_logs(session, retention_days=0) == 0
    deleted = await audit_service.prune_old_logs(session, retention_days=90)

    assert deleted == 2
    remaining = await audit_service.list_logs(session)
    assert sorted(entry.id for entry in remaining) == ["log-2", "log-3"]
