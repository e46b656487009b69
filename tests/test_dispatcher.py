from __future__ import annotations

import asyncio
import base64
from time import perf_counter

import pytest

from routerfleet.errors import ConnectivityError, ValidationError
from routerfleet.services.dispatcher import (
    ClusterDispatcher,
    DispatchProfile,
    FailureKind,
    NodeSession,
    NodeTarget,
    ReportOutcome,
)
from routerfleet.vault import Vault


def _targets(vault: Vault, count: int) -> list[NodeTarget]:
    return [
        NodeTarget(
            id=f"n{index}",
            name=f"router-{index:02d}",
            host=f"10.1.0.{index}",
            username_encrypted=vault.encrypt("admin"),
            password_encrypted=vault.encrypt(f"pw-{index}"),
        )
        for index in range(count)
    ]


async def _echo(node: NodeSession) -> dict:
    return {"node": node.target.id, "user": node.username}


@pytest.mark.asyncio
async def test_empty_target_list_returns_empty_report(vault: Vault) -> None:
    called = False

    async def _never(node: NodeSession) -> None:
        nonlocal called
        called = True

    report = await ClusterDispatcher(vault).dispatch([], _never, name="noop")

    assert report.successes == () and report.failures == ()
    assert report.outcome == ReportOutcome.EMPTY
    assert not called


@pytest.mark.asyncio
async def test_single_node_success_carries_result(vault: Vault) -> None:
    [target] = _targets(vault, 1)
    report = await ClusterDispatcher(vault).dispatch([target], _echo, name="echo")

    assert report.outcome == ReportOutcome.SUCCESS
    assert report.successes[0].node == target
    assert report.successes[0].result == {"node": "n0", "user": "admin"}


@pytest.mark.asyncio
async def test_every_target_lands_in_exactly_one_list(vault: Vault) -> None:
    targets = _targets(vault, 25)

    async def _odd_fails(node: NodeSession) -> str:
        if int(node.target.id[1:]) % 2:
            raise ConnectivityError("http_503")
        return node.target.id

    report = await ClusterDispatcher(vault, max_concurrency=4).dispatch(targets, _odd_fails, name="mixed")

    success_ids = {item.node.id for item in report.successes}
    failure_ids = {item.node.id for item in report.failures}
    assert success_ids.isdisjoint(failure_ids)
    assert success_ids | failure_ids == {target.id for target in targets}
    assert report.total == len(targets)
    assert report.node_ids() == {target.id for target in targets}
    assert report.outcome == ReportOutcome.PARTIAL


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_bound(vault: Vault) -> None:
    in_flight = 0
    peak = 0

    async def _track(node: NodeSession) -> None:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    report = await ClusterDispatcher(vault, max_concurrency=3).dispatch(_targets(vault, 12), _track)

    assert len(report.successes) == 12
    assert 1 <= peak <= 3


@pytest.mark.asyncio
async def test_hung_node_times_out_without_blocking_siblings(vault: Vault) -> None:
    targets = _targets(vault, 3)

    async def _hang_first(node: NodeSession) -> str:
        if node.target.id == "n0":
            await asyncio.sleep(30)
        return "ok"

    started = perf_counter()
    report = await ClusterDispatcher(vault, timeout_seconds=0.2).dispatch(targets, _hang_first)
    elapsed = perf_counter() - started

    assert elapsed < 5
    assert [item.node.id for item in report.successes] == ["n1", "n2"]
    assert len(report.failures) == 1
    assert report.failures[0].node.id == "n0"
    assert report.failures[0].kind == FailureKind.TIMEOUT
    assert report.failures[0].reason == "timeout"


@pytest.mark.asyncio
async def test_timeout_starts_once_a_slot_is_acquired(vault: Vault) -> None:
    async def _slow(node: NodeSession) -> str:
        await asyncio.sleep(0.1)
        return "ok"

    # Four sequential units each fit the timeout even though the batch exceeds it.
    report = await ClusterDispatcher(vault, max_concurrency=1, timeout_seconds=0.3).dispatch(
        _targets(vault, 4), _slow
    )

    assert len(report.successes) == 4
    assert report.failures == ()


@pytest.mark.asyncio
async def test_corrupted_credentials_fail_only_that_node(vault: Vault) -> None:
    good, bad, other = _targets(vault, 3)
    raw = bytearray(base64.b64decode(bad.password_encrypted))
    raw[-1] ^= 0xFF
    corrupted = NodeTarget(
        id=bad.id,
        name=bad.name,
        host=bad.host,
        username_encrypted=bad.username_encrypted,
        password_encrypted=base64.b64encode(bytes(raw)).decode("ascii"),
    )
    seen: list[str] = []

    async def _record(node: NodeSession) -> str:
        seen.append(node.target.id)
        return node.password or ""

    report = await ClusterDispatcher(vault).dispatch([good, corrupted, other], _record)

    assert sorted(seen) == ["n0", "n2"]
    assert [item.result for item in report.successes] == ["pw-0", "pw-2"]
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.node.id == "n1"
    assert failure.kind == FailureKind.CREDENTIAL
    assert failure.reason == "decryption_failed"


@pytest.mark.asyncio
async def test_connectivity_and_unexpected_errors_are_classified(vault: Vault) -> None:
    targets = _targets(vault, 2)

    async def _fail(node: NodeSession) -> None:
        if node.target.id == "n0":
            raise ConnectivityError("http_401", status_code=401)
        raise RuntimeError("boom")

    report = await ClusterDispatcher(vault).dispatch(targets, _fail)

    by_id = {item.node.id: item for item in report.failures}
    assert by_id["n0"].kind == FailureKind.CONNECTIVITY
    assert by_id["n0"].reason == "http_401"
    assert by_id["n1"].kind == FailureKind.ERROR
    assert by_id["n1"].reason == "RuntimeError: boom"
    assert report.outcome == ReportOutcome.FAILURE


@pytest.mark.asyncio
async def test_results_follow_target_order_not_completion_order(vault: Vault) -> None:
    targets = _targets(vault, 4)

    async def _reverse_finish(node: NodeSession) -> str:
        await asyncio.sleep(0.05 * (4 - int(node.target.id[1:])))
        return node.target.id

    report = await ClusterDispatcher(vault).dispatch(targets, _reverse_finish)

    assert [item.node.id for item in report.successes] == ["n0", "n1", "n2", "n3"]


@pytest.mark.asyncio
async def test_duplicate_targets_are_rejected(vault: Vault) -> None:
    [target] = _targets(vault, 1)
    with pytest.raises(ValidationError):
        await ClusterDispatcher(vault).dispatch([target, target], _echo)


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout", [0, -1.0])
async def test_non_positive_timeout_is_rejected(vault: Vault, timeout: float) -> None:
    with pytest.raises(ValidationError):
        await ClusterDispatcher(vault).dispatch(_targets(vault, 1), _echo, timeout=timeout)


@pytest.mark.asyncio
async def test_write_profile_marks_failures_as_degraded(vault: Vault) -> None:
    targets = _targets(vault, 2)

    async def _second_fails(node: NodeSession) -> str:
        if node.target.id == "n1":
            raise ConnectivityError("URLError")
        return "ok"

    dispatcher = ClusterDispatcher(vault)
    write = await dispatcher.dispatch(targets, _second_fails, profile=DispatchProfile.WRITE)
    read = await dispatcher.dispatch(targets, _second_fails, profile=DispatchProfile.READ)

    assert write.degraded and write.outcome == ReportOutcome.PARTIAL
    assert not read.degraded and read.outcome == ReportOutcome.PARTIAL


@pytest.mark.asyncio
async def test_dispatch_accepts_orm_nodes(vault: Vault, session, make_node) -> None:
    node = await make_node(session, "core-1", username="api", password="pw")

    report = await ClusterDispatcher(vault).dispatch([node], _echo)

    assert report.successes[0].node.id == node.id
    assert report.successes[0].result == {"node": node.id, "user": "api"}


@pytest.mark.asyncio
async def test_hung_units_beyond_the_pool_still_return_within_one_timeout(vault: Vault) -> None:
    targets = _targets(vault, 12)
    hung = {"n0", "n5", "n9"}

    async def _hang_some(node: NodeSession) -> str:
        if node.target.id in hung:
            await asyncio.sleep(30)
        await asyncio.sleep(0.01)
        return "ok"

    dispatcher = ClusterDispatcher(vault, max_concurrency=4, timeout_seconds=0.5)
    started = perf_counter()
    report = await dispatcher.dispatch(targets, _hang_some)
    elapsed = perf_counter() - started

    # Three hung units pin three of four slots; the nine fast ones share the last.
    assert elapsed < 0.5 * 1.8
    assert len(report.successes) == 9
    assert {item.node.id for item in report.failures} == hung
    assert all(item.kind == FailureKind.TIMEOUT for item in report.failures)
    assert report.node_ids() == {target.id for target in targets}
