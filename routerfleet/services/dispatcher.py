"""Cluster-wide fan-out/fan-in of one logical operation.

Every target gets its own unit of work: credentials are decrypted inside the
unit, the operation runs under an independent timeout, and whatever happens to
that unit ends up as exactly one entry of the report. Units never see each
other's failures and the dispatch itself never raises for a per-node error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic, perf_counter
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from routerfleet.errors import NodeOperationError, ValidationError
from routerfleet.logger import get_logger
from routerfleet.metrics import observe_dispatch, record_dispatch_unit
from routerfleet.models.node import Node
from routerfleet.vault import Vault

_logger = get_logger("services.dispatcher")

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_TIMEOUT_SECONDS = 15.0


class DispatchProfile(str, Enum):
    READ = "read"
    WRITE = "write"


class FailureKind:
    TIMEOUT = "timeout"
    CREDENTIAL = "credential"
    CONNECTIVITY = "connectivity"
    ERROR = "error"


class ReportOutcome:
    EMPTY = "empty"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class NodeTarget:
    """Detached snapshot of a node row, safe to hand to concurrent units."""

    id: str
    name: str
    host: str
    port: int = 443
    use_tls: bool = True
    verify_tls: bool = False
    username_encrypted: Optional[str] = field(default=None, repr=False)
    password_encrypted: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_node(cls, node: Node) -> "NodeTarget":
        return cls(
            id=node.id,
            name=node.name,
            host=node.host,
            port=node.port,
            use_tls=node.use_tls,
            verify_tls=node.verify_tls,
            username_encrypted=node.username_encrypted,
            password_encrypted=node.password_encrypted,
        )


@dataclass(frozen=True)
class NodeSession:
    """A target with plaintext credentials; lives only for one unit of work.

    ``deadline`` is the ``time.monotonic()`` instant at which the unit's
    timeout fires. Blocking adapters size their socket timeouts from it so
    no request outlives the unit that issued it.
    """

    target: NodeTarget
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    deadline: Optional[float] = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.target.use_tls else "http"
        return f"{scheme}://{self.target.host}:{self.target.port}"

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - monotonic()


Operation = Callable[[NodeSession], Awaitable[Any]]


@dataclass(frozen=True)
class NodeSuccess:
    node: NodeTarget
    result: Any = None


@dataclass(frozen=True)
class NodeFailure:
    node: NodeTarget
    kind: str
    reason: str


@dataclass(frozen=True)
class ClusterOperationReport:
    operation: str
    profile: DispatchProfile
    successes: tuple[NodeSuccess, ...] = ()
    failures: tuple[NodeFailure, ...] = ()
    duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)

    @property
    def outcome(self) -> str:
        if not self.successes and not self.failures:
            return ReportOutcome.EMPTY
        if not self.failures:
            return ReportOutcome.SUCCESS
        if not self.successes:
            return ReportOutcome.FAILURE
        return ReportOutcome.PARTIAL

    @property
    def degraded(self) -> bool:
        return self.profile is DispatchProfile.WRITE and bool(self.failures)

    def node_ids(self) -> set[str]:
        return {item.node.id for item in self.successes} | {item.node.id for item in self.failures}


TargetLike = Union[NodeTarget, Node]


def _as_targets(targets: Iterable[TargetLike]) -> list[NodeTarget]:
    resolved: list[NodeTarget] = []
    seen: set[str] = set()
    for item in targets:
        target = item if isinstance(item, NodeTarget) else NodeTarget.from_node(item)
        if target.id in seen:
            raise ValidationError(f"node {target.id} appears more than once in the target set")
        seen.add(target.id)
        resolved.append(target)
    return resolved


class ClusterDispatcher:
    def __init__(
        self,
        vault: Vault,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._vault = vault
        self._max_concurrency = max_concurrency
        self._timeout_seconds = timeout_seconds

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def dispatch(
        self,
        targets: Sequence[TargetLike],
        operation: Operation,
        *,
        name: str = "operation",
        timeout: Optional[float] = None,
        profile: DispatchProfile = DispatchProfile.READ,
    ) -> ClusterOperationReport:
        effective_timeout = self._timeout_seconds if timeout is None else timeout
        if effective_timeout <= 0:
            raise ValidationError("dispatch timeout must be positive")
        resolved = _as_targets(targets)
        if not resolved:
            return ClusterOperationReport(operation=name, profile=profile)

        started = perf_counter()
        semaphore = asyncio.Semaphore(self._max_concurrency)
        async with _logger.operation(
            "dispatch",
            "Dispatching cluster operation",
            dispatch_name=name,
            profile=profile.value,
            nodes=len(resolved),
            max_concurrency=self._max_concurrency,
            timeout_seconds=effective_timeout,
        ) as op:
            outcomes = await asyncio.gather(
                *(
                    self._run_unit(
                        target,
                        operation,
                        name=name,
                        timeout=effective_timeout,
                        semaphore=semaphore,
                    )
                    for target in resolved
                ),
                return_exceptions=True,
            )

            successes: list[NodeSuccess] = []
            failures: list[NodeFailure] = []
            for target, outcome in zip(resolved, outcomes):
                if isinstance(outcome, NodeSuccess):
                    successes.append(outcome)
                elif isinstance(outcome, NodeFailure):
                    failures.append(outcome)
                else:
                    # A unit that escaped its own handling (cancelled from outside).
                    failures.append(
                        NodeFailure(
                            node=target,
                            kind=FailureKind.ERROR,
                            reason=type(outcome).__name__,
                        )
                    )

            duration_seconds = perf_counter() - started
            observe_dispatch(operation=name, duration_seconds=duration_seconds)
            report = ClusterOperationReport(
                operation=name,
                profile=profile,
                successes=tuple(successes),
                failures=tuple(failures),
                duration_ms=round(duration_seconds * 1000, 1),
            )
            if report.degraded:
                op.step_warning(
                    "aggregate",
                    "Cluster write finished with node failures",
                    outcome=report.outcome,
                    successes=len(successes),
                    failures=len(failures),
                )
            else:
                op.step(
                    "aggregate",
                    "Collected node outcomes",
                    outcome=report.outcome,
                    successes=len(successes),
                    failures=len(failures),
                )
            return report

    async def _run_unit(
        self,
        target: NodeTarget,
        operation: Operation,
        *,
        name: str,
        timeout: float,
        semaphore: asyncio.Semaphore,
    ) -> NodeSuccess | NodeFailure:
        # The slot is held until the unit has fully unwound, including a blocking
        # adapter call it is still waiting on.
        async with semaphore:
            deadline = monotonic() + timeout
            try:
                result = await asyncio.wait_for(self._invoke(target, operation, deadline), timeout=timeout)
            except TimeoutError:
                return self._failed(name, target, FailureKind.TIMEOUT, "timeout")
            except NodeOperationError as exc:
                return self._failed(name, target, exc.kind, exc.reason)
            except Exception as exc:  # noqa: BLE001
                return self._failed(name, target, FailureKind.ERROR, f"{type(exc).__name__}: {exc}")

        record_dispatch_unit(operation=name, result="ok")
        return NodeSuccess(node=target, result=result)

    async def _invoke(self, target: NodeTarget, operation: Operation, deadline: float) -> Any:
        session = NodeSession(
            target=target,
            username=self._vault.decrypt(target.username_encrypted),
            password=self._vault.decrypt(target.password_encrypted),
            deadline=deadline,
        )
        return await operation(session)

    def _failed(self, name: str, target: NodeTarget, kind: str, reason: str) -> NodeFailure:
        record_dispatch_unit(operation=name, result=kind)
        _logger.debug(
            "dispatch.unit_failed",
            "Node unit of work failed",
            operation=name,
            node_id=target.id,
            node=target.name,
            kind=kind,
            reason=reason,
        )
        return NodeFailure(node=target, kind=kind, reason=reason)
