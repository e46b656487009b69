from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from routerfleet.services.dispatcher import ClusterOperationReport


class NodeRef(BaseModel):
    node_id: str
    node_name: str


class NodeSuccessOut(NodeRef):
    result: Any = None


class NodeFailureOut(NodeRef):
    kind: str
    reason: str


class ClusterOperationOut(BaseModel):
    operation: str
    resource: str
    outcome: str
    successes: List[NodeSuccessOut] = Field(default_factory=list)
    failures: List[NodeFailureOut] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ClusterOperationReport, *, resource: str) -> "ClusterOperationOut":
        return cls(
            operation=report.operation,
            resource=resource,
            outcome=report.outcome,
            successes=[
                NodeSuccessOut(node_id=item.node.id, node_name=item.node.name, result=item.result)
                for item in report.successes
            ],
            failures=[
                NodeFailureOut(
                    node_id=item.node.id,
                    node_name=item.node.name,
                    kind=item.kind,
                    reason=item.reason,
                )
                for item in report.failures
            ],
        )


class ClusterStatsOut(BaseModel):
    total_nodes: int
    active_nodes: int
    offline_nodes: int


class NodeHealthOut(BaseModel):
    node_id: str
    node_name: str
    online: bool
    resources: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


class ClusterHealthOut(BaseModel):
    checked_at: Optional[datetime]
    total: int
    healthy: int
    unhealthy: int
    nodes: List[NodeHealthOut] = Field(default_factory=list)
