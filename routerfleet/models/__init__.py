from routerfleet.models.audit_log import AuditLog
from routerfleet.models.base import Base
from routerfleet.models.node import Node

__all__ = [
    "AuditLog",
    "Base",
    "Node",
]
