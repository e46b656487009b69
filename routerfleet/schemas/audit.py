from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    actor: str
    action: str
    resource_type: str
    resource_id: Optional[str]
    success: bool
    outcome: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str]
    created_at: datetime


class AuditStatsOut(BaseModel):
    total: int
    today: int
    failures: int
