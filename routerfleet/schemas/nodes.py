from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

_HOST_PATTERN = r"^[\w.-]+$"


class NodeCreate(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    host: str = Field(min_length=1, max_length=255, pattern=_HOST_PATTERN)
    port: int = Field(default=443, gt=0, le=65535)
    use_tls: bool = True
    verify_tls: bool = False
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class NodeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    host: Optional[str] = Field(default=None, min_length=1, max_length=255, pattern=_HOST_PATTERN)
    port: Optional[int] = Field(default=None, gt=0, le=65535)
    use_tls: Optional[bool] = None
    verify_tls: Optional[bool] = None
    username: Optional[str] = Field(default=None, min_length=1)
    password: Optional[str] = Field(default=None, min_length=1)


class NodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    host: str
    port: int
    use_tls: bool
    verify_tls: bool
    has_credentials: bool
    status: str
    last_seen_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class ConnectionTestOut(BaseModel):
    node_id: str
    ok: bool
    status: str
    detail: str
