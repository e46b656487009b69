from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ResourceWrite(BaseModel):
    attributes: Dict[str, Any] = Field(default_factory=dict)
    nodes: Optional[List[str]] = None


class AddressAssign(BaseModel):
    address: str = Field(min_length=1, max_length=64)
    nodes: Optional[List[str]] = None


class KeyPairOut(BaseModel):
    private_key: str
    public_key: str
