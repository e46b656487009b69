from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from routerfleet.models.base import Base, TimestampMixin

NODE_STATUS_ONLINE = "online"
NODE_STATUS_OFFLINE = "offline"


class Node(TimestampMixin, Base):
    __tablename__ = "nodes"
    __table_args__ = (UniqueConstraint("host", "port", name="uq_nodes_host_port"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    host: Mapped[str] = mapped_column(String(255))
    port: Mapped[int] = mapped_column(Integer, default=443)
    use_tls: Mapped[bool] = mapped_column(Boolean, default=True)
    verify_tls: Mapped[bool] = mapped_column(Boolean, default=False)
    username_encrypted: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    password_encrypted: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=NODE_STATUS_OFFLINE, index=True)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username_encrypted and self.password_encrypted)
