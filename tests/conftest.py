from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from routerfleet.models import Base, Node
from routerfleet.models.node import NODE_STATUS_OFFLINE
from routerfleet.services.dispatcher import NodeSession
from routerfleet.vault import Vault, generate_key


class FakeRouter:
    """In-memory stand-in for one RouterOS node's REST tree."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.resource: Dict[str, Any] = {
            "cpu-load": "7",
            "free-memory": "104857600",
            "total-memory": "268435456",
            "uptime": "1w2d3h",
            "version": "7.14.2 (stable)",
            "board-name": "CHR",
        }
        self.error: Optional[Exception] = None
        self.delay: float = 0.0
        self.credentials: list[tuple[Optional[str], Optional[str]]] = []
        self.flushes = 0
        self.settings: Dict[str, Dict[str, Any]] = {
            "/ip/dns": {"servers": "1.1.1.1", "allow-remote-requests": "false", "cache-size": "2048KiB"},
        }
        self._ids = itertools.count(1)

    async def gate(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def seed(self, path: str, **attrs: Any) -> Dict[str, Any]:
        item = {".id": f"*{next(self._ids)}", **attrs}
        self.tables.setdefault(path, []).append(item)
        return item


class FakeClient:
    def __init__(self, router: FakeRouter, node: NodeSession) -> None:
        self._router = router
        router.credentials.append((node.username, node.password))

    async def list_items(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        await self._router.gate()
        return [dict(item) for item in self._router.tables.get(path, [])]

    async def add_item(self, path: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        await self._router.gate()
        return dict(self._router.seed(path, **attrs))

    async def update_item(self, path: str, item_id: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        await self._router.gate()
        for item in self._router.tables.get(path, []):
            if item[".id"] == item_id:
                item.update(attrs)
                return dict(item)
        raise AssertionError(f"no item {item_id} under {path}")

    async def delete_item(self, path: str, item_id: str) -> None:
        await self._router.gate()
        items = self._router.tables.get(path, [])
        self._router.tables[path] = [item for item in items if item[".id"] != item_id]

    async def get_settings(self, path: str) -> Dict[str, Any]:
        await self._router.gate()
        return dict(self._router.settings.get(path, {}))

    async def set_settings(self, path: str, attrs: Dict[str, Any]) -> None:
        await self._router.gate()
        self._router.settings.setdefault(path, {}).update({key: str(value) for key, value in attrs.items()})

    async def system_resource(self) -> Dict[str, Any]:
        await self._router.gate()
        return dict(self._router.resource)

    async def system_identity(self) -> Dict[str, Any]:
        await self._router.gate()
        return {"name": self._router.identity}

    async def flush_dns_cache(self) -> None:
        await self._router.gate()
        self._router.flushes += 1


class FakeFleet:
    """Client factory keyed by node name; unknown nodes get a fresh router."""

    def __init__(self) -> None:
        self.routers: Dict[str, FakeRouter] = {}

    def router(self, name: str) -> FakeRouter:
        if name not in self.routers:
            self.routers[name] = FakeRouter(identity=name)
        return self.routers[name]

    def __call__(self, node: NodeSession) -> FakeClient:
        return FakeClient(self.router(node.target.name), node)


@pytest.fixture
def credential_key() -> str:
    return generate_key()


@pytest.fixture
def vault(credential_key: str) -> Vault:
    return Vault.from_base64(credential_key)


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'routerfleet.db'}"


@pytest_asyncio.fixture
async def sessionmaker(database_url: str) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as db_session:
        yield db_session


@pytest.fixture
def make_node(vault: Vault):
    counter = itertools.count(1)

    async def _make(
        session: AsyncSession,
        name: str,
        *,
        status: str = NODE_STATUS_OFFLINE,
        username: str = "admin",
        password: str = "s3cret",
        password_encrypted: Optional[str] = None,
    ) -> Node:
        index = next(counter)
        node = Node(
            id=f"node-{name}",
            name=name,
            host=f"10.0.0.{index}",
            port=443,
            username_encrypted=vault.encrypt(username),
            password_encrypted=password_encrypted or vault.encrypt(password),
            status=status,
        )
        session.add(node)
        await session.commit()
        await session.refresh(node)
        return node

    return _make
