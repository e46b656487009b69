from __future__ import annotations

import asyncio
import base64
import json
import ssl
from concurrent.futures import Executor, ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Dict, List, Optional
from urllib import error, request
from urllib.parse import quote, urlencode

from routerfleet.errors import ConnectivityError, NodeTimeoutError
from routerfleet.services.dispatcher import NodeSession

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 32


def _ssl_context(verify: bool) -> ssl.SSLContext:
    if verify:
        return ssl.create_default_context()
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _basic_auth(username: Optional[str], password: Optional[str]) -> str:
    raw = f"{username or ''}:{password or ''}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _error_detail(exc: error.HTTPError) -> str:
    try:
        payload = exc.read().decode("utf-8")
    except Exception:  # noqa: BLE001
        return ""
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        return payload[:240]
    if isinstance(parsed, dict):
        return str(parsed.get("detail") or parsed.get("message") or "")[:240]
    return ""


class RouterOSClient:
    """Blocking RouterOS REST client, driven from the event loop through threads.

    Each method either returns the decoded JSON body or raises a
    ``ConnectivityError``/``NodeTimeoutError`` so dispatch units can classify it.
    The socket timeout of every request is capped by the session deadline.
    """

    def __init__(
        self,
        node: NodeSession,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        executor: Optional[Executor] = None,
    ) -> None:
        self._node = node
        self._timeout_seconds = timeout_seconds
        self._executor = executor

    @property
    def node(self) -> NodeSession:
        return self._node

    def _socket_timeout(self) -> float:
        remaining = self._node.remaining()
        if remaining is None:
            return self._timeout_seconds
        if remaining <= 0:
            raise NodeTimeoutError(0.0)
        return min(self._timeout_seconds, remaining)

    def _request_sync(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        timeout = self._socket_timeout()
        url = f"{self._node.base_url}/rest{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        headers = {
            "Accept": "application/json",
            "Authorization": _basic_auth(self._node.username, self._node.password),
        }
        body: Optional[bytes] = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"

        req = request.Request(url=url, method=method, data=body, headers=headers)
        context = _ssl_context(self._node.target.verify_tls) if self._node.target.use_tls else None
        try:
            with request.urlopen(req, timeout=timeout, context=context) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise ConnectivityError(
                f"http_{exc.code}", status_code=exc.code, detail=_error_detail(exc)
            ) from exc
        except TimeoutError as exc:
            raise NodeTimeoutError(timeout) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise NodeTimeoutError(timeout) from exc
            raise ConnectivityError(type(exc).__name__, detail=str(exc.reason)) from exc
        except OSError as exc:
            raise ConnectivityError(type(exc).__name__, detail=str(exc)) from exc

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConnectivityError("invalid_json", detail=raw[:240]) from exc

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor, partial(self._request_sync, method, path, payload, params)
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # A thread cannot be interrupted: stay cancelled-but-pending until it
            # returns, which the deadline-sized socket timeout keeps short.
            await asyncio.wait([future])
            raise

    async def list_items(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        result = await self.request("GET", path, params=params)
        if isinstance(result, list):
            return [item for item in result if isinstance(item, dict)]
        return []

    async def add_item(self, path: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.request("PUT", path, payload=attrs)
        return result if isinstance(result, dict) else {}

    async def update_item(self, path: str, item_id: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.request("PATCH", f"{path}/{quote(item_id, safe='')}", payload=attrs)
        return result if isinstance(result, dict) else {}

    async def delete_item(self, path: str, item_id: str) -> None:
        await self.request("DELETE", f"{path}/{quote(item_id, safe='')}")

    async def get_settings(self, path: str) -> Dict[str, Any]:
        """Read a singleton menu such as ``/ip/dns``."""
        result = await self.request("GET", path)
        return result if isinstance(result, dict) else {}

    async def set_settings(self, path: str, attrs: Dict[str, Any]) -> None:
        await self.request("POST", f"{path}/set", payload=attrs)

    async def system_resource(self) -> Dict[str, Any]:
        return await self.get_settings("/system/resource")

    async def system_identity(self) -> Dict[str, Any]:
        return await self.get_settings("/system/identity")

    async def flush_dns_cache(self) -> None:
        await self.request("POST", "/ip/dns/cache/flush", payload={})


ClientFactory = Callable[[NodeSession], RouterOSClient]


class RouterOSClientFactory:
    """Builds per-unit clients that share one bounded thread pool.

    The pool caps blocking requests across every dispatch running at once;
    each dispatch additionally holds its own concurrency slots.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="routeros")

    def __call__(self, node: NodeSession) -> RouterOSClient:
        return RouterOSClient(node, timeout_seconds=self._timeout_seconds, executor=self._executor)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
