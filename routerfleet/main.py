from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from routerfleet.config import Settings, get_settings
from routerfleet.dependencies import dispose_engines, get_sessionmaker
from routerfleet.logger import configure_logging, get_logger
from routerfleet.metrics import observe_http_request
from routerfleet.routeros import ClientFactory, RouterOSClientFactory
from routerfleet.routes import audit, cluster, nodes, resources, system, tunnels
from routerfleet.runtime import RuntimeController
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.services.health import HealthProber, make_probe
from routerfleet.vault import Vault

logger = get_logger("api")


def create_app(
    settings: Optional[Settings] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("app.startup", "Starting app", env=settings.app_env, version=settings.app_version)
        # A missing or malformed CREDENTIAL_KEY aborts startup here.
        vault = Vault.from_settings(settings)
        sessionmaker = get_sessionmaker(settings)
        owned_factory: Optional[RouterOSClientFactory] = None
        factory: ClientFactory
        if client_factory is None:
            owned_factory = RouterOSClientFactory(
                timeout_seconds=settings.routeros_request_timeout_seconds,
                max_workers=settings.routeros_max_workers,
            )
            factory = owned_factory
        else:
            factory = client_factory
        dispatcher = ClusterDispatcher(
            vault,
            max_concurrency=settings.dispatch_max_concurrency,
            timeout_seconds=settings.dispatch_timeout_seconds,
        )
        prober = HealthProber(
            sessionmaker,
            dispatcher,
            make_probe(factory),
            timeout_seconds=settings.health_check_timeout_seconds,
        )
        runtime = RuntimeController(settings, sessionmaker, prober)

        app.state.settings = settings
        app.state.vault = vault
        app.state.sessionmaker = sessionmaker
        app.state.client_factory = factory
        app.state.dispatcher = dispatcher
        app.state.prober = prober
        app.state.runtime = runtime

        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()
            await dispose_engines()
            if owned_factory is not None:
                owned_factory.close()
            logger.info("app.shutdown", "Shutting down app")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_logging(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid4())
        client: Optional[str] = None
        if request.client:
            client = request.client.host

        start = perf_counter()
        with logger.context(request_id=request_id):
            logger.info(
                "request.start",
                "Started",
                method=request.method,
                path=request.url.path,
                client=client,
            )
            try:
                response = await call_next(request)
            except Exception as exc:
                duration_ms = (perf_counter() - start) * 1000
                logger.exception(
                    "request.error",
                    "Failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round(duration_ms, 1),
                    error_type=type(exc).__name__,
                )
                raise

            duration = perf_counter() - start
            logger.info(
                "request.complete",
                "Completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 1),
            )

        route = request.scope.get("route")
        observe_http_request(
            method=request.method,
            path=getattr(route, "path", "unmatched"),
            status=response.status_code,
            duration_seconds=duration,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(system.router)
    app.include_router(nodes.router)
    app.include_router(cluster.router)
    app.include_router(resources.router)
    app.include_router(tunnels.router)
    app.include_router(audit.router)
    return app
