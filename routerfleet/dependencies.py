from __future__ import annotations

from time import perf_counter
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import Depends, Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from routerfleet.config import Settings
from routerfleet.logger import get_logger
from routerfleet.routeros import ClientFactory
from routerfleet.services.dispatcher import ClusterDispatcher
from routerfleet.services.health import HealthProber
from routerfleet.vault import Vault

_DB_LOGGER = get_logger("db")
_DB_SESSION_LOGGER = get_logger("db.session")
_QUERY_CONTEXT_STACK_KEY = "routerfleet_query_stack"
_SLOW_QUERY_MS = 200


def _truncate(value: str, max_length: int) -> str:
    if max_length <= 0 or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return f"{value[: max_length - 3]}..."


def _format_sql(statement: Any, max_length: int) -> str:
    return _truncate(" ".join(str(statement or "").split()), max_length)


def _query_stack(connection: Any) -> list[dict[str, Any]]:
    stack = connection.info.get(_QUERY_CONTEXT_STACK_KEY)
    if isinstance(stack, list):
        return stack
    stack = []
    connection.info[_QUERY_CONTEXT_STACK_KEY] = stack
    return stack


def _install_query_logging(engine: AsyncEngine, settings: Settings) -> None:
    sync_engine = engine.sync_engine
    dialect = settings.database_url.split("://", maxsplit=1)[0]

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del cursor, context
        _query_stack(conn).append(
            {"start": perf_counter(), "statement": statement, "parameters": parameters}
        )

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del statement, parameters, context
        stack = _query_stack(conn)
        query_context = stack.pop() if stack else {}
        duration_ms = (perf_counter() - float(query_context.get("start", perf_counter()))) * 1000
        sql = _format_sql(query_context.get("statement"), settings.log_sql_max_length)

        if settings.log_db_queries:
            fields: dict[str, Any] = {
                "duration_ms": round(duration_ms, 1),
                "rowcount": getattr(cursor, "rowcount", None),
                "executemany": executemany,
                "sql": sql,
                "db": dialect,
            }
            if settings.log_db_query_params:
                fields["params"] = _truncate(repr(query_context.get("parameters")), settings.log_sql_max_length)
            _DB_LOGGER.info("query.execute", "Executed SQL statement", **fields)

        if duration_ms >= _SLOW_QUERY_MS:
            _DB_LOGGER.warning("query.slow", "Slow SQL statement", duration_ms=round(duration_ms, 1), sql=sql)

    @event.listens_for(sync_engine, "handle_error")
    def _handle_error(exception_context: Any) -> None:
        connection = exception_context.connection
        if connection is not None:
            stack = _query_stack(connection)
            if stack:
                stack.pop()
        _DB_LOGGER.error(
            "query.error",
            "SQL execution failed",
            error_type=type(exception_context.original_exception).__name__,
            error=str(exception_context.original_exception),
            sql=_format_sql(exception_context.statement, settings.log_sql_max_length),
        )


def create_engine(settings: Settings) -> AsyncEngine:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)

    if settings.database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    _install_query_logging(engine, settings)
    return engine


_SESSIONMAKERS: dict[str, async_sessionmaker[AsyncSession]] = {}


def get_sessionmaker(settings: Settings) -> async_sessionmaker[AsyncSession]:
    sessionmaker = _SESSIONMAKERS.get(settings.database_url)
    if sessionmaker is None:
        engine = create_engine(settings)
        sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)
        _SESSIONMAKERS[settings.database_url] = sessionmaker
    return sessionmaker


async def dispose_engines() -> None:
    for sessionmaker in _SESSIONMAKERS.values():
        bind = sessionmaker.kw.get("bind")
        if isinstance(bind, AsyncEngine):
            await bind.dispose()
    _SESSIONMAKERS.clear()


def get_app_sessionmaker(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.sessionmaker


async def get_db_session(
    sessionmaker: async_sessionmaker[AsyncSession] = Depends(get_app_sessionmaker),
) -> AsyncIterator[AsyncSession]:
    session_id = uuid4().hex[:12]
    start = perf_counter()

    with _DB_SESSION_LOGGER.context(db_session_id=session_id):
        async with sessionmaker() as session:
            try:
                yield session
            except Exception as exc:
                if session.in_transaction():
                    await session.rollback()
                    _DB_SESSION_LOGGER.warning(
                        "session.rollback",
                        "Rolled back DB transaction after error",
                        error_type=type(exc).__name__,
                    )
                raise
            finally:
                _DB_SESSION_LOGGER.debug(
                    "session.close",
                    "Closed DB session",
                    duration_ms=round((perf_counter() - start) * 1000, 1),
                )


def get_vault(request: Request) -> Vault:
    return request.app.state.vault


def get_dispatcher(request: Request) -> ClusterDispatcher:
    return request.app.state.dispatcher


def get_prober(request: Request) -> HealthProber:
    return request.app.state.prober


def get_client_factory(request: Request) -> ClientFactory:
    return request.app.state.client_factory


def get_actor(request: Request) -> str:
    actor = request.headers.get("x-actor", "").strip()
    return actor[:128] or "system"


def get_client_ip(request: Request) -> str | None:
    if request.client and request.client.host:
        return request.client.host
    return None


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
