from __future__ import annotations

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from routerfleet.config import Settings
from routerfleet.logger import get_logger
from routerfleet.metrics import record_runtime_loop
from routerfleet.services import audit as audit_service
from routerfleet.services.health import HealthProber

_logger = get_logger("runtime")


class RuntimeController:
    def __init__(
        self,
        settings: Settings,
        sessionmaker: async_sessionmaker[AsyncSession],
        prober: HealthProber,
    ) -> None:
        self._settings = settings
        self._sessionmaker = sessionmaker
        self._prober = prober
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop.is_set()

    async def start(self) -> None:
        self._stop.clear()
        if self._settings.health_check_enabled:
            self._tasks.append(asyncio.create_task(self._health_loop()))
            _logger.info(
                "runtime.health.start",
                "Started health check loop",
                interval_seconds=self._settings.health_check_interval_seconds,
                initial_delay_seconds=self._settings.health_check_initial_delay_seconds,
            )
        else:
            _logger.info("runtime.health.disabled", "Health check loop is disabled")

        if self._settings.audit_retention_days > 0:
            self._tasks.append(asyncio.create_task(self._audit_prune_loop()))
            _logger.info(
                "runtime.audit_prune.start",
                "Started audit prune loop",
                retention_days=self._settings.audit_retention_days,
                interval_seconds=self._settings.audit_prune_interval_seconds,
            )

    async def stop(self) -> None:
        self._stop.set()
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        _logger.info("runtime.stop", "Stopped runtime controller")

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _health_loop(self) -> None:
        if await self._sleep(self._settings.health_check_initial_delay_seconds):
            return
        interval = self._settings.health_check_interval_seconds
        while not self._stop.is_set():
            try:
                await self._prober.run_once()
                record_runtime_loop(loop="health_check", ok=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_runtime_loop(loop="health_check", ok=False)
                _logger.exception(
                    "runtime.health.error",
                    "Health check cycle failed",
                    error_type=type(exc).__name__,
                )
            if await self._sleep(interval):
                return

    async def _audit_prune_loop(self) -> None:
        interval = self._settings.audit_prune_interval_seconds
        while not self._stop.is_set():
            try:
                async with self._sessionmaker() as session:
                    deleted = await audit_service.prune_old_logs(
                        session,
                        retention_days=self._settings.audit_retention_days,
                    )
                record_runtime_loop(loop="audit_prune", ok=True)
                _logger.debug("runtime.audit_prune.done", "Audit prune pass finished", deleted=deleted)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                record_runtime_loop(loop="audit_prune", ok=False)
                _logger.exception(
                    "runtime.audit_prune.error",
                    "Audit prune pass failed",
                    error_type=type(exc).__name__,
                )
            if await self._sleep(interval):
                return
