from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

_ROOT = "routerfleet"
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5

_MARKS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

# Field names that must never reach a log line in clear text.
_MASKED_FIELDS = frozenset(
    {
        "password",
        "username",
        "password_encrypted",
        "username_encrypted",
        "credential_key",
        "private-key",
        "secret",
    }
)

_bound_context: ContextVar[Dict[str, Any]] = ContextVar("routerfleet_bound_context", default={})


def _mask(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: "***" if key.lower() in _MASKED_FIELDS else value for key, value in fields.items()}


class _PipeFormatter(logging.Formatter):
    """``timestamp | LEVEL | category | (*) event | message | key: value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc)
        fields = dict(getattr(record, "fields", {}))
        event = getattr(record, "event", "")
        mark = _MARKS.get(record.levelno, "(?)")
        message = record.getMessage()

        columns = [
            when.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            f"{record.levelname:<8}",
            str(getattr(record, "category", record.name)),
        ]
        if event == "operation.step":
            columns.append(f"{mark} >> {fields.pop('step', 'step')}")
        else:
            columns.append(f"{mark} {event or message}")
        if event and message:
            columns.append(message)
        columns.extend(f"{key}: {value}" for key, value in fields.items())

        line = " | ".join(columns)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class Operation:
    """Timed block that logs start, named steps and a closing summary."""

    def __init__(self, logger: "BoundLogger", name: str, message: str, fields: Dict[str, Any]) -> None:
        self._logger = logger
        self._name = name
        self._message = message
        self._fields = fields
        self._started = 0.0
        self._steps = 0
        self._warnings = 0

    async def __aenter__(self) -> "Operation":
        self._started = perf_counter()
        start_fields = {**self._fields, "operation": self._name}
        self._logger._emit(logging.INFO, "operation.start", self._message, start_fields)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        summary: Dict[str, Any] = {
            "operation": self._name,
            "duration_ms": round((perf_counter() - self._started) * 1000, 1),
            "steps": self._steps,
        }
        if exc_type is not None:
            summary["error_type"] = exc_type.__name__
            self._logger._emit(logging.ERROR, "operation.error", "Failed", summary, exc_info=True)
        elif self._warnings:
            summary["warnings"] = self._warnings
            self._logger._emit(logging.WARNING, "operation.complete", "Completed with warnings", summary)
        else:
            self._logger._emit(logging.INFO, "operation.complete", "Completed", summary)

    def step(self, name: str, message: str, /, **fields: Any) -> None:
        self._steps += 1
        step_fields = {**fields, "operation": self._name, "step": name}
        self._logger._emit(logging.INFO, "operation.step", message, step_fields)

    def step_warning(self, name: str, message: str, /, **fields: Any) -> None:
        self._steps += 1
        self._warnings += 1
        self._logger._emit(
            logging.WARNING, "operation.step", message, {**fields, "operation": self._name, "step": name}
        )


class BoundLogger:
    """Category logger; the leading arguments of every method are positional-only,
    so any keyword (``name=``, ``event=``, ``message=``) is a free log field."""

    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "BoundLogger":
        return BoundLogger(self._category, {**self._fields, **fields})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        token = _bound_context.set({**_bound_context.get(), **fields})
        try:
            yield
        finally:
            _bound_context.reset(token)

    def operation(self, name: str, message: str, /, **fields: Any) -> Operation:
        return Operation(self, name, message, fields)

    def debug(self, event: str, message: str, /, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, message, fields)

    def info(self, event: str, message: str, /, **fields: Any) -> None:
        self._emit(logging.INFO, event, message, fields)

    def warning(self, event: str, message: str, /, **fields: Any) -> None:
        self._emit(logging.WARNING, event, message, fields)

    def error(self, event: str, message: str, /, **fields: Any) -> None:
        self._emit(logging.ERROR, event, message, fields)

    def exception(self, event: str, message: str, /, **fields: Any) -> None:
        self._emit(logging.ERROR, event, message, fields, exc_info=True)

    def _emit(
        self,
        level: int,
        event: str,
        message: str,
        fields: Mapping[str, Any],
        *,
        exc_info: bool = False,
    ) -> None:
        target = logging.getLogger(_ROOT)
        if not target.isEnabledFor(level):
            return
        merged = _mask({**_bound_context.get(), **self._fields, **fields})
        target.log(
            level,
            message,
            extra={"category": self._category, "event": event, "fields": merged},
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str]) -> None:
    formatter = _PipeFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS))
    for handler in handlers:
        handler.setFormatter(formatter)

    # Our records stay on our handlers; uvicorn and alembic records go through the root.
    for name, propagate in ((_ROOT, False), ("", True)):
        target = logging.getLogger(name)
        target.setLevel(log_level.upper())
        for stale in list(target.handlers):
            target.removeHandler(stale)
            stale.close()
        for handler in handlers:
            target.addHandler(handler)
        target.propagate = propagate

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
