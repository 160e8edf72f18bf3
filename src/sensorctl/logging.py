"""Structured operational logging for sensorctl.

Every record is routed through the standard :mod:`logging` machinery to
stderr, which systemd forwards to the journal for the one-shot units. No log
files are written by sensorctl itself.

Commands wrap their work in :meth:`StructuredLogger.operation` so that each
invocation produces a start record and exactly one result record::

    with logger.operation("enroll", target={"kind": "netbird"}) as op:
        ...
        op.success("Enrollment complete.", changed=1)

Logging must never take a workflow down: emission failures disable the
logger for the remainder of the process instead of raising.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

LOGGER_NAME = "sensorctl"

LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

ResultStatus = Literal["success", "warning", "error"]

_HANDLER_MARKER = "_sensorctl_handler"


def configure_logging(level: str = "info", *, json_output: bool = False) -> logging.Logger:
    """Install the stderr handler for the ``sensorctl`` logger hierarchy.

    Safe to call repeatedly; a previously installed handler is replaced so the
    handler always writes to the current ``sys.stderr``.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    setattr(handler, _HANDLER_MARKER, True)
    if json_output:
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        # journald already timestamps every line.
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    return logger


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    try:
        return LEVELS[level.strip().lower()]
    except KeyError as exc:
        allowed = ", ".join(sorted(LEVELS))
        raise ValueError(f"Unknown log level '{level}'. Allowed: {allowed}.") from exc


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class StructuredLogger:
    """Emit operation-scoped records to the host's log sink."""

    def __init__(self, name: str = LOGGER_NAME, *, json_output: bool = False) -> None:
        """Bind to the stdlib logger *name*."""
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._enabled = True

    @property
    def enabled(self) -> bool:
        """Return ``False`` once an emission failure disabled the logger."""
        return self._enabled

    def log(self, level: str | int, message: str, **context: object) -> None:
        """Emit a free-form record; never raises."""
        try:
            numeric = _resolve_level(level)
        except ValueError:
            numeric = logging.INFO
        record: dict[str, object] = {"timestamp": _timestamp(), "message": message}
        if context:
            record["context"] = _sanitise(context)
        self._emit(numeric, message, record)

    def info(self, message: str, **context: object) -> None:
        """Emit an informational record."""
        self.log(logging.INFO, message, **context)

    def warning(self, message: str, **context: object) -> None:
        """Emit a warning record."""
        self.log(logging.WARNING, message, **context)

    def error(self, message: str, **context: object) -> None:
        """Emit an error record."""
        self.log(logging.ERROR, message, **context)

    @contextmanager
    def operation(
        self,
        op: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and record its outcome."""
        scope = OperationScope(
            logger=self,
            op=op,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        self._emit(
            logging.DEBUG,
            f"{op}: started",
            {
                "timestamp": _timestamp(),
                "op": op,
                "args": _sanitise(scope.args),
                "target": _sanitise(scope.target),
                "event": "start",
            },
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"{op} failed: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success(f"{op} finished.", changed=0)

    def _emit(self, level: int, text: str, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            rendered = json.dumps(record, sort_keys=True) if self._json_output else text
            self._logger.log(level, "%s", rendered)
        except (OSError, ValueError, TypeError):
            self._enabled = False


@dataclass(slots=True)
class OperationScope:
    """Collects the outcome of a single logged operation."""

    logger: StructuredLogger
    op: str
    args: dict[str, object] = field(default_factory=dict)
    target: dict[str, object] = field(default_factory=dict)
    started: float = field(default_factory=time.perf_counter)
    result: dict[str, object] | None = None

    def step(self, message: str, **context: object) -> None:
        """Record an intermediate progress line."""
        self.logger.info(f"{self.op}: {message}", **context)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Record a completed-with-warnings outcome."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Record a failed outcome; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            changed=0,
            warnings=None,
            errors=errors if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _finish(
        self,
        status: ResultStatus,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str] | None,
        errors: Iterable[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        if self.result is not None:
            return
        duration_ms = int((time.perf_counter() - self.started) * 1000)
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitise(dict(context or {})),
            "rc": rc,
        }
        level = {
            "success": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }[status]
        self.logger._emit(
            level,
            f"{self.op}: {message}",
            {
                "timestamp": _timestamp(),
                "op": self.op,
                "args": _sanitise(self.args),
                "target": _sanitise(self.target),
                "event": "result",
                "duration_ms": duration_ms,
                "result": self.result,
            },
        )


__all__ = [
    "LEVELS",
    "LOGGER_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_logging",
]
