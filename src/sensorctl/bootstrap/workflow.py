"""Generic runner for marker-guarded one-shot bootstrap actions.

Each action instance (discovery apply, enrollment, boot notification) runs
through the same state machine::

    NOT_STARTED -> WAITING_FOR_CONFIG -> CONFIG_READ -> ACTION_RUNNING
        -> DONE | SKIPPED | FAILED_RETRYABLE | FAILED_TERMINAL

A set marker short-circuits straight to ``DONE``. ``FAILED_RETRYABLE`` leaves
the marker untouched so the next supervisor-triggered run repeats the whole
action; ``FAILED_TERMINAL`` flags a deployment defect that will not heal on
its own. Nothing is retried in-process.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Generic, TypeVar

from ..exit_codes import ExitCode
from ..locking import LockError
from ..logging import StructuredLogger
from .markers import Marker, MarkerError
from .source import BootstrapNotFoundError, BootstrapParseError
from .wait import Clock, Sleeper, path_exists, wait_for

PayloadT = TypeVar("PayloadT")


class WorkflowState(str, Enum):
    """Lifecycle states of a single workflow invocation."""

    NOT_STARTED = "not-started"
    WAITING_FOR_CONFIG = "waiting-for-config"
    CONFIG_READ = "config-read"
    ACTION_RUNNING = "action-running"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_TERMINAL = "failed-terminal"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for states that end an invocation."""
        return self in _FINAL_STATES


_FINAL_STATES = {
    WorkflowState.DONE,
    WorkflowState.SKIPPED,
    WorkflowState.FAILED_RETRYABLE,
    WorkflowState.FAILED_TERMINAL,
}


class ActionError(RuntimeError):
    """Base class for failures raised by workflow actions."""


class RetryableActionError(ActionError):
    """Transient failure; the supervisor should run the action again."""


class TerminalActionError(ActionError):
    """Failure that indicates a deployment defect."""

    def __init__(self, message: str, *, exit_code: ExitCode = ExitCode.ENVIRONMENT) -> None:
        """Record *message* and the process *exit_code* to report."""
        super().__init__(message)
        self.exit_code = exit_code


class SkipAction(Exception):  # noqa: N818 - control-flow signal, not an error
    """Raised by an action when there is nothing to do."""


@dataclass(slots=True)
class ActionResult:
    """Value returned by a successful action."""

    message: str
    changed: int = 0
    warnings: list[str] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)
    set_marker: bool = True


@dataclass(slots=True)
class WaitPolicy:
    """How long to wait for the prerequisite file to appear."""

    max_wait: float = 0.0
    poll_interval: float = 1.0


@dataclass(slots=True)
class WorkflowOutcome:
    """Final result of a workflow invocation."""

    name: str
    state: WorkflowState
    message: str
    history: list[WorkflowState] = field(default_factory=list)
    changed: int = 0
    warnings: list[str] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)
    terminal_code: ExitCode = ExitCode.VALIDATION

    @property
    def exit_code(self) -> ExitCode:
        """Return the process exit code the supervisor should see."""
        if self.state in (WorkflowState.DONE, WorkflowState.SKIPPED):
            return ExitCode.OK
        if self.state is WorkflowState.FAILED_RETRYABLE:
            return ExitCode.RETRYABLE
        return self.terminal_code

    @property
    def ok(self) -> bool:
        """Return ``True`` when the invocation exits zero."""
        return self.exit_code is ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "workflow": self.name,
            "state": self.state.value,
            "message": self.message,
            "exit_code": int(self.exit_code),
            "changed": self.changed,
            "warnings": list(self.warnings),
            "history": [state.value for state in self.history],
            "details": dict(self.details),
        }


@dataclass(slots=True)
class OneShotWorkflow(Generic[PayloadT]):
    """Marker check, bounded wait, read, act, persist marker.

    *force* skips the marker check so a completed action can be re-applied;
    the marker is still (re)written on success.
    """

    name: str
    source: Path
    loader: Callable[[Path], PayloadT]
    action: Callable[[PayloadT], ActionResult]
    logger: StructuredLogger
    marker: Marker | None = None
    wait: WaitPolicy = field(default_factory=WaitPolicy)
    ready: Callable[[], bool] | None = None
    missing_ok: bool = True
    dry_run: bool = False
    force: bool = False
    lock: Callable[[], AbstractContextManager[object]] | None = None
    clock: Clock = time.monotonic
    sleep: Sleeper = time.sleep
    _history: list[WorkflowState] = field(default_factory=list, init=False)

    @property
    def state(self) -> WorkflowState:
        """Return the most recent state."""
        return self._history[-1] if self._history else WorkflowState.NOT_STARTED

    def run(self) -> WorkflowOutcome:
        """Execute the workflow and return its outcome; never raises for expected failures."""
        self._history = [WorkflowState.NOT_STARTED]
        if not self.force and self.marker is not None and self.marker.is_set():
            return self._finish(
                WorkflowState.DONE,
                f"{self.name}: marker {self.marker.path} already set; nothing to do.",
                details={"marker": str(self.marker.path), "already_done": True},
            )

        guard = self.lock() if self.lock is not None else nullcontext()
        try:
            with guard:
                return self._run_locked()
        except LockError as exc:
            return self._finish(WorkflowState.FAILED_RETRYABLE, f"{self.name}: {exc}")

    def _run_locked(self) -> WorkflowOutcome:
        if not self.force and self.marker is not None and self.marker.is_set():
            # Another invocation finished while this one waited for the lock.
            return self._finish(
                WorkflowState.DONE,
                f"{self.name}: marker {self.marker.path} set by a concurrent run.",
                details={"marker": str(self.marker.path), "already_done": True},
            )

        self._transition(WorkflowState.WAITING_FOR_CONFIG)
        predicate = self.ready or path_exists(self.source)
        appeared = wait_for(
            predicate,
            self.wait.max_wait,
            self.wait.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
            on_poll=self._log_waiting,
        )

        try:
            payload = self.loader(self.source)
        except BootstrapNotFoundError as exc:
            waited = f" after waiting {self.wait.max_wait:g}s" if not appeared else ""
            message = f"{self.name}: {exc}{waited}"
            if self.missing_ok:
                return self._finish(WorkflowState.SKIPPED, message)
            return self._finish(WorkflowState.FAILED_RETRYABLE, message)
        except BootstrapParseError as exc:
            return self._finish(
                WorkflowState.FAILED_TERMINAL,
                f"{self.name}: {exc}",
                terminal_code=ExitCode.VALIDATION,
                details={"path": str(exc.path), "detail": exc.detail},
            )

        self._transition(WorkflowState.CONFIG_READ)
        self._transition(WorkflowState.ACTION_RUNNING)
        try:
            result = self.action(payload)
        except SkipAction as exc:
            return self._finish(WorkflowState.SKIPPED, f"{self.name}: {exc}")
        except RetryableActionError as exc:
            return self._finish(WorkflowState.FAILED_RETRYABLE, f"{self.name}: {exc}")
        except TerminalActionError as exc:
            return self._finish(
                WorkflowState.FAILED_TERMINAL,
                f"{self.name}: {exc}",
                terminal_code=exc.exit_code,
            )

        details = dict(result.details)
        if self.marker is not None and result.set_marker and not self.dry_run:
            try:
                created = self.marker.set()
            except MarkerError as exc:
                return self._finish(
                    WorkflowState.FAILED_TERMINAL,
                    f"{self.name}: {exc}",
                    terminal_code=ExitCode.ENVIRONMENT,
                )
            details["marker"] = str(self.marker.path)
            details["marker_created"] = created

        return self._finish(
            WorkflowState.DONE,
            f"{self.name}: {result.message}",
            changed=result.changed,
            warnings=result.warnings,
            details=details,
        )

    def _transition(self, state: WorkflowState) -> None:
        self._history.append(state)
        self.logger.log("debug", f"{self.name}: state -> {state.value}")

    def _log_waiting(self, elapsed: float) -> None:
        self.logger.info(
            f"{self.name}: waiting for {self.source} ({elapsed:.0f}s/{self.wait.max_wait:g}s)"
        )

    def _finish(
        self,
        state: WorkflowState,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        details: Mapping[str, object] | None = None,
        terminal_code: ExitCode = ExitCode.VALIDATION,
    ) -> WorkflowOutcome:
        self._history.append(state)
        return WorkflowOutcome(
            name=self.name,
            state=state,
            message=message,
            history=list(self._history),
            changed=changed,
            warnings=list(warnings or []),
            details=dict(details or {}),
            terminal_code=terminal_code,
        )


__all__ = [
    "ActionError",
    "ActionResult",
    "OneShotWorkflow",
    "RetryableActionError",
    "SkipAction",
    "TerminalActionError",
    "WaitPolicy",
    "WorkflowOutcome",
    "WorkflowState",
]
