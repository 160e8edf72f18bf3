"""Tests for the one-shot workflow state machine."""
from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest

from conftest import FakeClock
from sensorctl.bootstrap.markers import Marker
from sensorctl.bootstrap.source import BootstrapConfig, load_bootstrap_config
from sensorctl.bootstrap.workflow import (
    ActionResult,
    OneShotWorkflow,
    RetryableActionError,
    SkipAction,
    TerminalActionError,
    WaitPolicy,
    WorkflowState,
)
from sensorctl.exit_codes import ExitCode
from sensorctl.locking import LockTimeoutError
from sensorctl.logging import StructuredLogger


class RecordingAction:
    """Action double that records payloads and returns a canned result."""

    def __init__(self, result: ActionResult | None = None, error: Exception | None = None) -> None:
        """Store the result to return or the error to raise."""
        self.result = result or ActionResult(message="did it", changed=1)
        self.error = error
        self.calls: list[BootstrapConfig] = []

    def __call__(self, payload: BootstrapConfig) -> ActionResult:
        """Record *payload* and return or raise."""
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        return self.result


def _workflow(
    tmp_path: Path,
    action: RecordingAction,
    clock: FakeClock,
    **overrides: object,
) -> OneShotWorkflow[BootstrapConfig]:
    options: dict[str, object] = {
        "name": "demo",
        "source": tmp_path / "discovery.json",
        "loader": load_bootstrap_config,
        "action": action,
        "logger": StructuredLogger(),
        "marker": Marker(name="demo", path=tmp_path / "markers" / "demo.done"),
        "clock": clock,
        "sleep": clock.sleep,
    }
    options.update(overrides)
    return OneShotWorkflow(**options)  # type: ignore[arg-type]


def _write_payload(tmp_path: Path, payload: object) -> None:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (tmp_path / "discovery.json").write_text(text, encoding="utf-8")


def test_success_sets_marker(tmp_path: Path, fake_clock: FakeClock) -> None:
    """A successful action passes through every state and sets the marker."""
    _write_payload(tmp_path, {"netbird_setup_key": "ABC123"})
    action = RecordingAction()
    workflow = _workflow(tmp_path, action, fake_clock)

    outcome = workflow.run()

    assert outcome.state is WorkflowState.DONE
    assert outcome.exit_code is ExitCode.OK
    assert outcome.history == [
        WorkflowState.NOT_STARTED,
        WorkflowState.WAITING_FOR_CONFIG,
        WorkflowState.CONFIG_READ,
        WorkflowState.ACTION_RUNNING,
        WorkflowState.DONE,
    ]
    assert action.calls[0].netbird_setup_key == "ABC123"
    assert (tmp_path / "markers" / "demo.done").exists()
    assert outcome.details["marker_created"] is True
    assert outcome.changed == 1


def test_marker_short_circuits_before_reading(tmp_path: Path, fake_clock: FakeClock) -> None:
    """With the marker set the source is never read and the action never runs."""
    marker = Marker(name="demo", path=tmp_path / "done")
    marker.set()
    _write_payload(tmp_path, "{broken")
    action = RecordingAction()

    outcome = _workflow(tmp_path, action, fake_clock, marker=marker).run()

    assert outcome.state is WorkflowState.DONE
    assert outcome.details["already_done"] is True
    assert outcome.history == [WorkflowState.NOT_STARTED, WorkflowState.DONE]
    assert action.calls == []


def test_force_ignores_marker(tmp_path: Path, fake_clock: FakeClock) -> None:
    """force re-runs a completed action."""
    marker = Marker(name="demo", path=tmp_path / "done")
    marker.set()
    _write_payload(tmp_path, {})
    action = RecordingAction()

    outcome = _workflow(tmp_path, action, fake_clock, marker=marker, force=True).run()

    assert outcome.state is WorkflowState.DONE
    assert len(action.calls) == 1
    assert outcome.details["marker_created"] is False


def test_missing_source_skips_after_waiting(tmp_path: Path, fake_clock: FakeClock) -> None:
    """missing_ok turns an absent file into SKIPPED once the wait expires."""
    action = RecordingAction()
    workflow = _workflow(
        tmp_path, action, fake_clock, wait=WaitPolicy(max_wait=10, poll_interval=5)
    )

    outcome = workflow.run()

    assert outcome.state is WorkflowState.SKIPPED
    assert outcome.exit_code is ExitCode.OK
    assert "after waiting 10s" in outcome.message
    assert fake_clock.now == pytest.approx(10)
    assert action.calls == []
    assert not (tmp_path / "markers" / "demo.done").exists()


def test_missing_source_can_be_retryable(tmp_path: Path, fake_clock: FakeClock) -> None:
    """Without missing_ok the supervisor is asked to retry."""
    outcome = _workflow(tmp_path, RecordingAction(), fake_clock, missing_ok=False).run()

    assert outcome.state is WorkflowState.FAILED_RETRYABLE
    assert outcome.exit_code is ExitCode.RETRYABLE


def test_parse_error_is_terminal_and_leaves_marker_unset(
    tmp_path: Path, fake_clock: FakeClock
) -> None:
    """Malformed JSON is a configuration defect, not a retry."""
    _write_payload(tmp_path, "{not json")
    action = RecordingAction()

    outcome = _workflow(tmp_path, action, fake_clock).run()

    assert outcome.state is WorkflowState.FAILED_TERMINAL
    assert outcome.exit_code is ExitCode.VALIDATION
    assert "invalid JSON" in str(outcome.details["detail"])
    assert action.calls == []
    assert not (tmp_path / "markers" / "demo.done").exists()


@pytest.mark.parametrize(
    ("error", "state", "code"),
    [
        (RetryableActionError("daemon busy"), WorkflowState.FAILED_RETRYABLE, ExitCode.RETRYABLE),
        (TerminalActionError("disk full"), WorkflowState.FAILED_TERMINAL, ExitCode.ENVIRONMENT),
        (
            TerminalActionError("bad key", exit_code=ExitCode.VALIDATION),
            WorkflowState.FAILED_TERMINAL,
            ExitCode.VALIDATION,
        ),
        (SkipAction("nothing configured"), WorkflowState.SKIPPED, ExitCode.OK),
    ],
)
def test_action_errors_map_to_states(
    tmp_path: Path,
    fake_clock: FakeClock,
    error: Exception,
    state: WorkflowState,
    code: ExitCode,
) -> None:
    """Action failures choose the final state; the marker is never set."""
    _write_payload(tmp_path, {})

    outcome = _workflow(tmp_path, RecordingAction(error=error), fake_clock).run()

    assert outcome.state is state
    assert outcome.exit_code is code
    assert str(error) in outcome.message
    assert not (tmp_path / "markers" / "demo.done").exists()


def test_dry_run_does_not_set_marker(tmp_path: Path, fake_clock: FakeClock) -> None:
    """Dry-run completes without persisting anything."""
    _write_payload(tmp_path, {})

    outcome = _workflow(tmp_path, RecordingAction(), fake_clock, dry_run=True).run()

    assert outcome.state is WorkflowState.DONE
    assert "marker" not in outcome.details
    assert not (tmp_path / "markers" / "demo.done").exists()


def test_action_can_decline_marker(tmp_path: Path, fake_clock: FakeClock) -> None:
    """Every-boot actions return set_marker=False."""
    _write_payload(tmp_path, {})
    action = RecordingAction(ActionResult(message="sent", set_marker=False))

    _workflow(tmp_path, action, fake_clock).run()

    assert not (tmp_path / "markers" / "demo.done").exists()


def test_marker_write_failure_is_terminal(tmp_path: Path, fake_clock: FakeClock) -> None:
    """An unwritable marker location reports an environment error."""
    _write_payload(tmp_path, {})
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")
    marker = Marker(name="demo", path=blocker / "sub" / "done")

    outcome = _workflow(tmp_path, RecordingAction(), fake_clock, marker=marker).run()

    assert outcome.state is WorkflowState.FAILED_TERMINAL
    assert outcome.exit_code is ExitCode.ENVIRONMENT


def test_lock_timeout_is_retryable(tmp_path: Path, fake_clock: FakeClock) -> None:
    """A concurrent run holding the lock yields a retryable failure."""
    _write_payload(tmp_path, {})
    action = RecordingAction()

    @contextmanager
    def busy_lock() -> Iterator[None]:
        raise LockTimeoutError("Timed out waiting for lock demo.lock")
        yield  # pragma: no cover

    outcome = _workflow(tmp_path, action, fake_clock, lock=busy_lock).run()

    assert outcome.state is WorkflowState.FAILED_RETRYABLE
    assert action.calls == []


def test_marker_set_while_waiting_for_lock(tmp_path: Path, fake_clock: FakeClock) -> None:
    """The marker is re-checked once the lock is held."""
    _write_payload(tmp_path, {})
    marker = Marker(name="demo", path=tmp_path / "done")
    action = RecordingAction()

    @contextmanager
    def racing_lock() -> Iterator[None]:
        marker.set()
        yield

    outcome = _workflow(tmp_path, action, fake_clock, marker=marker, lock=racing_lock).run()

    assert outcome.state is WorkflowState.DONE
    assert "concurrent run" in outcome.message
    assert action.calls == []


def test_outcome_to_dict(tmp_path: Path, fake_clock: FakeClock) -> None:
    """The JSON summary carries state, exit code and history."""
    _write_payload(tmp_path, {})

    data = _workflow(tmp_path, RecordingAction(), fake_clock).run().to_dict()

    assert data["workflow"] == "demo"
    assert data["state"] == "done"
    assert data["exit_code"] == 0
    assert data["history"][0] == "not-started"


def test_final_states_are_terminal() -> None:
    """Only the four end states are terminal."""
    assert WorkflowState.DONE.is_terminal
    assert WorkflowState.FAILED_RETRYABLE.is_terminal
    assert not WorkflowState.ACTION_RUNNING.is_terminal
    assert not WorkflowState.NOT_STARTED.is_terminal


def test_marker_flush_failure_is_terminal(
    tmp_path: Path, fake_clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An I/O error while flushing the marker ends in exit 3, not a traceback."""
    _write_payload(tmp_path, {})
    marker = Marker(name="demo", path=tmp_path / "state" / "done")

    def failing_fsync(fd: int) -> None:
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("sensorctl.bootstrap.markers.os.fsync", failing_fsync)

    outcome = _workflow(tmp_path, RecordingAction(), fake_clock, marker=marker).run()

    assert outcome.state is WorkflowState.FAILED_TERMINAL
    assert outcome.exit_code is ExitCode.ENVIRONMENT
    assert not marker.is_set()
