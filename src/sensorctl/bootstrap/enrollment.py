"""Netbird VPN enrollment and auto-connect workflows.

Enrollment consumes the setup key exactly once: the marker at
``<netbird.state_dir>/.enrolled`` is written only after ``netbird up``
succeeds, and a set marker stops every later run before the key is read.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from contextlib import AbstractContextManager
from pathlib import Path

from ..config import AppConfig
from ..logging import StructuredLogger
from ..providers.netbird import NetbirdError, NetbirdProvider
from .markers import Marker
from .source import BootstrapNotFoundError, BootstrapParseError, load_bootstrap_config
from .wait import Clock, Sleeper, wait_for
from .workflow import (
    ActionResult,
    OneShotWorkflow,
    RetryableActionError,
    SkipAction,
    WaitPolicy,
)

ENROLL_WORKFLOW = "enroll"
CONNECT_WORKFLOW = "connect"
DAEMON_POLL = 1.0

LockFactory = Callable[[], AbstractContextManager[object]]


def enrollment_marker(settings: AppConfig) -> Marker:
    """Return the marker recording a completed enrollment."""
    return Marker(name="netbird-enrolled", path=settings.netbird.marker_path)


def read_setup_key(path: Path) -> str:
    """Return the handed-off setup key stored at *path*.

    Raises :class:`BootstrapNotFoundError` when the file is missing and
    :class:`BootstrapParseError` when it holds an empty or ``null`` key.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise BootstrapNotFoundError(path) from None
    except OSError as exc:
        raise BootstrapParseError(path, f"unreadable ({exc.strerror or exc})") from exc
    key = raw.strip()
    if not key or key == "null":
        raise BootstrapParseError(path, "setup key is empty")
    return key


def resolve_setup_key(bootstrap_file: Path, setup_key_file: Path) -> str:
    """Return the setup key from the payload, else from the hand-off file."""
    try:
        payload = load_bootstrap_config(bootstrap_file)
    except BootstrapNotFoundError:
        payload = None
    if payload is not None and payload.netbird_setup_key:
        return payload.netbird_setup_key
    return read_setup_key(setup_key_file)


def enroll_action(
    settings: AppConfig,
    provider: NetbirdProvider,
    logger: StructuredLogger,
    *,
    dry_run: bool = False,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> Callable[[str], ActionResult]:
    """Return the action that runs ``netbird up`` with the resolved key."""
    netbird = settings.netbird

    def _action(setup_key: str) -> ActionResult:
        preview = provider.command_preview(
            "up",
            "--setup-key",
            setup_key,
            "--management-url",
            netbird.management_url,
            secrets=(setup_key,),
        )
        if dry_run:
            return ActionResult(
                message="Would enroll with the discovered setup key.",
                details={"command": preview},
            )
        _await_daemon(provider, netbird.daemon_wait, logger, clock=clock, sleep=sleep)
        try:
            provider.up(
                setup_key,
                management_url=netbird.management_url,
                admin_url=netbird.admin_url,
            )
        except NetbirdError as exc:
            raise RetryableActionError(f"Enrollment failed, will retry: {exc}") from exc
        return ActionResult(
            message=f"Enrolled with {netbird.management_url}.",
            changed=1,
            details={"management_url": netbird.management_url},
        )

    return _action


def build_enroll_workflow(
    settings: AppConfig,
    provider: NetbirdProvider,
    logger: StructuredLogger,
    *,
    lock: LockFactory | None = None,
    dry_run: bool = False,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> OneShotWorkflow[str]:
    """Return the marker-guarded enrollment workflow."""
    bootstrap_file = settings.bootstrap_file
    key_file = settings.netbird.setup_key_file

    def _ready() -> bool:
        return key_file.exists() or bootstrap_file.exists()

    return OneShotWorkflow(
        name=ENROLL_WORKFLOW,
        source=key_file,
        loader=lambda _path: resolve_setup_key(bootstrap_file, key_file),
        action=enroll_action(settings, provider, logger, dry_run=dry_run, clock=clock, sleep=sleep),
        logger=logger,
        marker=enrollment_marker(settings),
        wait=WaitPolicy(
            max_wait=settings.netbird.key_wait,
            poll_interval=settings.netbird.key_poll,
        ),
        ready=_ready,
        missing_ok=False,
        dry_run=dry_run,
        lock=lock,
        clock=clock,
        sleep=sleep,
    )


def build_connect_workflow(
    settings: AppConfig,
    provider: NetbirdProvider,
    logger: StructuredLogger,
    *,
    lock: LockFactory | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> OneShotWorkflow[bool]:
    """Return the workflow that reconnects an enrolled peer."""
    marker = enrollment_marker(settings)

    def _action(enrolled: bool) -> ActionResult:
        if not enrolled:
            raise SkipAction("Device not enrolled; skipping auto-connect.")
        _await_daemon(provider, settings.netbird.daemon_wait, logger, clock=clock, sleep=sleep)
        try:
            provider.connect()
        except NetbirdError as exc:
            raise RetryableActionError(f"Connection failed, will retry: {exc}") from exc
        return ActionResult(message="Netbird connected.", set_marker=False)

    return OneShotWorkflow(
        name=CONNECT_WORKFLOW,
        source=marker.path,
        loader=lambda _path: marker.is_set(),
        action=_action,
        logger=logger,
        ready=lambda: True,
        lock=lock,
        clock=clock,
        sleep=sleep,
    )


def _await_daemon(
    provider: NetbirdProvider,
    max_wait: float,
    logger: StructuredLogger,
    *,
    clock: Clock,
    sleep: Sleeper,
) -> None:
    if provider.daemon_ready():
        return
    logger.info(f"Netbird daemon at {provider.daemon_addr} not running; starting it.")
    if not provider.start_service():
        logger.warning("Unable to start the Netbird daemon; waiting for it anyway.")
    ready = wait_for(
        provider.daemon_ready,
        max_wait,
        DAEMON_POLL,
        clock=clock,
        sleep=sleep,
    )
    if not ready:
        logger.warning(
            f"Netbird daemon at {provider.daemon_addr} not answering after {max_wait:g}s; "
            "attempting anyway."
        )


__all__ = [
    "build_connect_workflow",
    "build_enroll_workflow",
    "enroll_action",
    "enrollment_marker",
    "read_setup_key",
    "resolve_setup_key",
]
