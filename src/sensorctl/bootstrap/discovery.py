"""Apply a discovery payload to the local host.

Discovery apply is the first action on boot. It installs SSH keys and hands
the remaining secrets off to the files later actions read:

* the Netbird setup key goes to ``netbird.setup_key_file``;
* the notification endpoint goes to ``notify.config_file``.

Both hand-off files are written atomically with mode ``0600``. The hostname is
only changed when ``discovery.apply_hostname`` is enabled or a hostname is
passed explicitly.
"""
from __future__ import annotations

import json
import os
import socket
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..config import AppConfig, resolve_hostname
from ..exit_codes import ExitCode
from ..logging import StructuredLogger
from .source import BootstrapConfig
from .ssh_keys import (
    SSHKeyError,
    SSHKeyTarget,
    apply_ssh_key_plan,
    describe_key,
    plan_ssh_keys,
    resolve_targets,
)
from .workflow import ActionResult, RetryableActionError, TerminalActionError

StepStatus = Literal["applied", "unchanged", "skipped", "planned"]


class HandOffError(RuntimeError):
    """Raised when a hand-off file cannot be written."""


class HostnameError(RuntimeError):
    """Raised when the hostname could not be changed."""


@dataclass(slots=True)
class StepResult:
    """Outcome of one discovery apply step."""

    name: str
    status: StepStatus
    message: str
    changed: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "changed": self.changed,
        }


@dataclass(slots=True)
class DiscoveryApplyResult:
    """Aggregated discovery apply outcome."""

    steps: list[StepResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> int:
        """Return the total number of changes made (or planned)."""
        return sum(step.changed for step in self.steps)

    def step(self, name: str) -> StepResult | None:
        """Return the step called *name*, if it ran."""
        for entry in self.steps:
            if entry.name == name:
                return entry
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "steps": [step.to_dict() for step in self.steps],
            "warnings": list(self.warnings),
        }


def apply_discovery(
    payload: BootstrapConfig,
    settings: AppConfig,
    *,
    hostname: str | None = None,
    dry_run: bool = False,
    targets: Sequence[SSHKeyTarget] | None = None,
    logger: StructuredLogger | None = None,
) -> DiscoveryApplyResult:
    """Apply *payload* and return per-step results.

    *targets* overrides the passwd lookup of ``ssh.accounts``.
    """
    result = DiscoveryApplyResult(dry_run=dry_run)
    result.steps.append(_apply_ssh_keys(payload, settings, targets, result, dry_run, logger))
    result.steps.append(
        _hand_off(
            "netbird-setup-key",
            settings.netbird.setup_key_file,
            f"{payload.netbird_setup_key}\n" if payload.netbird_setup_key else None,
            absent="No Netbird setup key in discovery payload.",
            dry_run=dry_run,
        )
    )
    ntfy_text = None
    if payload.ntfy_config is not None:
        ntfy_text = json.dumps(payload.ntfy_config.to_dict(), sort_keys=True) + "\n"
    result.steps.append(
        _hand_off(
            "ntfy-config",
            settings.notify.config_file,
            ntfy_text,
            absent="No NTFY configuration in discovery payload.",
            dry_run=dry_run,
        )
    )
    result.steps.append(_apply_hostname(payload, settings, hostname, dry_run))
    return result


def discovery_action(
    settings: AppConfig,
    *,
    hostname: str | None = None,
    dry_run: bool = False,
    targets: Sequence[SSHKeyTarget] | None = None,
    logger: StructuredLogger | None = None,
) -> Callable[[BootstrapConfig], ActionResult]:
    """Return a workflow action that applies the payload it receives."""

    def _action(payload: BootstrapConfig) -> ActionResult:
        try:
            outcome = apply_discovery(
                payload,
                settings,
                hostname=hostname,
                dry_run=dry_run,
                targets=targets,
                logger=logger,
            )
        except (SSHKeyError, HandOffError) as exc:
            raise TerminalActionError(str(exc), exit_code=ExitCode.ENVIRONMENT) from exc
        except HostnameError as exc:
            raise RetryableActionError(str(exc)) from exc
        verb = "planned" if dry_run else "applied"
        return ActionResult(
            message=f"Discovery configuration {verb} ({outcome.changed} change(s)).",
            changed=outcome.changed,
            warnings=list(outcome.warnings),
            details={"discovery": outcome.to_dict()},
        )

    return _action


def write_secret_file(path: Path, content: str) -> bool:
    """Atomically write *content* to *path* with mode ``0600``.

    Returns ``False`` when the file already holds exactly *content*.
    """
    try:
        if path.exists() and path.read_text(encoding="utf-8") == content:
            if (path.stat().st_mode & 0o777) != 0o600:
                path.chmod(0o600)
            return False
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        temp = path.with_name(f".{path.name}.tmp")
        fd = os.open(temp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp, 0o600)
        temp.replace(path)
    except OSError as exc:
        raise HandOffError(f"Unable to write {path}: {exc.strerror or exc}") from exc
    return True


def current_hostname() -> str:
    """Return the running kernel hostname."""
    return socket.gethostname()


def set_hostname(hostnamectl_bin: str, name: str) -> None:
    """Set the static hostname through ``hostnamectl``."""
    args = [hostnamectl_bin, "set-hostname", name]
    try:
        result = _run_command(args)
    except FileNotFoundError as exc:
        raise HostnameError(f"{hostnamectl_bin} not found: {exc}") from exc
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise HostnameError(
            f"{hostnamectl_bin} set-hostname failed (exit {result.returncode}): {message}"
        )


def _run_command(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603, S607
        list(args),
        capture_output=True,
        text=True,
        check=False,
    )


def _apply_ssh_keys(
    payload: BootstrapConfig,
    settings: AppConfig,
    targets: Sequence[SSHKeyTarget] | None,
    result: DiscoveryApplyResult,
    dry_run: bool,
    logger: StructuredLogger | None,
) -> StepResult:
    if not payload.ssh_keys:
        return StepResult("ssh-keys", "skipped", "No SSH keys in discovery payload.")

    if targets is None:
        resolved, warnings = resolve_targets(settings.ssh.accounts)
        result.warnings.extend(warnings)
    else:
        resolved = list(targets)
    plan = plan_ssh_keys(payload.ssh_keys, resolved)
    applied = apply_ssh_key_plan(plan, dry_run=dry_run)

    if logger is not None:
        for account, lines in applied.added.items():
            for line in lines:
                verb = "Would add" if dry_run else "Added"
                logger.info(f"{verb} SSH key for {account}: {describe_key(line)}")

    accounts = ", ".join(target.account for target in resolved) or "no accounts"
    if applied.changed == 0:
        return StepResult("ssh-keys", "unchanged", f"SSH keys already present for {accounts}.")
    status: StepStatus = "planned" if dry_run else "applied"
    return StepResult(
        "ssh-keys",
        status,
        f"{applied.changed} SSH key line(s) for {accounts}.",
        changed=applied.changed,
    )


def _hand_off(
    name: str,
    path: Path,
    content: str | None,
    *,
    absent: str,
    dry_run: bool,
) -> StepResult:
    if content is None:
        return StepResult(name, "skipped", absent)
    if dry_run:
        return StepResult(name, "planned", f"Would write {path}.", changed=1)
    if write_secret_file(path, content):
        return StepResult(name, "applied", f"Saved to {path}.", changed=1)
    return StepResult(name, "unchanged", f"{path} already up to date.")


def _apply_hostname(
    payload: BootstrapConfig,
    settings: AppConfig,
    explicit: str | None,
    dry_run: bool,
) -> StepResult:
    if explicit is None and not settings.discovery.apply_hostname:
        return StepResult("hostname", "skipped", "Hostname management disabled.")
    desired = resolve_hostname(explicit, payload.hostname, settings.discovery.default_hostname)
    if current_hostname() == desired:
        return StepResult("hostname", "unchanged", f"Hostname already {desired}.")
    if dry_run:
        return StepResult("hostname", "planned", f"Would set hostname to {desired}.", changed=1)
    set_hostname(settings.discovery.hostnamectl_bin, desired)
    return StepResult("hostname", "applied", f"Hostname set to {desired}.", changed=1)


__all__ = [
    "DiscoveryApplyResult",
    "HandOffError",
    "HostnameError",
    "StepResult",
    "apply_discovery",
    "current_hostname",
    "discovery_action",
    "set_hostname",
    "write_secret_file",
]
