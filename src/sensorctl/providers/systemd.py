"""Systemd provider rendering the retry contract of each bootstrap action.

sensorctl never retries in-process. Every action is a ``Type=oneshot`` unit;
the supervisor re-runs failed actions according to the ``Restart=`` and
``StartLimit*`` settings declared here, and the marker files make repeated
runs no-ops once an action has succeeded.
"""
from __future__ import annotations

import math
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..config import AppConfig
from ..templates import TemplateEngine

UNIT_TEMPLATE = "systemd/oneshot.service.j2"
NETWORK_ONLINE = "network-online.target"
# Headroom for system info collection on top of the notify run budget.
NOTIFY_TIMEOUT_SLACK = 15
NOTIFY_TIMEOUT_MIN = 30


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(frozen=True, slots=True)
class UnitSpec:
    """Declarative description of one one-shot unit."""

    name: str
    description: str
    command: str
    after: tuple[str, ...] = ()
    wants: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    before: tuple[str, ...] = ()
    timeout_start: int = 90
    restart: str = "no"
    restart_sec: int = 30
    start_limit_burst: int | None = None
    start_limit_interval: int = 600
    condition_path_exists: str | None = None
    remain_after_exit: bool = True

    @property
    def unit_name(self) -> str:
        """Return the ``.service`` file name."""
        return f"{self.name}.service"

    def context(self) -> dict[str, object]:
        """Return the template context for this unit."""
        return {
            "description": self.description,
            "exec_start": self.command,
            "after": list(self.after),
            "wants": list(self.wants),
            "requires": list(self.requires),
            "before": list(self.before),
            "timeout_start": self.timeout_start,
            "restart": self.restart,
            "restart_sec": self.restart_sec,
            "start_limit_burst": self.start_limit_burst,
            "start_limit_interval": self.start_limit_interval,
            "condition_path_exists": self.condition_path_exists,
            "remain_after_exit": self.remain_after_exit,
        }


def notify_timeout(config: AppConfig) -> int:
    """Return a ``TimeoutStartSec`` covering the action lock wait and the notify budget."""
    budget = math.ceil(config.lock_timeout + config.notify.run_budget) + NOTIFY_TIMEOUT_SLACK
    return max(NOTIFY_TIMEOUT_MIN, budget)


def default_unit_specs(config: AppConfig) -> list[UnitSpec]:
    """Return the units for discovery apply, enrollment, connect and notify."""
    exe = config.systemd.exec_path
    extra = f" --config-file {config.config_file}" if config.config_file.exists() else ""
    marker = str(config.netbird.marker_path)
    discovery = "sensorctl-apply-discovery.service"
    enroll = "sensorctl-enroll.service"
    vpn_daemon = "netbird-wt0.service"

    return [
        UnitSpec(
            name="sensorctl-apply-discovery",
            description="Apply configuration from discovery service",
            command=f"{exe}{extra} apply-discovery",
            after=(NETWORK_ONLINE,),
            wants=(NETWORK_ONLINE,),
            before=("sshd.service",),
            timeout_start=120,
        ),
        UnitSpec(
            name="sensorctl-enroll",
            description="Enroll Netbird VPN with discovered setup key",
            command=f"{exe}{extra} enroll",
            after=(NETWORK_ONLINE, discovery, vpn_daemon),
            wants=(NETWORK_ONLINE,),
            requires=(discovery,),
            timeout_start=300,
            restart="on-failure",
            restart_sec=30,
            start_limit_burst=3,
            start_limit_interval=600,
            condition_path_exists=f"!{marker}",
        ),
        UnitSpec(
            name="sensorctl-connect",
            description="Auto-connect enrolled Netbird VPN",
            command=f"{exe}{extra} connect",
            after=(NETWORK_ONLINE, enroll, vpn_daemon),
            wants=(NETWORK_ONLINE,),
            timeout_start=120,
            restart="on-failure",
            restart_sec=30,
            start_limit_burst=3,
            start_limit_interval=600,
            condition_path_exists=marker,
        ),
        UnitSpec(
            name="sensorctl-notify",
            description="Send boot notification via NTFY",
            command=f"{exe}{extra} notify",
            after=(NETWORK_ONLINE, discovery, vpn_daemon, enroll),
            wants=(NETWORK_ONLINE,),
            timeout_start=notify_timeout(config),
            restart="no",
        ),
    ]


@dataclass(slots=True)
class UnitRenderResult:
    """Per-unit outcome of :meth:`SystemdProvider.render_units`."""

    rendered: dict[str, str] = field(default_factory=dict)
    changed: list[str] = field(default_factory=list)
    reloaded: bool = False


@dataclass(slots=True)
class SystemdProvider:
    """Render sensorctl unit files and reload the manager when they change."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_path(self, spec: UnitSpec) -> Path:
        """Return the full path for *spec*'s unit file."""
        return self.systemd_dir / spec.unit_name

    def render_text(self, spec: UnitSpec) -> str:
        """Return the rendered unit file for *spec*."""
        return self.templates.render_to_string(UNIT_TEMPLATE, spec.context())

    def render_unit(self, spec: UnitSpec, *, reload: bool = True) -> bool:
        """Write *spec*'s unit file; reload systemd only when it changed."""
        changed = self.templates.render_to_path(
            UNIT_TEMPLATE, self.unit_path(spec), spec.context(), mode=0o644
        )
        if changed and reload:
            self._reload_daemon()
        return changed

    def render_units(self, specs: Sequence[UnitSpec], *, dry_run: bool = False) -> UnitRenderResult:
        """Render every spec, issuing at most one ``daemon-reload``."""
        result = UnitRenderResult()
        for spec in specs:
            result.rendered[spec.unit_name] = self.render_text(spec)
            if dry_run:
                continue
            if self.render_unit(spec, reload=False):
                result.changed.append(spec.unit_name)
        if result.changed:
            self._reload_daemon()
            result.reloaded = True
        return result

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(self, command: str) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [self.systemctl_bin, command],
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self, args: Sequence[str], *, error_prefix: str
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "SystemdError",
    "SystemdProvider",
    "UnitRenderResult",
    "UnitSpec",
    "default_unit_specs",
    "notify_timeout",
]
