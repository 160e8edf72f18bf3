"""Boot notification: gather host facts and publish them to ntfy.

Runs on every boot, so it has no marker. A missing endpoint is not an error
and a failed delivery is logged as a warning; neither fails the boot.
"""
from __future__ import annotations

import platform
import socket
import subprocess
import time
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from pathlib import Path

import requests

from ..config import AppConfig
from ..logging import StructuredLogger
from ..providers.netbird import NetbirdProvider
from ..providers.ntfy import NtfyClient, NtfyError
from .source import (
    BootstrapNotFoundError,
    NtfyConfig,
    load_bootstrap_config,
    load_ntfy_config,
)
from .wait import Clock, Sleeper, wait_for
from .workflow import ActionResult, OneShotWorkflow, SkipAction

NOTIFY_WORKFLOW = "notify"
UPTIME_PATH = Path("/proc/uptime")
VPN_POLL = 1.0

CommandRunner = Callable[[Sequence[str]], subprocess.CompletedProcess[str]]


@dataclass(slots=True)
class SystemInfo:
    """Host facts included in the boot message."""

    hostname: str
    kernel: str
    uptime: str
    interfaces: list[tuple[str, str]] = field(default_factory=list)
    vpn_status: str = "Unknown"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "hostname": self.hostname,
            "kernel": self.kernel,
            "uptime": self.uptime,
            "interfaces": [{"name": name, "address": addr} for name, addr in self.interfaces],
            "vpn_status": self.vpn_status,
        }


def run_command(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    """Run *args* and capture text output without raising on failure."""
    return subprocess.run(  # noqa: S603, S607
        list(args),
        capture_output=True,
        text=True,
        check=False,
    )


def parse_ipv4_addresses(output: str) -> list[tuple[str, str]]:
    """Parse ``ip -4 -o addr show`` output into ``(interface, address)`` pairs.

    The loopback interface is skipped.
    """
    pairs: list[tuple[str, str]] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[2] != "inet":
            continue
        iface = fields[1].rstrip(":").split("@", 1)[0]
        if iface == "lo":
            continue
        pairs.append((iface, fields[3].split("/", 1)[0]))
    return pairs


def format_uptime(seconds: float) -> str:
    """Render *seconds* the way ``uptime -p`` does."""
    minutes_total = int(seconds) // 60
    weeks, rest = divmod(minutes_total, 7 * 24 * 60)
    days, rest = divmod(rest, 24 * 60)
    hours, minutes = divmod(rest, 60)
    parts = []
    for value, unit in ((weeks, "week"), (days, "day"), (hours, "hour"), (minutes, "minute")):
        if value:
            parts.append(f"{value} {unit}{'' if value == 1 else 's'}")
    if not parts:
        parts.append("0 minutes")
    return "up " + ", ".join(parts)


def read_uptime(path: Path = UPTIME_PATH) -> str:
    """Return the formatted uptime, or ``unknown`` when it cannot be read."""
    try:
        seconds = float(path.read_text(encoding="utf-8").split()[0])
    except (OSError, ValueError, IndexError):
        return "unknown"
    return format_uptime(seconds)


def interface_has_ipv4(
    interface: str,
    *,
    ip_bin: str = "ip",
    runner: CommandRunner = run_command,
) -> bool:
    """Return ``True`` when *interface* exists and carries an IPv4 address."""
    try:
        result = runner([ip_bin, "-4", "-o", "addr", "show", "dev", interface])
    except FileNotFoundError:
        return False
    return result.returncode == 0 and " inet " in f" {result.stdout or ''}"


def collect_system_info(
    *,
    ip_bin: str = "ip",
    netbird: NetbirdProvider | None = None,
    runner: CommandRunner = run_command,
    uptime_path: Path = UPTIME_PATH,
) -> SystemInfo:
    """Gather hostname, kernel, uptime, IPv4 interfaces and VPN status."""
    try:
        result = runner([ip_bin, "-4", "-o", "addr", "show"])
        interfaces = parse_ipv4_addresses(result.stdout or "") if result.returncode == 0 else []
    except FileNotFoundError:
        interfaces = []
    return SystemInfo(
        hostname=socket.gethostname(),
        kernel=platform.release(),
        uptime=read_uptime(uptime_path),
        interfaces=interfaces,
        vpn_status=netbird.status_text() if netbird is not None else "Unknown",
    )


def build_title(info: SystemInfo) -> str:
    """Return the notification title."""
    return f"{info.hostname} - Boot Complete"


def build_message(info: SystemInfo) -> str:
    """Return the plain-text notification body."""
    if info.interfaces:
        iface_lines = "\n".join(f"  {name}: {addr}" for name, addr in info.interfaces)
    else:
        iface_lines = "  (none)"
    return (
        "Sensor Boot Complete\n"
        "\n"
        f"Hostname: {info.hostname}\n"
        f"Kernel: {info.kernel}\n"
        f"Uptime: {info.uptime}\n"
        "\n"
        "Network Interfaces:\n"
        f"{iface_lines}\n"
        "\n"
        f"VPN Status: {info.vpn_status}\n"
        "\n"
        "System ready for SSH access"
    )


def resolve_ntfy_config(config_file: Path, bootstrap_file: Path) -> NtfyConfig | None:
    """Return the endpoint from the hand-off file, else from the payload.

    Raises :class:`BootstrapNotFoundError` when neither file exists.
    """
    if config_file.exists():
        return load_ntfy_config(config_file)
    try:
        return load_bootstrap_config(bootstrap_file).ntfy_config
    except BootstrapNotFoundError:
        raise BootstrapNotFoundError(config_file) from None


def notify_action(
    settings: AppConfig,
    logger: StructuredLogger,
    *,
    netbird: NetbirdProvider | None = None,
    session: requests.Session | None = None,
    runner: CommandRunner = run_command,
    dry_run: bool = False,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> Callable[[NtfyConfig | None], ActionResult]:
    """Return the action that publishes the boot message."""
    notify = settings.notify

    def _action(endpoint: NtfyConfig | None) -> ActionResult:
        if endpoint is None:
            raise SkipAction("No NTFY URL configured; skipping notification.")

        warnings: list[str] = []
        vpn_up = wait_for(
            lambda: interface_has_ipv4(notify.vpn_interface, ip_bin=notify.ip_bin, runner=runner),
            notify.vpn_wait,
            VPN_POLL,
            clock=clock,
            sleep=sleep,
        )
        if not vpn_up:
            message = (
                f"VPN interface {notify.vpn_interface} did not come up within "
                f"{notify.vpn_wait:g}s; proceeding anyway."
            )
            logger.warning(message)
            warnings.append(message)

        info = collect_system_info(ip_bin=notify.ip_bin, netbird=netbird, runner=runner)
        title = build_title(info)
        body = build_message(info)
        details: dict[str, object] = {"title": title, "system": info.to_dict()}
        if dry_run:
            details["message"] = body
            return ActionResult(
                message="Would send boot notification.",
                warnings=warnings,
                details=details,
                set_marker=False,
            )

        client = NtfyClient(
            config=endpoint,
            timeout=notify.timeout,
            retries=notify.retries,
            retry_delay=notify.retry_delay,
            session=session if session is not None else requests.Session(),
            sleep=sleep,
        )
        try:
            delivery = client.publish(title, body)
        except NtfyError as exc:
            message = f"Failed to send boot notification (non-fatal): {exc}"
            logger.warning(message)
            warnings.append(message)
            details["attempts"] = exc.attempts
            return ActionResult(
                message="Boot notification not delivered.",
                warnings=warnings,
                details=details,
                set_marker=False,
            )
        details["attempts"] = delivery.attempts
        details["status_code"] = delivery.status_code
        return ActionResult(
            message="Boot notification sent.",
            changed=1,
            warnings=warnings,
            details=details,
            set_marker=False,
        )

    return _action


def build_notify_workflow(
    settings: AppConfig,
    logger: StructuredLogger,
    *,
    netbird: NetbirdProvider | None = None,
    session: requests.Session | None = None,
    runner: CommandRunner = run_command,
    lock: Callable[[], AbstractContextManager[object]] | None = None,
    dry_run: bool = False,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> OneShotWorkflow[NtfyConfig | None]:
    """Return the boot notification workflow."""
    config_file = settings.notify.config_file
    bootstrap_file = settings.bootstrap_file
    return OneShotWorkflow(
        name=NOTIFY_WORKFLOW,
        source=config_file,
        loader=lambda _path: resolve_ntfy_config(config_file, bootstrap_file),
        action=notify_action(
            settings,
            logger,
            netbird=netbird,
            session=session,
            runner=runner,
            dry_run=dry_run,
            clock=clock,
            sleep=sleep,
        ),
        logger=logger,
        ready=lambda: config_file.exists() or bootstrap_file.exists(),
        missing_ok=True,
        dry_run=dry_run,
        lock=lock,
        clock=clock,
        sleep=sleep,
    )


__all__ = [
    "SystemInfo",
    "build_message",
    "build_notify_workflow",
    "build_title",
    "collect_system_info",
    "format_uptime",
    "interface_has_ipv4",
    "notify_action",
    "parse_ipv4_addresses",
    "read_uptime",
    "resolve_ntfy_config",
    "run_command",
]
