"""Netbird client provider for VPN enrollment."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

REDACTED = "***"


class NetbirdError(RuntimeError):
    """Raised when a netbird client invocation fails."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Record *message* and the client's *returncode* when one exists."""
        super().__init__(message)
        self.returncode = returncode


@dataclass(slots=True)
class NetbirdProvider:
    """Drive the netbird CLI against a dedicated daemon socket."""

    binary: str = "netbird"
    daemon_addr: str = "unix:///var/run/netbird-wt0/sock"
    service_unit: str = "netbird-wt0.service"
    systemctl_bin: str = "systemctl"

    def start_service(self) -> bool:
        """Start the daemon via ``netbird service start``, else via systemctl.

        Failures are tolerated; returns ``True`` when either command succeeded.
        """
        attempts = (
            (self.binary, "--daemon-addr", self.daemon_addr, "service", "start"),
            (self.systemctl_bin, "start", self.service_unit),
        )
        for args in attempts:
            try:
                result = self._run_command(
                    args, check=False, error_prefix=" ".join(args), dry_run=False
                )
            except NetbirdError:
                continue
            if result.returncode == 0:
                return True
        return False

    def status(self) -> subprocess.CompletedProcess[str]:
        """Return ``netbird status`` output without raising on failure."""
        return self._netbird("status", check=False)

    def daemon_ready(self) -> bool:
        """Return ``True`` when the daemon answers a status query."""
        try:
            result = self.status()
        except NetbirdError:
            return False
        return result.returncode == 0

    def status_text(self) -> str:
        """Return ``Connected``, ``Disconnected`` or ``Unknown`` (client missing)."""
        try:
            result = self.status()
        except NetbirdError:
            return "Unknown"
        return "Connected" if result.returncode == 0 else "Disconnected"

    def up(
        self,
        setup_key: str,
        *,
        management_url: str,
        admin_url: str | None = None,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Enroll the peer using *setup_key*.

        The key is passed on the command line only; it is masked in every
        error message this provider produces.
        """
        args = ["up", "--setup-key", setup_key, "--management-url", management_url]
        if admin_url:
            args.extend(["--admin-url", admin_url])
        return self._netbird(*args, dry_run=dry_run, secrets=(setup_key,))

    def connect(self, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Bring an already-enrolled peer up without a setup key."""
        return self._netbird("up", dry_run=dry_run)

    def command_preview(self, *args: str, secrets: Sequence[str] = ()) -> list[str]:
        """Return the full argv for *args* with *secrets* masked."""
        return _mask([self.binary, "--daemon-addr", self.daemon_addr, *args], secrets)

    # ------------------------------------------------------------------
    def _netbird(
        self,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary, "--daemon-addr", self.daemon_addr, *args]
        preview = " ".join(_mask(command[:1] + list(args[:1]), secrets))
        return self._run_command(
            command,
            check=check,
            error_prefix=preview,
            dry_run=dry_run,
            secrets=secrets,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(
                _mask(args, secrets),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NetbirdError(f"{args[0]} not found: {exc.strerror or exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = _scrub(stderr.strip() or stdout.strip() or "no output", secrets)
            raise NetbirdError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


def _mask(args: Sequence[str], secrets: Sequence[str]) -> list[str]:
    hidden = {secret for secret in secrets if secret}
    return [REDACTED if arg in hidden else arg for arg in args]


def _scrub(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


__all__ = ["NetbirdError", "NetbirdProvider"]
