"""Provider interfaces for sensorctl."""
from __future__ import annotations

from .netbird import NetbirdError, NetbirdProvider
from .ntfy import NtfyClient, NtfyDelivery, NtfyError
from .systemd import SystemdError, SystemdProvider, UnitRenderResult, UnitSpec, default_unit_specs

__all__ = [
    "NetbirdError",
    "NetbirdProvider",
    "NtfyClient",
    "NtfyDelivery",
    "NtfyError",
    "SystemdError",
    "SystemdProvider",
    "UnitRenderResult",
    "UnitSpec",
    "default_unit_specs",
]
