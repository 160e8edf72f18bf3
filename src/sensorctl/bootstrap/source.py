"""Readers for the JSON payloads written by the provisioning service.

The bootstrap file is an immutable snapshot from sensorctl's point of view: it
is read once per invocation and never modified. A missing file means "not yet
provisioned" and is reported with :class:`BootstrapNotFoundError` so callers
can downgrade it; malformed content raises :class:`BootstrapParseError` with
the offending field named.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class BootstrapError(RuntimeError):
    """Base error for bootstrap payload handling."""


class BootstrapNotFoundError(BootstrapError):
    """Raised when the payload file has not been written yet."""

    def __init__(self, path: Path) -> None:
        """Record the missing *path*."""
        super().__init__(f"Bootstrap payload not found at {path}.")
        self.path = path


class BootstrapParseError(BootstrapError):
    """Raised when the payload exists but cannot be interpreted."""

    def __init__(self, path: Path, detail: str) -> None:
        """Record *path* and the field-level *detail*."""
        super().__init__(f"Invalid bootstrap payload at {path}: {detail}")
        self.path = path
        self.detail = detail


class AuthType(str, Enum):
    """Authentication modes supported by the notification endpoint."""

    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


@dataclass(frozen=True, slots=True)
class NtfyConfig:
    """Notification endpoint settings."""

    url: str
    auth_type: AuthType = AuthType.NONE
    username: str | None = None
    password: str | None = None
    token: str | None = None
    priority: str = "default"
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return the JSON shape the provisioning service uses."""
        payload: dict[str, object] = {
            "url": self.url,
            "auth_type": self.auth_type.value,
            "priority": self.priority,
            "tags": list(self.tags),
        }
        for key in ("username", "password", "token"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class BootstrapConfig:
    """Parsed discovery payload; every field is optional."""

    hostname: str | None = None
    ssh_keys: tuple[str, ...] = ()
    netbird_setup_key: str | None = None
    ntfy_config: NtfyConfig | None = None


def load_bootstrap_config(path: Path) -> BootstrapConfig:
    """Read and validate the discovery payload at *path*."""
    payload = _read_mapping(path)

    hostname = _optional_str(payload, "hostname", path)
    ssh_keys = _string_list(payload.get("ssh_keys"), "ssh_keys", path)
    setup_key = _normalise_secret(_optional_str(payload, "netbird_setup_key", path))

    ntfy_raw = payload.get("ntfy_config")
    ntfy_config: NtfyConfig | None = None
    if ntfy_raw is not None:
        if not isinstance(ntfy_raw, Mapping):
            raise BootstrapParseError(path, "ntfy_config must be an object or null")
        ntfy_config = _parse_ntfy(ntfy_raw, path, prefix="ntfy_config.")

    return BootstrapConfig(
        hostname=hostname.strip() if hostname and hostname.strip() else None,
        ssh_keys=tuple(ssh_keys),
        netbird_setup_key=setup_key,
        ntfy_config=ntfy_config,
    )


def load_ntfy_config(path: Path) -> NtfyConfig | None:
    """Read the standalone notification config handed off by discovery apply.

    Returns ``None`` when the file exists but configures no URL.
    """
    payload = _read_mapping(path)
    return _parse_ntfy(payload, path, prefix="")


def _read_mapping(path: Path) -> Mapping[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise BootstrapNotFoundError(path) from None
    except IsADirectoryError:
        raise BootstrapParseError(path, "path is a directory") from None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise BootstrapParseError(path, f"invalid JSON ({exc})") from exc
    if not isinstance(payload, dict):
        raise BootstrapParseError(path, "top level must be a JSON object")
    return payload


def _parse_ntfy(raw: Mapping[str, object], path: Path, *, prefix: str) -> NtfyConfig | None:
    url = _optional_str(raw, "url", path, prefix=prefix)
    if url is None or not url.strip() or url == "null":
        return None

    auth_raw = raw.get("auth_type")
    if auth_raw is None:
        auth_type = AuthType.NONE
    else:
        try:
            auth_type = AuthType(str(auth_raw).lower())
        except ValueError:
            allowed = ", ".join(item.value for item in AuthType)
            raise BootstrapParseError(
                path, f"{prefix}auth_type '{auth_raw}' is not one of: {allowed}"
            ) from None

    priority = _optional_str(raw, "priority", path, prefix=prefix) or "default"
    return NtfyConfig(
        url=url.strip(),
        auth_type=auth_type,
        username=_optional_str(raw, "username", path, prefix=prefix) or None,
        password=_optional_str(raw, "password", path, prefix=prefix) or None,
        token=_optional_str(raw, "token", path, prefix=prefix) or None,
        priority=priority,
        tags=tuple(_string_list(raw.get("tags"), f"{prefix}tags", path)),
    )


def _optional_str(
    payload: Mapping[str, object],
    key: str,
    path: Path,
    *,
    prefix: str = "",
) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise BootstrapParseError(
            path, f"{prefix}{key} must be a string, got {type(value).__name__}"
        )
    return value


def _string_list(value: object, label: str, path: Path) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise BootstrapParseError(path, f"{label} must be a list of strings")
    items: list[str] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, str):
            raise BootstrapParseError(path, f"{label}[{index}] must be a string")
        if "\n" in entry or "\r" in entry:
            raise BootstrapParseError(path, f"{label}[{index}] must be a single line")
        items.append(entry)
    return items


def _normalise_secret(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped or stripped == "null":
        return None
    return stripped


__all__ = [
    "AuthType",
    "BootstrapConfig",
    "BootstrapError",
    "BootstrapNotFoundError",
    "BootstrapParseError",
    "NtfyConfig",
    "load_bootstrap_config",
    "load_ntfy_config",
]
