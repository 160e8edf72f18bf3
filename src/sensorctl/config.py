"""Configuration loader for sensorctl.

Values are resolved once at start-up from, in increasing precedence:

1. Built-in defaults.
2. ``/etc/sensorctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SENSORCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SENSORCTL_NETBIRD__KEY_WAIT=120
    export SENSORCTL_NOTIFY__VPN_INTERFACE=wt1

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sensorctl configuration. Install with "
        "`pip install sensorctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SENSORCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSHConfig:
    """Accounts whose ``authorized_keys`` receive discovered keys."""

    accounts: tuple[str, ...] = ("root", "nixos")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"accounts": list(self.accounts)}


@dataclass(frozen=True)
class DiscoveryConfig:
    """Discovery-apply behaviour."""

    apply_hostname: bool = False
    default_hostname: str = "sensor-pi"
    hostnamectl_bin: str = "hostnamectl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apply_hostname": self.apply_hostname,
            "default_hostname": self.default_hostname,
            "hostnamectl_bin": self.hostnamectl_bin,
        }


@dataclass(frozen=True)
class NetbirdConfig:
    """Netbird client invocation and enrollment settings."""

    binary: str = "netbird"
    daemon_addr: str = "unix:///var/run/netbird-wt0/sock"
    management_url: str = "https://nb.a28.dev"
    admin_url: str | None = "https://nb.a28.dev"
    state_dir: Path = Path("/var/lib/netbird-wt0")
    setup_key_file: Path = Path("/var/lib/netbird-wt0/setup-key")
    key_wait: float = 60.0
    key_poll: float = 5.0
    daemon_wait: float = 30.0

    @property
    def marker_path(self) -> Path:
        """Return the enrollment marker location."""
        return self.state_dir / ".enrolled"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "binary": self.binary,
            "daemon_addr": self.daemon_addr,
            "management_url": self.management_url,
            "admin_url": self.admin_url,
            "state_dir": str(self.state_dir),
            "setup_key_file": str(self.setup_key_file),
            "key_wait": self.key_wait,
            "key_poll": self.key_poll,
            "daemon_wait": self.daemon_wait,
        }


@dataclass(frozen=True)
class NotifyConfig:
    """Boot notification delivery settings."""

    config_file: Path = Path("/var/lib/sensor-ntfy/config.json")
    vpn_interface: str = "wt0"
    vpn_wait: float = 30.0
    timeout: float = 10.0
    retries: int = 3
    retry_delay: float = 5.0
    ip_bin: str = "ip"

    @property
    def run_budget(self) -> float:
        """Longest the notify action can take: VPN wait plus every delivery attempt."""
        attempts = self.retries + 1
        return self.vpn_wait + attempts * self.timeout + self.retries * self.retry_delay

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "vpn_interface": self.vpn_interface,
            "vpn_wait": self.vpn_wait,
            "timeout": self.timeout,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
            "ip_bin": self.ip_bin,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    exec_path: str = "/run/current-system/sw/bin/sensorctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "exec_path": self.exec_path,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sensorctl."""

    config_file: Path
    bootstrap_file: Path
    state_dir: Path
    runtime_dir: Path
    lock_timeout: float
    log_level: str
    log_format: str
    ssh: SSHConfig
    discovery: DiscoveryConfig
    netbird: NetbirdConfig
    notify: NotifyConfig
    systemd: SystemdConfig

    @property
    def markers_dir(self) -> Path:
        """Directory holding markers owned by sensorctl itself."""
        return self.state_dir / "markers"

    @property
    def discovery_marker(self) -> Path:
        """Marker written once discovery config has been applied."""
        return self.markers_dir / "discovery.applied"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "bootstrap_file": str(self.bootstrap_file),
            "state_dir": str(self.state_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "ssh": self.ssh.to_dict(),
            "discovery": self.discovery.to_dict(),
            "netbird": self.netbird.to_dict(),
            "notify": self.notify.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sensorctl/config.yml",
    "bootstrap_file": "/var/lib/nixos-bootstrap/discovery_config.json",
    "state_dir": "/var/lib/sensorctl",
    "runtime_dir": "/run/sensorctl",
    "lock_timeout": 30.0,
    "log_level": "info",
    "log_format": "text",
    "ssh": {
        "accounts": ["root", "nixos"],
    },
    "discovery": {
        "apply_hostname": False,
        "default_hostname": "sensor-pi",
        "hostnamectl_bin": "hostnamectl",
    },
    "netbird": {
        "binary": "netbird",
        "daemon_addr": "unix:///var/run/netbird-wt0/sock",
        "management_url": "https://nb.a28.dev",
        "admin_url": "https://nb.a28.dev",
        "state_dir": "/var/lib/netbird-wt0",
        "setup_key_file": None,  # derived from netbird.state_dir when absent
        "key_wait": 60.0,
        "key_poll": 5.0,
        "daemon_wait": 30.0,
    },
    "notify": {
        "config_file": "/var/lib/sensor-ntfy/config.json",
        "vpn_interface": "wt0",
        "vpn_wait": 30.0,
        "timeout": 10.0,
        "retries": 3,
        "retry_delay": 5.0,
        "ip_bin": "ip",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "exec_path": "/run/current-system/sw/bin/sensorctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("ssh", "discovery", "netbird", "notify", "systemd")
}
ALLOWED_LOG_LEVELS = {"debug", "info", "warn", "warning", "error"}
ALLOWED_LOG_FORMATS = {"text", "json"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    log_level = raw.get("log_level")
    if log_level is not None and str(log_level).lower() not in ALLOWED_LOG_LEVELS:
        allowed_levels = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported log_level '{log_level}'. Allowed: {allowed_levels}.")

    log_format = raw.get("log_format")
    if log_format is not None and str(log_format).lower() not in ALLOWED_LOG_FORMATS:
        allowed_formats = ", ".join(sorted(ALLOWED_LOG_FORMATS))
        raise ConfigError(f"Unsupported log_format '{log_format}'. Allowed: {allowed_formats}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    accounts_raw = _as_sequence(ssh_mapping.get("accounts", ["root"]), "ssh.accounts")
    accounts: list[str] = []
    for index, entry in enumerate(accounts_raw):
        if not isinstance(entry, str) or not entry.strip():
            raise ConfigError(f"ssh.accounts[{index}] must be a non-empty string.")
        accounts.append(entry.strip())

    discovery_mapping = _as_dict(raw.get("discovery"), "discovery")
    default_hostname = str(discovery_mapping.get("default_hostname", "sensor-pi")).strip()
    if not default_hostname:
        raise ConfigError("discovery.default_hostname must be a non-empty string.")
    discovery = DiscoveryConfig(
        apply_hostname=_expect_bool(
            discovery_mapping.get("apply_hostname"), "discovery.apply_hostname", default=False
        ),
        default_hostname=default_hostname,
        hostnamectl_bin=str(discovery_mapping.get("hostnamectl_bin", "hostnamectl")),
    )

    netbird_mapping = _as_dict(raw.get("netbird"), "netbird")
    netbird_state = _to_path(netbird_mapping.get("state_dir", "/var/lib/netbird-wt0"))
    setup_key_value = netbird_mapping.get("setup_key_file")
    setup_key_file = _to_path(setup_key_value) if setup_key_value else netbird_state / "setup-key"
    admin_url_value = netbird_mapping.get("admin_url")
    netbird = NetbirdConfig(
        binary=str(netbird_mapping.get("binary", "netbird")),
        daemon_addr=str(netbird_mapping.get("daemon_addr", "unix:///var/run/netbird-wt0/sock")),
        management_url=_expect_url(
            netbird_mapping.get("management_url", "https://nb.a28.dev"),
            "netbird.management_url",
        ),
        admin_url=(
            _expect_url(admin_url_value, "netbird.admin_url") if admin_url_value else None
        ),
        state_dir=netbird_state,
        setup_key_file=setup_key_file,
        key_wait=_expect_non_negative_float(
            netbird_mapping.get("key_wait"), "netbird.key_wait", default=60.0
        ),
        key_poll=_expect_positive_float(
            netbird_mapping.get("key_poll"), "netbird.key_poll", default=5.0
        ),
        daemon_wait=_expect_non_negative_float(
            netbird_mapping.get("daemon_wait"), "netbird.daemon_wait", default=30.0
        ),
    )

    notify_mapping = _as_dict(raw.get("notify"), "notify")
    retries = _expect_int(notify_mapping.get("retries"), "notify.retries", default=3)
    if retries < 0:
        raise ConfigError("notify.retries must be non-negative.")
    notify = NotifyConfig(
        config_file=_to_path(
            notify_mapping.get("config_file", "/var/lib/sensor-ntfy/config.json")
        ),
        vpn_interface=str(notify_mapping.get("vpn_interface", "wt0")),
        vpn_wait=_expect_non_negative_float(
            notify_mapping.get("vpn_wait"), "notify.vpn_wait", default=30.0
        ),
        timeout=_expect_positive_float(
            notify_mapping.get("timeout"), "notify.timeout", default=10.0
        ),
        retries=retries,
        retry_delay=_expect_non_negative_float(
            notify_mapping.get("retry_delay"), "notify.retry_delay", default=5.0
        ),
        ip_bin=str(notify_mapping.get("ip_bin", "ip")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        exec_path=str(
            systemd_mapping.get("exec_path", "/run/current-system/sw/bin/sensorctl")
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        bootstrap_file=_to_path(raw.get("bootstrap_file")),
        state_dir=_to_path(raw.get("state_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        log_level=str(raw.get("log_level", "info")).lower(),
        log_format=str(raw.get("log_format", "text")).lower(),
        ssh=SSHConfig(accounts=tuple(accounts)),
        discovery=discovery,
        netbird=netbird,
        notify=notify,
        systemd=systemd,
    )


def resolve_hostname(
    explicit: str | None,
    discovered: str | None,
    default: str,
) -> str:
    """Return the hostname using explicit > discovered > default precedence."""
    for candidate in (explicit, discovered):
        if candidate is not None and candidate.strip():
            return candidate.strip()
    return default


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_url(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.startswith(("http://", "https://")):
        raise ConfigError(f"{label} must be an http(s) URL. Got {value!r}.")
    return value


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "yes", "no"}:
        return value.strip().lower() in {"true", "yes"}
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DiscoveryConfig",
    "NetbirdConfig",
    "NotifyConfig",
    "SSHConfig",
    "SystemdConfig",
    "load_config",
    "resolve_hostname",
]
