"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sensorctl.config import AppConfig, ConfigError, load_config, resolve_hostname


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.bootstrap_file == Path("/var/lib/nixos-bootstrap/discovery_config.json")
    assert config.discovery_marker == Path("/var/lib/sensorctl/markers/discovery.applied")
    assert config.netbird.marker_path == Path("/var/lib/netbird-wt0/.enrolled")
    assert config.netbird.setup_key_file == Path("/var/lib/netbird-wt0/setup-key")
    assert config.netbird.key_wait == 60.0
    assert config.netbird.key_poll == 5.0
    assert config.notify.config_file == Path("/var/lib/sensor-ntfy/config.json")
    assert config.notify.retries == 3
    assert config.ssh.accounts == ("root", "nixos")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "sensorctl.yml"
    cfg.write_text(
        "state_dir: {state}\n"
        "netbird:\n"
        "  state_dir: {nb}\n"
        "  management_url: https://vpn.example.test\n"
        "discovery:\n"
        "  apply_hostname: true\n".format(state=tmp_path / "state", nb=tmp_path / "nb"),
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.netbird.management_url == "https://vpn.example.test"
    assert config.netbird.setup_key_file == tmp_path / "nb" / "setup-key"
    assert config.discovery.apply_hostname is True


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "sensorctl.yml"
    cfg.write_text("netbird:\n  key_wait: 10\n", encoding="utf-8")
    env = {
        "SENSORCTL_NETBIRD__KEY_WAIT": "120",
        "SENSORCTL_NOTIFY__VPN_INTERFACE": "wt1",
        "SENSORCTL_LOCK_TIMEOUT": "45",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.netbird.key_wait == 120.0
    assert config.notify.vpn_interface == "wt1"
    assert config.lock_timeout == 45.0


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """SENSORCTL_CONFIG_FILE points the loader at an alternate file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("log_level: debug\n", encoding="utf-8")

    config = load_config(env={"SENSORCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.log_level == "debug"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides win over environment values."""
    config = load_config(
        config_file=tmp_path / "none.yml",
        env={"SENSORCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 5},
    )

    assert config.lock_timeout == 5.0


def test_unknown_section_key_rejected(tmp_path: Path) -> None:
    """Typos in a section surface as ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("netbird:\n  setupkey: oops\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown netbird configuration keys: setupkey"):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_rejected(tmp_path: Path) -> None:
    """Unknown top-level keys are rejected."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("kismet: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys: kismet"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"log_level": "loud"}, "Unsupported log_level"),
        ({"log_format": "xml"}, "Unsupported log_format"),
        ({"netbird": {"key_poll": 0}}, "netbird.key_poll must be greater than zero"),
        ({"notify": {"retries": -1}}, "notify.retries must be non-negative"),
        ({"netbird": {"management_url": "nb.a28.dev"}}, "must be an http"),
        ({"discovery": {"apply_hostname": "maybe"}}, "discovery.apply_hostname"),
    ],
)
def test_invalid_values_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    """Bad values raise ConfigError naming the offending key."""
    with pytest.raises(ConfigError, match=message):
        load_config(config_file=tmp_path / "none.yml", env={}, overrides=overrides)


def test_non_mapping_file_rejected(tmp_path: Path) -> None:
    """A YAML list at the top level is not a valid config."""
    cfg = tmp_path / "list.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping at the top level"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings."""
    config = load_config(config_file=tmp_path / "none.yml", env={})

    data = config.to_dict()

    netbird = data["netbird"]
    assert isinstance(netbird, dict)
    assert netbird["setup_key_file"] == "/var/lib/netbird-wt0/setup-key"
    assert data["ssh"] == {"accounts": ["root", "nixos"]}


@pytest.mark.parametrize(
    ("explicit", "discovered", "expected"),
    [
        ("cli-host", "disc-host", "cli-host"),
        (None, "disc-host", "disc-host"),
        (None, "  ", "sensor-pi"),
        (None, None, "sensor-pi"),
    ],
)
def test_resolve_hostname_precedence(
    explicit: str | None, discovered: str | None, expected: str
) -> None:
    """Explicit beats discovered which beats the default."""
    assert resolve_hostname(explicit, discovered, "sensor-pi") == expected
