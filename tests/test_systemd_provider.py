"""Tests for the systemd provider."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from sensorctl.config import AppConfig, load_config
from sensorctl.providers.systemd import (
    SystemdError,
    SystemdProvider,
    UnitSpec,
    default_unit_specs,
    notify_timeout,
)
from sensorctl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _make_provider(tmp_path: Path) -> SystemdProvider:
    systemd_dir = tmp_path / "systemd"
    systemd_dir.mkdir(parents=True, exist_ok=True)
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=systemd_dir,
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider instance scoped to the temporary path."""
    return _make_provider(tmp_path)


@pytest.fixture
def systemctl_calls(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Replace ``_systemctl`` with a recorder."""
    calls: list[str] = []

    def fake_systemctl(self: SystemdProvider, command: str) -> DummyResult:
        calls.append(command)
        return DummyResult(returncode=0)

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)
    return calls


def _spec(**overrides: object) -> UnitSpec:
    spec = UnitSpec(
        name="sensorctl-demo",
        description="Demo action",
        command="/usr/bin/sensorctl demo",
    )
    return replace(spec, **overrides)  # type: ignore[arg-type]


def test_render_unit_writes_file_and_reload(
    provider: SystemdProvider,
    systemctl_calls: list[str],
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    spec = _spec()

    changed = provider.render_unit(spec)

    unit_path = provider.unit_path(spec)
    assert changed is True
    assert unit_path.name == "sensorctl-demo.service"
    contents = unit_path.read_text(encoding="utf-8")
    assert "Description=Demo action" in contents
    assert "ExecStart=/usr/bin/sensorctl demo" in contents
    assert "Restart=no" in contents
    assert "RestartSec" not in contents
    assert systemctl_calls == ["daemon-reload"]

    # Second render with identical spec should remain a no-op.
    systemctl_calls.clear()
    assert provider.render_unit(spec) is False
    assert systemctl_calls == []


def test_render_units_reloads_once(
    provider: SystemdProvider,
    systemctl_calls: list[str],
) -> None:
    """Several changed units share a single daemon-reload."""
    specs = [_spec(name="sensorctl-a"), _spec(name="sensorctl-b")]

    result = provider.render_units(specs)

    assert result.changed == ["sensorctl-a.service", "sensorctl-b.service"]
    assert result.reloaded is True
    assert systemctl_calls == ["daemon-reload"]

    systemctl_calls.clear()
    again = provider.render_units(specs)
    assert again.changed == []
    assert again.reloaded is False
    assert systemctl_calls == []


def test_render_units_dry_run_writes_nothing(
    provider: SystemdProvider,
    systemctl_calls: list[str],
) -> None:
    """Dry-run returns rendered text without touching disk or systemd."""
    spec = _spec()

    result = provider.render_units([spec], dry_run=True)

    assert "ExecStart=/usr/bin/sensorctl demo" in result.rendered["sensorctl-demo.service"]
    assert not provider.unit_path(spec).exists()
    assert systemctl_calls == []


def test_missing_systemctl_is_tolerated(tmp_path: Path) -> None:
    """Rendering on a host without systemctl still writes the unit."""
    provider = SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        systemctl_bin=str(tmp_path / "missing-systemctl"),
    )

    result = provider.render_units([_spec()])

    assert result.changed == ["sensorctl-demo.service"]
    assert result.reloaded is True


def test_reload_failure_propagates(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A failing daemon-reload surfaces as SystemdError."""

    def fake_run(self: SystemdProvider, args: list[str], **_: object) -> DummyResult:
        raise SystemdError("systemctl daemon-reload failed (exit 1): access denied")

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run)

    with pytest.raises(SystemdError, match="access denied"):
        provider.render_unit(_spec())


def test_run_command_reports_exit_code(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Non-zero exits are raised with stderr in the message."""

    def fake_subprocess_run(*_: object, **__: object) -> DummyResult:
        return DummyResult(returncode=5, stderr="Unit not loaded")

    monkeypatch.setattr("sensorctl.providers.systemd.subprocess.run", fake_subprocess_run)

    with pytest.raises(SystemdError, match=r"exit 5\): Unit not loaded"):
        provider._systemctl("daemon-reload")


def test_default_specs_encode_retry_contract(app_config: AppConfig) -> None:
    """Enrollment retries three times per ten minutes; notify never retries."""
    specs = {spec.name: spec for spec in default_unit_specs(app_config)}

    assert list(specs) == [
        "sensorctl-apply-discovery",
        "sensorctl-enroll",
        "sensorctl-connect",
        "sensorctl-notify",
    ]

    enroll = specs["sensorctl-enroll"]
    assert enroll.restart == "on-failure"
    assert enroll.restart_sec == 30
    assert enroll.start_limit_burst == 3
    assert enroll.start_limit_interval == 600
    assert enroll.timeout_start == 300
    assert enroll.condition_path_exists == f"!{app_config.netbird.marker_path}"
    assert "sensorctl-apply-discovery.service" in enroll.requires

    notify = specs["sensorctl-notify"]
    assert notify.restart == "no"
    assert notify.timeout_start >= app_config.notify.run_budget

    assert specs["sensorctl-apply-discovery"].before == ("sshd.service",)
    assert specs["sensorctl-connect"].condition_path_exists == str(
        app_config.netbird.marker_path
    )


def test_default_specs_pass_existing_config_file(app_config: AppConfig) -> None:
    """ExecStart carries --config-file only when that file exists."""
    exe = app_config.systemd.exec_path
    before = {spec.name: spec.command for spec in default_unit_specs(app_config)}
    assert before["sensorctl-enroll"] == f"{exe} enroll"

    app_config.config_file.parent.mkdir(parents=True, exist_ok=True)
    app_config.config_file.write_text("{}\n", encoding="utf-8")

    after = {spec.name: spec.command for spec in default_unit_specs(app_config)}
    assert after["sensorctl-enroll"] == f"{exe} --config-file {app_config.config_file} enroll"


def test_enroll_unit_renders_start_limits(
    provider: SystemdProvider,
    app_config: AppConfig,
) -> None:
    """The rendered enrollment unit carries the rate limit and condition."""
    enroll = next(s for s in default_unit_specs(app_config) if s.name == "sensorctl-enroll")

    text = provider.render_text(enroll)

    assert "StartLimitIntervalSec=600" in text
    assert "StartLimitBurst=3" in text
    assert "Restart=on-failure" in text
    assert "RestartSec=30" in text
    assert "TimeoutStartSec=300" in text
    assert f"ConditionPathExists=!{app_config.netbird.marker_path}" in text


def test_notify_timeout_outlasts_delivery_budget(tmp_path: Path) -> None:
    """The unit timeout covers the VPN wait plus every retry of the default config."""
    config = load_config(config_file=tmp_path / "none.yml", env={})

    assert config.notify.run_budget == 30 + 4 * 10 + 3 * 5
    assert notify_timeout(config) >= config.lock_timeout + config.notify.run_budget
    notify = next(s for s in default_unit_specs(config) if s.name == "sensorctl-notify")
    assert notify.timeout_start == notify_timeout(config)


def test_notify_timeout_tracks_configuration(tmp_path: Path) -> None:
    """Longer waits and more retries raise the timeout; it never drops below 30s."""
    short = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={"lock_timeout": 1, "notify": {"vpn_wait": 0, "retries": 0, "timeout": 1}},
    )
    long = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={"notify": {"vpn_wait": 120, "retries": 5, "timeout": 20}},
    )

    assert notify_timeout(short) == 30
    assert notify_timeout(long) >= long.lock_timeout + 120 + 6 * 20 + 5 * 5
