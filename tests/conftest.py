"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest

from sensorctl.config import AppConfig, load_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def sandbox_overrides(root: Path) -> dict[str, object]:
    """Return config overrides that keep every path under *root*."""
    return {
        "bootstrap_file": str(root / "bootstrap" / "discovery_config.json"),
        "state_dir": str(root / "state"),
        "runtime_dir": str(root / "run"),
        "lock_timeout": 1.0,
        "log_level": "error",
        "ssh": {"accounts": []},
        "netbird": {
            "binary": str(root / "bin" / "netbird-missing"),
            "state_dir": str(root / "netbird"),
            "key_wait": 0,
            "key_poll": 1,
            "daemon_wait": 0,
        },
        "notify": {
            "config_file": str(root / "ntfy" / "config.json"),
            "vpn_wait": 0,
            "retry_delay": 0,
            "ip_bin": str(root / "bin" / "ip-missing"),
        },
        "systemd": {
            "unit_dir": str(root / "systemd"),
            "systemctl_bin": str(root / "bin" / "systemctl-missing"),
        },
    }


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted in the temporary directory."""
    return load_config(
        config_file=tmp_path / "etc" / "config.yml",
        env={},
        overrides=sandbox_overrides(tmp_path),
    )


def write_bootstrap(config: AppConfig, payload: object) -> Path:
    """Write *payload* as the discovery JSON for *config*."""
    path = config.bootstrap_file
    path.parent.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload)
    path.write_text(text, encoding="utf-8")
    return path


class FakeClock:
    """Deterministic monotonic clock advanced by :meth:`sleep`."""

    def __init__(self) -> None:
        """Start the clock at zero."""
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        """Return the current fake time."""
        return self.now

    def sleep(self, seconds: float) -> None:
        """Advance the clock instead of blocking."""
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Return a fresh fake clock."""
    return FakeClock()


class CommandRecorder:
    """Stand-in for subprocess runners that records argv lists."""

    def __init__(self, responses: dict[tuple[str, ...], tuple[int, str]] | None = None) -> None:
        """Map argv prefixes to ``(returncode, stdout)`` responses."""
        self.responses = responses or {}
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the first matching canned response."""
        argv = list(args)
        self.calls.append(argv)
        for prefix, (code, stdout) in self.responses.items():
            if tuple(argv[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(argv, code, stdout=stdout, stderr="")
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")


@pytest.fixture(autouse=True)
def _reset_sensorctl_logging() -> Iterator[None]:
    """Drop handlers installed by configure_logging between tests."""
    yield
    logger = logging.getLogger("sensorctl")
    for handler in list(logger.handlers):
        if getattr(handler, "_sensorctl_handler", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int, reason: str = "") -> None:
        """Store the status line."""
        self.status_code = status_code
        self.reason = reason

    @property
    def ok(self) -> bool:
        """Mirror ``requests.Response.ok``."""
        return self.status_code < 400


class FakeSession:
    """Session double replaying queued responses or exceptions."""

    def __init__(self, *outcomes: int | Exception) -> None:
        """Queue *outcomes*; the last one repeats once the queue drains."""
        self.outcomes = list(outcomes)
        self.posts: list[dict[str, object]] = []

    def post(self, url: str, **kwargs: object) -> FakeResponse:
        """Record the request and replay the next outcome."""
        self.posts.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)
