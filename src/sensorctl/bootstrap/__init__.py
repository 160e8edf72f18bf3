"""Building blocks of the one-shot bootstrap workflows.

The enrollment and notification workflows live in
:mod:`sensorctl.bootstrap.enrollment` and :mod:`sensorctl.bootstrap.notify`
and are imported from there directly.
"""
from __future__ import annotations

from .markers import Marker, MarkerError
from .source import (
    AuthType,
    BootstrapConfig,
    BootstrapError,
    BootstrapNotFoundError,
    BootstrapParseError,
    NtfyConfig,
    load_bootstrap_config,
    load_ntfy_config,
)
from .ssh_keys import (
    SSHKeyError,
    SSHKeyPlan,
    SSHKeyResult,
    SSHKeyTarget,
    apply_ssh_key_plan,
    plan_ssh_keys,
    resolve_targets,
)
from .wait import path_exists, wait_for
from .workflow import (
    ActionResult,
    OneShotWorkflow,
    RetryableActionError,
    SkipAction,
    TerminalActionError,
    WaitPolicy,
    WorkflowOutcome,
    WorkflowState,
)

__all__ = [
    # payload
    "AuthType",
    "BootstrapConfig",
    "BootstrapError",
    "BootstrapNotFoundError",
    "BootstrapParseError",
    "NtfyConfig",
    "load_bootstrap_config",
    "load_ntfy_config",
    # markers and waiting
    "Marker",
    "MarkerError",
    "path_exists",
    "wait_for",
    # ssh keys
    "SSHKeyError",
    "SSHKeyPlan",
    "SSHKeyResult",
    "SSHKeyTarget",
    "apply_ssh_key_plan",
    "plan_ssh_keys",
    "resolve_targets",
    # workflow
    "ActionResult",
    "OneShotWorkflow",
    "RetryableActionError",
    "SkipAction",
    "TerminalActionError",
    "WaitPolicy",
    "WorkflowOutcome",
    "WorkflowState",
]
