"""Plan and apply additive ``authorized_keys`` updates.

Keys are only ever appended. Lines already present (exact match) are left
alone and keys that are no longer in the discovery payload are never removed,
so re-running the apply with the same list leaves the file byte-identical.
"""
from __future__ import annotations

import os
import pwd
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path


class SSHKeyError(RuntimeError):
    """Raised when an authorized_keys file cannot be updated."""

    def __init__(self, path: Path, cause: OSError) -> None:
        """Record the failing *path* and underlying *cause*."""
        super().__init__(f"Failed to update {path}: {cause.strerror or cause}")
        self.path = path
        self.cause = cause


@dataclass(slots=True)
class SSHKeyTarget:
    """One account whose ``authorized_keys`` should receive keys."""

    account: str
    home: Path
    uid: int | None = None
    gid: int | None = None

    @property
    def ssh_dir(self) -> Path:
        """Return the account's ``.ssh`` directory."""
        return self.home / ".ssh"

    @property
    def authorized_keys(self) -> Path:
        """Return the account's ``authorized_keys`` path."""
        return self.ssh_dir / "authorized_keys"


@dataclass(slots=True)
class SSHKeyTargetPlan:
    """Keys that must be appended for a single target."""

    target: SSHKeyTarget
    missing: list[str] = field(default_factory=list)
    existing: int = 0


@dataclass(slots=True)
class SSHKeyPlan:
    """Aggregated per-target work and warnings."""

    keys: list[str]
    targets: list[SSHKeyTargetPlan] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def pending(self) -> int:
        """Return how many key lines would be appended in total."""
        return sum(len(entry.missing) for entry in self.targets)


@dataclass(slots=True)
class SSHKeyResult:
    """Outcome of :func:`apply_ssh_key_plan`."""

    added: dict[str, list[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> int:
        """Return the number of appended lines."""
        return sum(len(lines) for lines in self.added.values())


def resolve_targets(accounts: Iterable[str]) -> tuple[list[SSHKeyTarget], list[str]]:
    """Look up *accounts* in the passwd database.

    Accounts that do not exist are skipped with a warning; on a fresh image
    the secondary login user may not have been created yet.
    """
    targets: list[SSHKeyTarget] = []
    warnings: list[str] = []
    for account in accounts:
        try:
            entry = pwd.getpwnam(account)
        except KeyError:
            warnings.append(f"Account '{account}' does not exist; skipping SSH keys.")
            continue
        targets.append(
            SSHKeyTarget(
                account=account,
                home=Path(entry.pw_dir),
                uid=entry.pw_uid,
                gid=entry.pw_gid,
            )
        )
    return targets, warnings


def normalise_keys(keys: Iterable[str]) -> list[str]:
    """Strip whitespace, drop blanks, and de-duplicate while keeping order.

    Raises :class:`ValueError` for an entry spanning several lines.
    """
    seen: set[str] = set()
    result: list[str] = []
    for raw in keys:
        key = raw.strip()
        if "\n" in key or "\r" in key:
            raise ValueError(f"SSH key must be a single line: {describe_key(key)}")
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(key)
    return result


def plan_ssh_keys(keys: Sequence[str], targets: Sequence[SSHKeyTarget]) -> SSHKeyPlan:
    """Return the lines each target is missing."""
    wanted = normalise_keys(keys)
    plan = SSHKeyPlan(keys=wanted)
    for target in targets:
        existing = _read_lines(target.authorized_keys)
        present = set(existing)
        missing = [key for key in wanted if key not in present]
        plan.targets.append(
            SSHKeyTargetPlan(target=target, missing=missing, existing=len(existing))
        )
    return plan


def apply_ssh_key_plan(plan: SSHKeyPlan, *, dry_run: bool = False) -> SSHKeyResult:
    """Append the planned keys, creating ``~/.ssh`` with restrictive modes."""
    result = SSHKeyResult(warnings=list(plan.warnings), dry_run=dry_run)
    for entry in plan.targets:
        target = entry.target
        result.added[target.account] = list(entry.missing)
        if dry_run:
            continue
        _ensure_layout(target)
        if entry.missing:
            _append_lines(target.authorized_keys, entry.missing)
    return result


def describe_key(key: str) -> str:
    """Return the key type and a truncated key body for log output."""
    parts = key.split()
    if len(parts) < 2:
        return parts[0][:12] + "..." if parts else ""
    return f"{parts[0]} {parts[1][:12]}..."


def _read_lines(path: Path) -> list[str]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise SSHKeyError(path, exc) from exc
    return [line.strip() for line in text.splitlines() if line.strip()]


def _ensure_layout(target: SSHKeyTarget) -> None:
    ssh_dir = target.ssh_dir
    keys_path = target.authorized_keys
    try:
        ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        ssh_dir.chmod(0o700)
        if not keys_path.exists():
            fd = os.open(keys_path, os.O_WRONLY | os.O_CREAT, 0o600)
            os.close(fd)
        keys_path.chmod(0o600)
        _chown(ssh_dir, target)
        _chown(keys_path, target)
    except OSError as exc:
        failing = keys_path if ssh_dir.exists() else ssh_dir
        raise SSHKeyError(failing, exc) from exc


def _append_lines(path: Path, lines: Sequence[str]) -> None:
    try:
        with path.open("r+", encoding="utf-8") as handle:
            content = handle.read()
            prefix = "" if not content or content.endswith("\n") else "\n"
            handle.write(prefix + "".join(f"{line}\n" for line in lines))
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as exc:
        raise SSHKeyError(path, exc) from exc


def _chown(path: Path, target: SSHKeyTarget) -> None:
    if os.geteuid() != 0 or target.uid is None:
        return
    gid = target.gid if target.gid is not None else -1
    os.chown(path, target.uid, gid)


__all__ = [
    "SSHKeyError",
    "SSHKeyPlan",
    "SSHKeyResult",
    "SSHKeyTarget",
    "SSHKeyTargetPlan",
    "apply_ssh_key_plan",
    "describe_key",
    "normalise_keys",
    "plan_ssh_keys",
    "resolve_targets",
]
