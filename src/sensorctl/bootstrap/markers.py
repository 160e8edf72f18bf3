"""Persistent completion markers backed by file existence."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class MarkerError(RuntimeError):
    """Raised when a marker cannot be written or removed."""


@dataclass(frozen=True, slots=True)
class Marker:
    """Boolean "this one-time action has completed" fact stored at *path*."""

    name: str
    path: Path

    def is_set(self) -> bool:
        """Return ``True`` when the marker file exists."""
        return self.path.exists()

    def set(self) -> bool:
        """Create the marker; return ``False`` when it already existed."""
        if self.path.exists():
            return False
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return False
        except OSError as exc:
            raise MarkerError(f"Unable to create marker {self.path}: {exc}") from exc
        try:
            os.fsync(fd)
        except OSError as exc:
            # A marker that is not durable must not survive to short-circuit the next run.
            self.path.unlink(missing_ok=True)
            raise MarkerError(f"Unable to persist marker {self.path}: {exc}") from exc
        finally:
            os.close(fd)
        _fsync_directory(self.path.parent)
        return True

    def clear(self) -> bool:
        """Remove the marker; return ``False`` when it was not set."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise MarkerError(f"Unable to remove marker {self.path}: {exc}") from exc
        return True

    def describe(self) -> dict[str, object]:
        """Return a serialisable status summary."""
        return {"name": self.name, "path": str(self.path), "set": self.is_set()}


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Some filesystems refuse fsync on directories; the file itself is durable.
        pass
    finally:
        os.close(fd)


__all__ = ["Marker", "MarkerError"]
