"""Process exit codes interpreted by the systemd restart policy."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``OK`` covers both success and "nothing to do". ``RETRYABLE`` is the only
    code the rendered units expect to recover on restart; the remaining codes
    flag deployment defects that will not self-heal.
    """

    OK = 0
    RETRYABLE = 1
    VALIDATION = 2
    ENVIRONMENT = 3
