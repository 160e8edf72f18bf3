"""HTTP client for publishing messages to an ntfy topic."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

import requests

from ..bootstrap.source import AuthType, NtfyConfig

RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
# Malformed endpoints fail the same way on every attempt.
INVALID_URL_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.InvalidSchema,
    requests.exceptions.MissingSchema,
)


class NtfyError(RuntimeError):
    """Raised when a notification could not be delivered."""

    def __init__(self, message: str, *, attempts: int, status_code: int | None = None) -> None:
        """Record *message*, the number of *attempts* made and the last *status_code*."""
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


@dataclass(slots=True)
class NtfyDelivery:
    """Successful delivery details."""

    status_code: int
    attempts: int


@dataclass(slots=True)
class NtfyClient:
    """POST plain-text messages to the configured topic URL.

    Transport errors, timeouts and retryable status codes are retried
    *retries* times with a fixed *retry_delay*; other HTTP errors fail
    immediately.
    """

    config: NtfyConfig
    timeout: float = 10.0
    retries: int = 3
    retry_delay: float = 5.0
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    def build_headers(self, title: str) -> dict[str, str]:
        """Return the request headers for a message titled *title*."""
        headers = {"Title": title, "Priority": self.config.priority}
        if self.config.tags:
            headers["Tags"] = ",".join(self.config.tags)
        if self.config.auth_type is AuthType.BEARER and self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def build_auth(self) -> tuple[str, str] | None:
        """Return HTTP basic credentials when configured."""
        if self.config.auth_type is not AuthType.BASIC:
            return None
        if not self.config.username or not self.config.password:
            return None
        return (self.config.username, self.config.password)

    def publish(self, title: str, message: str) -> NtfyDelivery:
        """Deliver *message*; raise :class:`NtfyError` once retries are exhausted."""
        attempts = self.retries + 1
        headers = self.build_headers(title)
        auth = self.build_auth()
        body = message.encode("utf-8")
        last_error = "no attempt made"
        last_status: int | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = self.session.post(
                    self.config.url,
                    data=body,
                    headers=headers,
                    auth=auth,
                    timeout=self.timeout,
                )
            except INVALID_URL_ERRORS as exc:
                raise NtfyError(
                    f"invalid ntfy URL {self.config.url!r}: {exc}", attempts=attempt
                ) from exc
            except requests.RequestException as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
            else:
                if response.ok:
                    return NtfyDelivery(status_code=response.status_code, attempts=attempt)
                last_status = response.status_code
                last_error = f"HTTP {response.status_code} {response.reason or ''}".rstrip()
                if response.status_code not in RETRYABLE_STATUS:
                    raise NtfyError(
                        f"ntfy rejected the message: {last_error}",
                        attempts=attempt,
                        status_code=last_status,
                    )
            if attempt < attempts:
                self.sleep(self.retry_delay)

        raise NtfyError(
            f"ntfy delivery failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            status_code=last_status,
        )


__all__ = ["NtfyClient", "NtfyDelivery", "NtfyError", "RETRYABLE_STATUS"]
