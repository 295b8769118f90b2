"""
artemis/models.py -- Key material and per-call request context for the gateway.

SigningKey is read-only and loaded once per configured endpoint. It is never
written to the session store, and its secret is excluded from repr() so it
cannot leak through logs or tracebacks.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from core.config import Settings
from core.errors import ConfigurationError


@dataclass(frozen=True)
class SigningKey:
    app_key: str
    app_secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.app_key:
            raise ConfigurationError("ARTEMIS_APP_KEY is not configured.")
        if not self.app_secret:
            raise ConfigurationError("ARTEMIS_APP_SECRET is not configured.")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKey":
        return cls(app_key=settings.artemis_app_key, app_secret=settings.artemis_app_secret)


@dataclass(frozen=True)
class OutboundRequest:
    """Everything needed to transmit one signed call. Lives for one call only."""

    method: str
    path: str
    headers: dict[str, str]
    body: bytes = b""
