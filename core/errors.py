"""
core/errors.py -- Error taxonomy shared by every AccessBridge layer.

Every domain failure raised by auth/ and artemis/ derives from
AccessBridgeError. Each class carries a stable machine-readable `code` and the
HTTP status the API layer maps it to, so api/main.py needs exactly one
exception handler for the whole family.

Propagation rules:
  ValidationError, ProtectedAccountViolation and the session-state errors are
  raised synchronously and never retried by the core.
  StoreUnavailable is transient -- the caller may retry with backoff.
  AccessPlatformError / SignatureMismatch carry the platform's own code and
  message unchanged; they are produced from platform responses only.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or artemis/.
"""

from __future__ import annotations


class AccessBridgeError(Exception):
    """Base class for all AccessBridge domain errors."""

    code: str = "error"
    status_code: int = 500

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.detail = detail


class ValidationError(AccessBridgeError):
    """Malformed input (e.g. a negative retention window)."""

    code = "validation_error"
    status_code = 400


class ConfigurationError(AccessBridgeError):
    """Missing or unusable configuration (key, secret, required env var)."""

    code = "configuration_error"
    status_code = 500


class AuthenticationError(AccessBridgeError):
    """Credential mismatch. The message never reveals which half was wrong."""

    code = "bad_credentials"
    status_code = 401


class SessionExpired(AccessBridgeError):
    code = "session_expired"
    status_code = 401


class SessionRevoked(AccessBridgeError):
    code = "session_revoked"
    status_code = 401


class NotFound(AccessBridgeError):
    code = "not_found"
    status_code = 404


class ProtectedAccountViolation(AccessBridgeError):
    """A guarded field of a protected account was targeted by a normal write path."""

    code = "protected_account"
    status_code = 403


class StoreUnavailable(AccessBridgeError):
    """The store did not answer within its bounded timeout. Safe to retry."""

    code = "store_unavailable"
    status_code = 503


class AccessPlatformError(AccessBridgeError):
    """Error reported by the access platform, passed through verbatim.

    platform_code is the platform's own code (the "code" field of its JSON
    envelope, or the HTTP status when the gateway rejected the call outright).
    """

    code = "access_platform_error"
    status_code = 502

    def __init__(self, message: str, *, platform_code: str | None = None, http_status: int | None = None) -> None:
        super().__init__(message, detail=platform_code)
        self.platform_code = platform_code
        self.http_status = http_status


class SignatureMismatch(AccessPlatformError):
    """The platform rejected our request signature. Never generated locally."""

    code = "signature_mismatch"
