"""
artemis/signature.py -- Canonical request signing for the Artemis gateway.

The string-to-sign is the newline-joined sequence:

    METHOD
    <Accept>
    <Content-MD5>
    <Content-Type>
    <Date>
    x-ca-key-1:value        (zero or more, sorted by lower-cased key)
    ...
    /path/without/query

Missing standard headers contribute an empty line. Every header whose key
starts with "x-ca-" is signed except x-ca-signature and
x-ca-signature-headers. The signature is base64(HMAC-SHA256(secret, utf-8
bytes of the string-to-sign)).

Header keys are lower-cased by normalize_headers() before anything else looks
at them; signer and verifier share it, so caller casing never changes the
result. The Content-Type signed must be byte-for-byte the Content-Type sent,
charset suffix included.

Everything here is a pure function. build_signed_headers() stamps a fresh
millisecond X-Ca-Timestamp per call: the gateway treats timestamp plus
signature as a replay-detection pair, so signatures are never cached.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from collections.abc import Mapping

from artemis.models import SigningKey
from core.errors import ConfigurationError, ValidationError

SIGNATURE_HEADER = "x-ca-signature"
SIGNATURE_HEADERS_HEADER = "x-ca-signature-headers"
_CA_PREFIX = "x-ca-"
_UNSIGNED_CA_HEADERS = frozenset({SIGNATURE_HEADER, SIGNATURE_HEADERS_HEADER})

DEFAULT_ACCEPT = "*/*"
DEFAULT_CONTENT_TYPE = "application/json;charset=UTF-8"


def normalize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Return headers keyed by lower-case name.

    Two keys that differ only in case are accepted when they carry the same
    value and rejected otherwise -- there is no way to pick one
    deterministically.
    """
    normalized: dict[str, str] = {}
    for key, value in (headers or {}).items():
        name = key.strip().lower()
        text = "" if value is None else str(value)
        if name in normalized and normalized[name] != text:
            raise ValidationError(f"Conflicting values for header {name!r}")
        normalized[name] = text
    return normalized


def signed_header_keys(normalized: Mapping[str, str]) -> list[str]:
    """Sorted x-ca-* keys that take part in the signature."""
    return sorted(k for k in normalized if k.startswith(_CA_PREFIX) and k not in _UNSIGNED_CA_HEADERS)


def canonical_path(path: str) -> str:
    """Drop query string and fragment; guarantee a leading slash."""
    clean = path.split("?", 1)[0].split("#", 1)[0].strip()
    if not clean:
        raise ValidationError("Request path must not be empty")
    return clean if clean.startswith("/") else f"/{clean}"


def string_to_sign(method: str, path: str, headers: Mapping[str, str] | None) -> str:
    if not method:
        raise ValidationError("HTTP method must not be empty")
    h = normalize_headers(headers)
    lines = [
        method.strip().upper(),
        h.get("accept", ""),
        h.get("content-md5", ""),
        h.get("content-type", ""),
        h.get("date", ""),
    ]
    lines.extend(f"{key}:{h[key]}" for key in signed_header_keys(h))
    lines.append(canonical_path(path))
    return "\n".join(lines)


def sign(method: str, path: str, headers: Mapping[str, str] | None, secret: str) -> str:
    """Return the base64 HMAC-SHA256 signature. Raises ConfigurationError on an empty secret."""
    if not secret:
        raise ConfigurationError("Signing secret is not configured.")
    digest = hmac.new(
        secret.encode("utf-8"),
        string_to_sign(method, path, headers).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify(
    method: str,
    path: str,
    headers: Mapping[str, str] | None,
    secret: str,
    signature: str | None = None,
) -> bool:
    """Constant-time check of a signature (defaults to the X-Ca-Signature header)."""
    if signature is None:
        signature = normalize_headers(headers).get(SIGNATURE_HEADER, "")
    if not signature:
        return False
    return hmac.compare_digest(sign(method, path, headers, secret), signature)


def build_signed_headers(
    key: SigningKey,
    method: str,
    path: str,
    *,
    accept: str = DEFAULT_ACCEPT,
    content_type: str = DEFAULT_CONTENT_TYPE,
    extra_headers: Mapping[str, str] | None = None,
    timestamp: str | None = None,
) -> dict[str, str]:
    """Return the full header set for one outbound call.

    timestamp defaults to the current time in milliseconds; pass it only in
    tests that need a reproducible signature.
    """
    headers: dict[str, str] = {
        "Accept": accept,
        "Content-Type": content_type,
        "X-Ca-Key": key.app_key,
        "X-Ca-Timestamp": timestamp or str(int(time.time() * 1000)),
    }
    for name, value in (extra_headers or {}).items():
        for existing in [k for k in headers if k.lower() == name.lower()]:
            del headers[existing]
        headers[name] = value
    headers["X-Ca-Signature-Headers"] = ",".join(signed_header_keys(normalize_headers(headers)))
    headers["X-Ca-Signature"] = sign(method, path, headers, key.app_secret)
    return headers
