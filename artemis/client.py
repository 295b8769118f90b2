"""
artemis/client.py -- Signed JSON calls to the access platform.

Every call is signed afresh (new X-Ca-Timestamp, new signature) and sent over
a requests.Session with full TLS verification unless ARTEMIS_VERIFY_TLS is
explicitly false, which is meant for diagnostics against a lab gateway only.

The client never retries. A timeout or transport failure raises
AccessPlatformError immediately; retry policy belongs to the caller.

Platform errors are passed through verbatim:
  - HTTP 4xx/5xx: message from the X-Ca-Error-Message header (gateway
    rejections) or the body's "msg"; a signature rejection becomes
    SignatureMismatch.
  - HTTP 200 with a non-"0" "code" in the JSON envelope: AccessPlatformError
    carrying that code and "msg".
"""

from __future__ import annotations

import json
import logging
from typing import Any

import requests

from artemis.models import OutboundRequest, SigningKey
from artemis.signature import DEFAULT_CONTENT_TYPE, build_signed_headers
from core.config import Settings
from core.errors import AccessPlatformError, ConfigurationError, SignatureMismatch

logger = logging.getLogger("accessbridge.artemis")

_SUCCESS_CODE = "0"


class ArtemisClient:
    """Thin signed-call wrapper around one configured gateway endpoint.

    Usage:
        client = ArtemisClient.from_settings(get_settings())
        data = client.post_json("/artemis/api/resource/v1/person/personList", {"pageNo": 1, "pageSize": 10})
    """

    def __init__(
        self,
        base_url: str,
        signing_key: SigningKey,
        *,
        timeout: float = 10.0,
        verify_tls: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("ARTEMIS_BASE_URL is not configured.")
        if timeout <= 0:
            raise ConfigurationError("ARTEMIS_TIMEOUT_SECONDS must be positive.")
        self.base_url = base_url.rstrip("/")
        self.signing_key = signing_key
        self.timeout = timeout
        self.verify_tls = verify_tls
        if not verify_tls:
            logger.warning("TLS verification is DISABLED for %s -- diagnostics only", self.base_url)
        # max_redirects=3 replaces the requests default of 30; the gateway
        # has no business redirecting signed calls around.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    @classmethod
    def from_settings(cls, settings: Settings, session: requests.Session | None = None) -> "ArtemisClient":
        return cls(
            settings.artemis_base_url,
            SigningKey.from_settings(settings),
            timeout=settings.artemis_timeout_seconds,
            verify_tls=settings.artemis_verify_tls,
            session=session,
        )

    def prepare(
        self,
        path: str,
        payload: Any,
        *,
        method: str = "POST",
        content_type: str = DEFAULT_CONTENT_TYPE,
        extra_headers: dict[str, str] | None = None,
    ) -> OutboundRequest:
        """Serialize payload and sign. The signed Content-Type is the one sent."""
        clean_path = path if path.startswith("/") else f"/{path}"
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = build_signed_headers(
            self.signing_key,
            method,
            clean_path,
            content_type=content_type,
            extra_headers=extra_headers,
        )
        return OutboundRequest(method=method.upper(), path=clean_path, headers=headers, body=body)

    def post_json(self, path: str, payload: Any, *, timeout: float | None = None) -> dict[str, Any]:
        """POST a signed JSON body and return the decoded response envelope."""
        request = self.prepare(path, payload)
        return self.send(request, timeout=timeout)

    def send(self, request: OutboundRequest, *, timeout: float | None = None) -> dict[str, Any]:
        # request.path keeps any query string; only the signature ignores it.
        url = f"{self.base_url}{request.path}"
        logger.debug(
            "%s %s key=%s... signed=%s",
            request.method,
            request.path,
            self.signing_key.app_key[:8],
            request.headers.get("X-Ca-Signature-Headers", ""),
        )
        try:
            resp = self._session.request(
                request.method,
                url,
                data=request.body,
                headers=request.headers,
                timeout=timeout or self.timeout,
                verify=self.verify_tls,
            )
        except requests.Timeout as exc:
            logger.warning("Artemis call timed out: %s %s", request.method, request.path)
            raise AccessPlatformError("Access platform did not answer in time.", platform_code="timeout") from exc
        except requests.RequestException as exc:
            logger.warning("Artemis call failed: %s %s: %s", request.method, request.path, exc)
            raise AccessPlatformError(f"Access platform unreachable: {exc}", platform_code="transport") from exc
        return _parse_response(resp)


def _parse_response(resp: requests.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        body = None

    if resp.status_code >= 400:
        envelope = body if isinstance(body, dict) else {}
        message = resp.headers.get("X-Ca-Error-Message") or envelope.get("msg") or resp.reason or "error"
        platform_code = str(envelope.get("code") or resp.status_code)
        logger.error("Artemis rejected call (%s): %s", platform_code, message)
        error_cls = SignatureMismatch if "signature" in message.lower() else AccessPlatformError
        raise error_cls(message, platform_code=platform_code, http_status=resp.status_code)

    if not isinstance(body, dict):
        raise AccessPlatformError("Access platform returned a non-JSON response.", http_status=resp.status_code)

    code = str(body.get("code", _SUCCESS_CODE))
    if code != _SUCCESS_CODE:
        message = body.get("msg") or f"Access platform error {code}"
        logger.error("Artemis returned error code %s: %s", code, message)
        raise AccessPlatformError(message, platform_code=code, http_status=resp.status_code)
    return body
