"""HTTP client for the sync endpoints."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .conf import terminal_setting

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The round-trip failed; the same request may be retried later."""

    kind = "unavailable"
    retryable = True

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.kind)
        self.status_code = status_code


class TransportTimeout(TransportError):
    kind = "deadline_exceeded"


class TransportAuthError(TransportError):
    retryable = False

    @property
    def kind(self) -> str:
        return "forbidden" if self.status_code == 403 else "unauthorized"


class TransportRejected(TransportError):
    """The server refused the request as a whole (4xx); retrying the same body will not help."""

    kind = "rejected"
    retryable = False


def _error_message_from_response(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body)
    return str(body)


class HttpTransport:
    def __init__(
        self,
        base_url: str,
        token: str,
        push_timeout: float = 30,
        pull_timeout: float = 60,
        session=None,
        verify: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.push_timeout = push_timeout
        self.pull_timeout = pull_timeout
        self.verify = verify
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    @classmethod
    def from_settings(cls, **overrides) -> "HttpTransport":
        options = {
            "base_url": terminal_setting("SERVER_URL"),
            "token": terminal_setting("TOKEN"),
            "push_timeout": terminal_setting("PUSH_TIMEOUT_SECONDS"),
            "pull_timeout": terminal_setting("PULL_TIMEOUT_SECONDS"),
            "verify": terminal_setting("VERIFY_TLS"),
        }
        options.update(overrides)
        return cls(**options)

    def _request(self, method: str, path: str, timeout: float, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=timeout, verify=self.verify, **kwargs)
        except requests.Timeout as exc:
            raise TransportTimeout(f"{method} {path} timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise TransportAuthError(_error_message_from_response(resp), status_code=resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransportError(_error_message_from_response(resp), status_code=resp.status_code)
        if resp.status_code >= 400:
            raise TransportRejected(_error_message_from_response(resp), status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON") from exc

    def push(self, changes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        body = self._request("POST", "/api/sync/push", self.push_timeout, json={"changes": changes})
        return body.get("results") or []

    def pull(self, since: Optional[datetime], limit: Optional[int] = None) -> Dict[str, Any]:
        params = {"since": since.isoformat() if since else ""}
        if limit:
            params["limit"] = limit
        return self._request("GET", "/api/sync/pull", self.pull_timeout, params=params)

    def health(self) -> bool:
        try:
            body = self._request("GET", "/api/sync/health", min(self.pull_timeout, 5))
        except TransportError as exc:
            logger.debug("health check failed: %s", exc)
            return False
        return bool(body.get("ok"))
