"""HTTP client for the ToolSpec gateway.

Uses urllib only. Retries are bounded and limited to network errors and
408/429/5xx responses; every retry re-sends the identical body, so a
submission keeps its idempotency key across attempts.
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://toolspec.dev"
INSTALL_ID_HEADER = "X-Toolspec-Install-Id"
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass
class ApiError(Exception):
    """Non-2xx response or exhausted retries.

    `details` is the decoded error body when the server sent one, e.g.
    `{"error": "install_revoked", "message": "..."}`.
    """

    method: str
    path: str
    status: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    retryable: bool = False
    attempts: int = 1

    @property
    def code(self) -> Optional[str]:
        err = self.details.get("error")
        return err if isinstance(err, str) else None

    @property
    def server_message(self) -> Optional[str]:
        msg = self.details.get("message")
        return msg if isinstance(msg, str) else None

    def __str__(self) -> str:
        where = f"{self.method} {self.path}"
        if self.status is None:
            return f"{where} failed after {self.attempts} attempt(s): network error"
        return f"{where} failed with {self.status}"


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


class ApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        install_id: Optional[str] = None,
        timeout_s: float = 10.0,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.install_id = install_id
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    @classmethod
    def from_env(cls, install_id: Optional[str] = None) -> "ApiClient":
        base_url = (os.getenv("TOOLSPEC_BASE_URL", "") or "").strip() or DEFAULT_BASE_URL
        try:
            timeout = float(os.getenv("TOOLSPEC_HTTP_TIMEOUT_SECONDS", "10") or "10")
        except ValueError:
            timeout = 10.0
        return cls(base_url, install_id=install_id, timeout_s=max(0.1, timeout))

    def request_json(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.install_id:
            headers[INSTALL_ID_HEADER] = self.install_id

        last_error: Optional[ApiError] = None
        for attempt in range(1, self.max_attempts + 1):
            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                    return _decode_body(resp.read())
            except urllib.error.HTTPError as e:
                status = int(e.code or 0)
                parsed = _decode_body(e.read() or b"")
                details = parsed if isinstance(parsed, dict) else {}
                last_error = ApiError(
                    method, path, status=status, details=details,
                    retryable=status in RETRYABLE_STATUSES or 500 <= status < 600,
                    attempts=attempt,
                )
            except (urllib.error.URLError, OSError) as e:
                logger.debug("%s %s attempt %d: %s", method, path, attempt, e)
                last_error = ApiError(method, path, retryable=True, attempts=attempt)

            if attempt < self.max_attempts and last_error.retryable:
                self._sleep(min(2.0, 0.25 * (2 ** (attempt - 1))))
            else:
                break

        raise last_error

    # ---------------------------
    # Endpoints
    # ---------------------------

    def register_install(self) -> Dict[str, Any]:
        return self.request_json("POST", "/installs", {})

    def revoke_install(self, install_id: str) -> Dict[str, Any]:
        return self.request_json("POST", f"/installs/{urllib.parse.quote(install_id, safe='')}/revoke", {})

    def access_status(self, install_id: Optional[str] = None) -> Dict[str, Any]:
        install_id = install_id or self.install_id
        query = {"install_id": install_id} if install_id else None
        return self.request_json("GET", "/access-status", query=query)

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request_json("POST", "/submissions", payload)

    def list_reviews(self) -> Dict[str, Any]:
        return self.request_json("GET", "/reviews")

    def get_review(self, tool_slug: str) -> Dict[str, Any]:
        return self.request_json("GET", f"/reviews/{urllib.parse.quote(tool_slug, safe='')}")
