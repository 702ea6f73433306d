"""Stable error taxonomy for ToolSpec.

This module defines machine-readable error codes and the exception types used
across the gateway and the agent CLI.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Submission validation
TS_E_VALIDATION_FAILED = "validation_failed"
TS_E_INVALID_JSON = "invalid_json"

# Install / access gating
TS_E_INSTALL_ID_MISSING = "install_id_missing"
TS_E_INSTALL_NOT_FOUND = "install_not_found"
TS_E_INSTALL_REVOKED = "install_revoked"
TS_E_INITIAL_SUBMISSION_REQUIRED = "initial_submission_required"
TS_E_MEANINGFUL_SUBMISSION_REQUIRED = "meaningful_submission_required"

# Transport / storage
TS_E_STORAGE_UNAVAILABLE = "storage_unavailable"
TS_E_RATE_LIMITED = "rate_limited"
TS_E_REQUEST_TOO_LARGE = "request_too_large"
TS_E_NOT_FOUND = "not_found"
TS_E_BAD_REQUEST = "bad_request"


@dataclass
class ToolSpecError(Exception):
    """Base ToolSpec exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            d.update(self.details)
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ValidationFailed(ToolSpecError):
    """Malformed submission. `details["errors"]` carries every violation."""

    code: str = TS_E_VALIDATION_FAILED
    message: str = "submission failed validation"
    http_status: int = 400


@dataclass
class AccessDenied(ToolSpecError):
    """Install is unknown or revoked. Permanent; retrying will not help."""

    http_status: int = 403


@dataclass
class AccessLimited(ToolSpecError):
    """Install exists but has not completed the required contribution."""

    retryable: bool = True
    http_status: int = 403


@dataclass
class TransientStorageError(ToolSpecError):
    """Backing store unavailable. Safe to retry with backoff."""

    code: str = TS_E_STORAGE_UNAVAILABLE
    message: str = "storage temporarily unavailable"
    retryable: bool = True
    http_status: int = 503


def toolspec_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ToolSpecError:
    return ToolSpecError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
