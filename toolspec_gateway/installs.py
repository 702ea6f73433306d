"""Install lifecycle and read-access gating.

States are derived from the store on every call; nothing is cached:

    no install_id supplied           -> limited  (install_id_missing)
    install_id not found             -> denied   (install_not_found)
    revoked_at set                   -> denied   (install_revoked)
    no meaningful, no submission     -> limited  (initial_submission_required)
    no meaningful, some submission   -> limited  (meaningful_submission_required)
    meaningful submission recorded   -> granted

Revocation is checked before submission history, so a revoked install never
returns to granted.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import (
    TS_E_INITIAL_SUBMISSION_REQUIRED,
    TS_E_INSTALL_ID_MISSING,
    TS_E_INSTALL_NOT_FOUND,
    TS_E_INSTALL_REVOKED,
    TS_E_MEANINGFUL_SUBMISSION_REQUIRED,
    AccessDenied,
    AccessLimited,
)
from .store import ToolSpecStore

logger = logging.getLogger("toolspec_gateway.installs")

ACCESS_GRANTED = "granted"
ACCESS_LIMITED = "limited"
ACCESS_DENIED = "denied"

SECRET_VERSION = 1

# deny_reason -> (next command, guidance)
_GUIDANCE: Dict[str, tuple] = {
    TS_E_INSTALL_ID_MISSING: (
        "toolspec install",
        "No install id was supplied. Run `toolspec install` to register this environment.",
    ),
    TS_E_INSTALL_NOT_FOUND: (
        "toolspec install",
        "This install id is not registered. Run `toolspec install` to register a new one.",
    ),
    TS_E_INSTALL_REVOKED: (
        "toolspec install",
        "This install was revoked and cannot regain access. Run `toolspec install` to start over.",
    ),
    TS_E_INITIAL_SUBMISSION_REQUIRED: (
        "toolspec submit",
        "Install flow is only complete after at least one `toolspec submit` call.",
    ),
    TS_E_MEANINGFUL_SUBMISSION_REQUIRED: (
        "toolspec submit",
        "Previous submissions carried no observed tools. Submit a review that includes at least one observed tool.",
    ),
}


def hash_install_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def new_install_id() -> str:
    return f"ins_{uuid.uuid4().hex}"


def new_install_secret() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class InstallCredentials:
    """Returned exactly once, at creation. Only the secret digest is stored."""

    install_id: str
    install_secret: str
    secret_version: int = SECRET_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "install_id": self.install_id,
            "install_secret": self.install_secret,
            "secret_version": self.secret_version,
        }


@dataclass(frozen=True)
class AccessDecision:
    submission_access: str
    deny_reason: Optional[str] = None
    first_submission_completed_at: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.submission_access == ACCESS_GRANTED

    @property
    def reason(self) -> str:
        return self.deny_reason or "meaningful_submission_recorded"

    def next_actions(self) -> List[str]:
        if self.granted:
            return ["run: toolspec search <keyword>"]
        command, _ = _GUIDANCE[self.deny_reason]
        return [f"run: {command}"]

    def as_status(self) -> Dict[str, Any]:
        """Render the `GET /access-status` document."""
        status: Dict[str, Any] = {
            "submission_access": self.submission_access,
            "deny_reason": self.deny_reason,
            "next_actions": self.next_actions(),
        }
        if self.granted:
            status.update(
                post_install_required=False,
                post_install_required_command=None,
                post_install_required_message=None,
            )
        else:
            command, message = _GUIDANCE[self.deny_reason]
            status.update(
                post_install_required=True,
                post_install_required_command=command,
                post_install_required_message=message,
            )
        if self.first_submission_completed_at is not None:
            status["first_submission_completed_at"] = self.first_submission_completed_at
        return status

    def contributor_status(self) -> Dict[str, str]:
        return {"submission_access": self.submission_access, "reason": self.reason}

    def to_error(self):
        """Exception for a read endpoint refused by this decision."""
        _, message = _GUIDANCE[self.deny_reason]
        if self.submission_access == ACCESS_DENIED:
            return AccessDenied(code=self.deny_reason, message=message)
        return AccessLimited(code=self.deny_reason, message=message)


class InstallManager:
    def __init__(self, store: ToolSpecStore):
        self.store = store

    def create_install(self) -> InstallCredentials:
        creds = InstallCredentials(install_id=new_install_id(), install_secret=new_install_secret())
        self.store.insert_install(creds.install_id, hash_install_secret(creds.install_secret), creds.secret_version)
        logger.info("install created: %s", creds.install_id)
        return creds

    def revoke_install(self, install_id: str) -> bool:
        existed = self.store.revoke_install(install_id)
        if existed:
            logger.info("install revoked: %s", install_id)
        return existed

    def access_status(self, install_id: Optional[str]) -> AccessDecision:
        install_id = (install_id or "").strip()
        if not install_id:
            return AccessDecision(ACCESS_LIMITED, TS_E_INSTALL_ID_MISSING)

        record = self.store.get_install(install_id)
        if record is None:
            return AccessDecision(ACCESS_DENIED, TS_E_INSTALL_NOT_FOUND)
        if record.revoked:
            return AccessDecision(ACCESS_DENIED, TS_E_INSTALL_REVOKED)
        if record.first_meaningful_submission_at is not None:
            return AccessDecision(
                ACCESS_GRANTED,
                first_submission_completed_at=record.first_meaningful_submission_at,
            )
        if self.store.has_any_submission(install_id):
            return AccessDecision(ACCESS_LIMITED, TS_E_MEANINGFUL_SUBMISSION_REQUIRED)
        return AccessDecision(ACCESS_LIMITED, TS_E_INITIAL_SUBMISSION_REQUIRED)

    def require_read_access(self, install_id: Optional[str]) -> AccessDecision:
        decision = self.access_status(install_id)
        if not decision.granted:
            raise decision.to_error()
        return decision
