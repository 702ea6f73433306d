"""Build review submissions from observed tools.

Submission policy, composed on top of the (permissive) whitelist partition:

    mode        yolo    unknown tools
    whitelist   -       always redacted
    all         False   one include/exclude decision per tool
    all         True    all included

Per-tool decisions come from an injected `UnknownToolDecider`. The pipeline is
the same whether a human answers on a terminal or a fixed policy does. With
`mode="all"`, unknown tools present and no decider available, the build fails
with `InteractiveDecisionRequired` instead of guessing.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO

from .whitelist import Partition, ToolRegistry, partition

logger = logging.getLogger(__name__)

MODE_WHITELIST = "whitelist"
MODE_ALL = "all"
MODES = (MODE_WHITELIST, MODE_ALL)

SESSION_TOOL_SLUG = "__session__"
SUBMISSION_SCOPE = "all_observed"
DEFAULT_AGENT_MODEL = "unknown-agent"
MAX_EVIDENCE = 50
DRAFT_VERSION = 1
NOT_PROVIDED = "not_provided"


class SubmissionUsageError(ValueError):
    """Invalid combination of submission options."""


class InteractiveDecisionRequired(RuntimeError):
    """Unknown tools need a per-tool decision and no decider is available."""

    def __init__(self, unknown_tools: List[str]):
        self.unknown_tools = list(unknown_tools)
        super().__init__(
            "Unknown non-whitelist tools require explicit choice. Re-run with "
            "`toolspec submit all --yolo` to include all unknown tools, or run "
            "`toolspec submit` for whitelist-only."
        )


# ---------------------------
# Unknown-tool deciders
# ---------------------------

class UnknownToolDecider:
    """Decides, per unknown tool, whether it is submitted."""

    def include(self, tool_slug: str) -> bool:
        raise NotImplementedError


class ExcludeAllDecider(UnknownToolDecider):
    def include(self, tool_slug: str) -> bool:
        return False


class IncludeAllDecider(UnknownToolDecider):
    def include(self, tool_slug: str) -> bool:
        return True


class TerminalDecider(UnknownToolDecider):
    """Asks `Include non-whitelist tool '<slug>'? [y/N]` for each tool."""

    def __init__(self, input_fn: Callable[[str], str] = input):
        self._input = input_fn

    def include(self, tool_slug: str) -> bool:
        try:
            answer = self._input(f"Include non-whitelist tool '{tool_slug}'? [y/N]: ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")


def is_interactive(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> bool:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    try:
        return bool(stdin.isatty() and stdout.isatty())
    except (AttributeError, ValueError):
        return False


def terminal_decider_or_none() -> Optional[UnknownToolDecider]:
    """A TerminalDecider when attached to a TTY, else None."""
    return TerminalDecider() if is_interactive() else None


def decider_for(mode: str, yolo: bool, interactive: Optional[UnknownToolDecider] = None) -> Optional[UnknownToolDecider]:
    if mode == MODE_WHITELIST:
        return ExcludeAllDecider()
    if yolo:
        return IncludeAllDecider()
    return interactive


# ---------------------------
# Payload construction
# ---------------------------

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso_millis(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_session_token() -> str:
    return uuid.uuid4().hex


def build_evidence(now: str, token: str, submitted: List[str]) -> List[Dict[str, str]]:
    if not submitted:
        return [{"tool_call_id": f"manual_{token}", "timestamp_utc": now}]
    return [
        {"tool_call_id": f"session_{token}_{i + 1}_{slug}", "timestamp_utc": now}
        for i, slug in enumerate(submitted[:MAX_EVIDENCE])
    ]


@dataclass
class SubmissionDraft:
    payload: Dict[str, Any]
    summary: Dict[str, Any]
    created_at_utc: str
    version: int = DRAFT_VERSION

    @property
    def submitted_tools(self) -> List[str]:
        return list(self.payload["reliable_tools"])

    @property
    def redacted_tools(self) -> List[str]:
        return list(self.payload["redacted_tool_slugs"])

    def with_install_id(self, install_id: Optional[str]) -> "SubmissionDraft":
        payload = dict(self.payload)
        if install_id:
            payload["install_id"] = install_id
        else:
            payload.pop("install_id", None)
        return SubmissionDraft(payload=payload, summary=dict(self.summary), created_at_utc=self.created_at_utc, version=self.version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "created_at_utc": self.created_at_utc,
            "payload": self.payload,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SubmissionDraft"]:
        if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
            return None
        return cls(
            payload=data["payload"],
            summary=dict(data.get("summary") or {}),
            created_at_utc=str(data.get("created_at_utc") or ""),
            version=int(data.get("version") or DRAFT_VERSION),
        )


def build_submission(
    mode: str,
    yolo: bool,
    observed: Iterable[str],
    install_id: Optional[str],
    decider: Optional[UnknownToolDecider] = None,
    registry: Optional[ToolRegistry] = None,
    agent_model: Optional[str] = None,
    now: Optional[datetime] = None,
    token: Optional[str] = None,
) -> SubmissionDraft:
    """Package observed tools into a submission draft.

    `decider` is consulted only for `mode="all"` without `yolo`. Each call
    uses a fresh idempotency key unless `token` is given.
    """
    if mode not in MODES:
        raise SubmissionUsageError(f"unknown submission mode: {mode!r}")
    if yolo and mode != MODE_ALL:
        raise SubmissionUsageError("`--yolo` requires `all`.")

    observed_list = list(dict.fromkeys(observed))
    parts: Partition = partition(observed_list, registry)

    active = decider_for(mode, yolo, decider)
    if active is None and parts.unknown:
        raise InteractiveDecisionRequired(parts.unknown)

    included: List[str] = []
    redacted: List[str] = []
    for slug in parts.unknown:
        (included if active.include(slug) else redacted).append(slug)

    submitted = list(dict.fromkeys(parts.public + included))
    token = token or new_session_token()
    stamp = _iso_millis(now or _now_utc())
    model = agent_model or os.getenv("TOOLSPEC_AGENT_MODEL") or DEFAULT_AGENT_MODEL

    payload: Dict[str, Any] = {
        "submission_scope": SUBMISSION_SCOPE,
        "observed_tool_slugs": observed_list,
        "redacted_tool_slugs": redacted,
        "tool_slug": SESSION_TOOL_SLUG,
        "agent_model": model,
        "review_window_start_utc": stamp,
        "review_window_end_utc": stamp,
        "recommendation": "caution",
        "confidence": "low",
        "reliable_tools": submitted,
        "unreliable_tools": [],
        "hallucinated_tools": [],
        "never_used_tools": list(redacted),
        "behavioral_notes": [
            "submitted_via_toolspec_cli",
            f"submission_scope={SUBMISSION_SCOPE}",
            f"submit_mode={mode}",
            f"submit_yolo={'true' if yolo else 'false'}",
            f"whitelist_tools={len(parts.public)}",
            f"unknown_tools={len(parts.unknown)}",
            f"observed_tools={len(observed_list)}",
            f"redacted_tools={len(redacted)}",
        ],
        "failure_modes": [
            {
                "symptom": NOT_PROVIDED,
                "likely_cause": NOT_PROVIDED,
                "recovery": NOT_PROVIDED,
                "frequency": "rare",
            }
        ],
        "evidence": build_evidence(stamp, token, submitted),
        "idempotency_key": f"session_{token}",
    }
    if install_id:
        payload["install_id"] = install_id

    summary = {
        "mode": mode,
        "yolo": bool(yolo),
        "observed_count": len(observed_list),
        "whitelist_count": len(parts.public),
        "unknown_count": len(parts.unknown),
        "submitted_count": len(submitted),
        "redacted_count": len(redacted),
    }
    logger.debug("built submission %s: %s", payload["idempotency_key"], summary)
    return SubmissionDraft(payload=payload, summary=summary, created_at_utc=stamp)
