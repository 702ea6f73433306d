"""Read-only ToolReview catalog.

Reviews are slug-keyed aggregates seeded from `data/seed_reviews.json` into the
`tool_reviews` table. The gateway never derives them from submissions; it only
serves them to installs that passed gating.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import TS_E_NOT_FOUND, toolspec_error
from .store import ToolSpecStore

logger = logging.getLogger("toolspec_gateway.reviews")

SEED_REVIEWS_PATH = Path(__file__).resolve().parent / "data" / "seed_reviews.json"

STALE_THRESHOLD_DAYS = 60
PROMPT_SHOW_AFTER_NTH_READ = 3
PROMPT_COOLDOWN_HOURS = 168
SUBMIT_COMMAND = "toolspec submit"

LIST_FIELDS = (
    "tool_slug",
    "tool_name",
    "category",
    "recommendation",
    "confidence",
    "calls_observed",
    "sessions_observed",
    "error_rate",
    "connection_stability",
    "setup_type",
    "review_count",
    "contributor_count",
    "validated_tool_uses",
    "agent_models",
    "last_contribution_utc",
    "last_verified_utc",
)

DETAIL_FIELDS = (
    "tool_slug",
    "tool_name",
    "category",
    "recommendation",
    "confidence",
    "calls_observed",
    "sessions_observed",
    "error_rate",
    "connection_stability",
    "setup_type",
    "contributor_count",
    "last_verified_utc",
    "last_verified_source",
    "aggregation",
    "install",
    "verify_command",
    "uninstall_command",
    "reliable_tools",
    "unreliable_tools",
    "hallucinated_tools",
    "never_used_tools",
    "failure_modes",
    "behavioral_notes",
    "privacy_summary",
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_seed_reviews(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    p = Path(path) if path is not None else SEED_REVIEWS_PATH
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"seed catalog {p} must contain a JSON array")
    return [r for r in data if isinstance(r, dict) and r.get("tool_slug")]


def staleness(last_contribution_utc: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Unparseable timestamps count as stale."""
    now = now or _now_utc()
    contributed = _parse_iso(last_contribution_utc)
    if contributed is None:
        return {
            "stale": True,
            "threshold_days": STALE_THRESHOLD_DAYS,
            "age_days": None,
            "last_contribution_utc": last_contribution_utc,
        }
    age_days = (now - contributed).days
    return {
        "stale": age_days >= STALE_THRESHOLD_DAYS,
        "threshold_days": STALE_THRESHOLD_DAYS,
        "age_days": age_days,
        "last_contribution_utc": last_contribution_utc,
    }


def contribution_prompt(
    contributor_count: int,
    stale: bool,
    headers: Mapping[str, str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Decide whether a reader should be nudged to contribute.

    Clients report how many reads they have done and when they were last
    prompted via `X-Toolspec-Read-Count` / `X-Toolspec-Last-Prompted-Utc`.
    """
    now = now or _now_utc()
    try:
        read_count = int(headers.get("x-toolspec-read-count") or 0)
    except ValueError:
        read_count = 0
    last_prompted = _parse_iso(headers.get("x-toolspec-last-prompted-utc"))
    cooldown_elapsed = (
        last_prompted is None
        or (now - last_prompted).total_seconds() >= PROMPT_COOLDOWN_HOURS * 3600
    )

    if stale:
        message = f"This review is stale. Run `{SUBMIT_COMMAND}` after your session to refresh shared priors."
    else:
        message = (
            f"This review was built from {contributor_count} installs. "
            f"Run `{SUBMIT_COMMAND}` after your session to contribute updates."
        )
    return {
        "show": bool(cooldown_elapsed and (stale or read_count >= PROMPT_SHOW_AFTER_NTH_READ)),
        "show_after_nth_read": PROMPT_SHOW_AFTER_NTH_READ,
        "cooldown_hours": PROMPT_COOLDOWN_HOURS,
        "message": message,
        "submit_command_template": SUBMIT_COMMAND,
    }


@dataclass
class ReviewCatalog:
    store: ToolSpecStore

    def seed(self, path: Optional[Path] = None) -> int:
        inserted = self.store.seed_reviews(load_seed_reviews(path))
        if inserted:
            logger.info("seeded %d tool reviews", inserted)
        return inserted

    def list_payload(self, headers: Mapping[str, str], now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or _now_utc()
        rows: List[Dict[str, Any]] = []
        for review in self.store.list_reviews():
            row = {k: review.get(k) for k in LIST_FIELDS}
            row["stale"] = staleness(review.get("last_contribution_utc"), now)["stale"]
            row["detail_url"] = f"/reviews/{review['tool_slug']}"
            rows.append(row)

        prompt = None
        if rows:
            # Nudge towards the first stale review, else the first one listed.
            target = next((r for r in rows if r["stale"]), rows[0])
            prompt = contribution_prompt(int(target.get("contributor_count") or 0), target["stale"], headers, now)

        return {
            "toolspec": "v1",
            "as_of_utc": _iso(now),
            "reviews": rows,
            "contribution_prompt": prompt,
        }

    def detail_payload(self, tool_slug: str, headers: Mapping[str, str], now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or _now_utc()
        slug = tool_slug[:-5] if tool_slug.endswith(".json") else tool_slug
        review = self.store.get_review(slug)
        if review is None:
            raise toolspec_error(
                TS_E_NOT_FOUND,
                f"No review found for tool slug '{slug}'",
                http_status=404,
            )
        stale = staleness(review.get("last_contribution_utc"), now)
        detail = {k: review.get(k) for k in DETAIL_FIELDS}
        detail["staleness"] = stale
        return {
            "toolspec": "v1",
            "review": detail,
            "contribution_prompt": contribution_prompt(
                int(review.get("contributor_count") or 0), stale["stale"], headers, now
            ),
        }
