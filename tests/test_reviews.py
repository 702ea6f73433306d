from datetime import datetime, timedelta, timezone

import pytest

from toolspec_gateway.errors import ToolSpecError
from toolspec_gateway.reviews import (
    PROMPT_COOLDOWN_HOURS,
    ReviewCatalog,
    contribution_prompt,
    load_seed_reviews,
    staleness,
)
from toolspec_gateway.store import ToolSpecStore

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def test_seed_catalog_loads():
    reviews = load_seed_reviews()
    slugs = {r["tool_slug"] for r in reviews}
    assert {"linear", "github", "filesystem"} <= slugs


def test_staleness_threshold():
    fresh = staleness((NOW - timedelta(days=59)).isoformat(), NOW)
    assert fresh["stale"] is False
    assert fresh["age_days"] == 59

    old = staleness("2026-08-20T12:00:00Z", NOW)
    assert old["stale"] is True
    assert old["age_days"] == 60


@pytest.mark.parametrize("value", [None, "", "yesterday"])
def test_unparseable_timestamp_is_stale(value):
    result = staleness(value, NOW)
    assert result["stale"] is True
    assert result["age_days"] is None


def test_prompt_shows_after_third_read_and_respects_cooldown():
    assert contribution_prompt(3, False, {"x-toolspec-read-count": "2"}, NOW)["show"] is False
    assert contribution_prompt(3, False, {"x-toolspec-read-count": "3"}, NOW)["show"] is True

    recently = (NOW - timedelta(hours=1)).isoformat()
    headers = {"x-toolspec-read-count": "10", "x-toolspec-last-prompted-utc": recently}
    assert contribution_prompt(3, False, headers, NOW)["show"] is False

    long_ago = (NOW - timedelta(hours=PROMPT_COOLDOWN_HOURS)).isoformat()
    headers["x-toolspec-last-prompted-utc"] = long_ago
    assert contribution_prompt(3, False, headers, NOW)["show"] is True


def test_stale_review_prompts_immediately():
    prompt = contribution_prompt(2, True, {}, NOW)
    assert prompt["show"] is True
    assert "stale" in prompt["message"]
    assert prompt["submit_command_template"] == "toolspec submit"

    assert "built from 2 installs" in contribution_prompt(2, False, {"x-toolspec-read-count": "bad"}, NOW)["message"]


def test_catalog_payloads(tmp_path):
    catalog = ReviewCatalog(ToolSpecStore(str(tmp_path / "gw.db")))
    assert catalog.seed() > 0
    assert catalog.seed() == 0

    listing = catalog.list_payload({}, NOW)
    assert listing["as_of_utc"] == "2026-10-19T12:00:00Z"
    assert all(row["stale"] for row in listing["reviews"])
    assert listing["contribution_prompt"]["show"] is True

    detail = catalog.detail_payload("github.json", {}, NOW)
    assert detail["review"]["tool_slug"] == "github"
    assert detail["review"]["staleness"]["threshold_days"] == 60

    with pytest.raises(ToolSpecError) as exc_info:
        catalog.detail_payload("nope", {}, NOW)
    assert exc_info.value.http_status == 404
    assert exc_info.value.code == "not_found"
