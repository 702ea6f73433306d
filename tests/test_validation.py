import pytest

from toolspec_gateway.validation import validate_submission


def _valid(**overrides):
    body = {
        "tool_slug": "__session__",
        "agent_model": "claude-sonnet-4.5",
        "review_window_start_utc": "2026-10-01T12:00:00.000Z",
        "review_window_end_utc": "2026-10-01T12:00:00.000Z",
        "recommendation": "caution",
        "confidence": "low",
        "submission_scope": "all_observed",
        "observed_tool_slugs": ["github"],
        "redacted_tool_slugs": [],
        "reliable_tools": ["github"],
        "unreliable_tools": [],
        "hallucinated_tools": [],
        "never_used_tools": [],
        "behavioral_notes": ["submitted_via_toolspec_cli"],
        "failure_modes": [
            {"symptom": "not_provided", "likely_cause": "not_provided", "recovery": "not_provided", "frequency": "rare"}
        ],
        "evidence": [
            {"tool_call_id": "session_a_1_github", "timestamp_utc": "2026-10-01T12:00:00.000Z"},
            {"tool_call_id": "session_a_2_github", "timestamp_utc": "2026-10-01T12:00:00.000Z"},
        ],
        "idempotency_key": "session_a",
        "install_id": "ins_abc",
    }
    body.update(overrides)
    return body


def _fields(result):
    return {e.field for e in result.errors}


def test_valid_submission():
    result = validate_submission(_valid())
    assert result.ok
    assert result.errors == []
    assert result.value.validated_tool_use_count == 2
    assert result.value.is_meaningful
    assert result.value.install_id == "ins_abc"


def test_bad_agent_model_is_rejected():
    result = validate_submission(_valid(agent_model="bad model!"))
    assert not result.ok
    assert result.errors_as_dicts() == [
        {"field": "agent_model", "message": "must match ^[a-zA-Z0-9._-]+$"}
    ]


@pytest.mark.parametrize(
    "value,message",
    [
        ("", "must be a non-empty string"),
        (None, "must be a non-empty string"),
        ("m" * 101, "must be at most 100 characters"),
    ],
)
def test_agent_model_bounds(value, message):
    result = validate_submission(_valid(agent_model=value))
    assert [e.message for e in result.errors if e.field == "agent_model"] == [message]


def test_agent_model_with_trailing_newline_is_rejected():
    result = validate_submission(_valid(agent_model="claude\n"))
    assert result.errors_as_dicts() == [
        {"field": "agent_model", "message": "must match ^[a-zA-Z0-9._-]+$"}
    ]


def test_install_id_with_trailing_newline_is_rejected():
    result = validate_submission(_valid(install_id="ins_abc\n"))
    assert result.errors_as_dicts() == [
        {"field": "install_id", "message": "contains invalid characters"}
    ]


def test_accepted_submission_is_frozen():
    submission = validate_submission(_valid()).value
    with pytest.raises(Exception):
        submission.agent_model = "other"


def test_all_violations_are_reported_together():
    body = _valid(
        recommendation="great",
        confidence="sure",
        reliable_tools=[1, 2],
        failure_modes=[{"symptom": "x", "likely_cause": "y", "recovery": "", "frequency": "always"}],
        evidence=[{"tool_call_id": ""}, "nope"],
    )
    del body["tool_slug"]

    result = validate_submission(body)
    assert not result.ok
    assert _fields(result) == {
        "recommendation",
        "confidence",
        "tool_slug",
        "reliable_tools",
        "failure_modes[0].frequency",
        "failure_modes[0].recovery",
        "evidence[0].tool_call_id",
        "evidence[0].timestamp_utc",
        "evidence[1]",
    }


@pytest.mark.parametrize("install_id", ["", "ins id!", "i" * 101, 42])
def test_malformed_install_id(install_id):
    result = validate_submission(_valid(install_id=install_id))
    assert _fields(result) == {"install_id"}


def test_install_id_is_optional():
    body = _valid()
    del body["install_id"]
    assert validate_submission(body).ok
    assert validate_submission(_valid(install_id=None)).value.install_id is None


def test_optional_fields_are_checked_when_present():
    result = validate_submission(_valid(submission_scope="everything", observed_tool_slugs="github"))
    assert _fields(result) == {"submission_scope", "observed_tool_slugs"}

    body = _valid()
    del body["submission_scope"]
    del body["observed_tool_slugs"]
    result = validate_submission(body)
    assert result.ok
    assert result.value.observed_tool_slugs == []
    assert not result.value.is_meaningful


@pytest.mark.parametrize("body", [None, [], "x", 3, {}, {"failure_modes": "x", "evidence": None}])
def test_never_raises_on_garbage(body):
    result = validate_submission(body)
    assert not result.ok
    assert result.errors


def test_non_object_body():
    assert validate_submission([1]).errors_as_dicts() == [{"field": "body", "message": "must be a JSON object"}]
