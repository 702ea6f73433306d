"""Submission validation for `POST /submissions`.

The request body is modelled with pydantic. `validate_submission` accepts any
decoded JSON value and never raises: every violation pydantic reports is
translated into a `{field, message}` pair so a caller gets the full list in
one 400 response.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictStr, StringConstraints, ValidationError
from pydantic import field_validator

RECOMMENDATIONS = ("recommended", "caution", "avoid")
CONFIDENCE_LEVELS = ("high", "medium", "low")
FAILURE_FREQUENCIES = ("rare", "occasional", "frequent", "persistent")
SUBMISSION_SCOPES = ("single_tool", "all_observed")

SESSION_TOOL_SLUG = "__session__"

MAX_AGENT_MODEL_LEN = 100
MAX_INSTALL_ID_LEN = 100

AGENT_MODEL_PATTERN = r"^[a-zA-Z0-9._-]+$"
INSTALL_ID_PATTERN = r"^[a-zA-Z0-9._:-]+$"

STRING_LIST_FIELDS = (
    "observed_tool_slugs",
    "redacted_tool_slugs",
    "reliable_tools",
    "unreliable_tools",
    "hallucinated_tools",
    "never_used_tools",
    "behavioral_notes",
)
OBJECT_LIST_FIELDS = ("failure_modes", "evidence")
ENUM_FIELDS: Dict[str, Tuple[str, ...]] = {
    "recommendation": RECOMMENDATIONS,
    "confidence": CONFIDENCE_LEVELS,
    "submission_scope": SUBMISSION_SCOPES,
}


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _full_match(pattern: str):
    compiled = re.compile(pattern)

    def check(value: str) -> str:
        # `$` alone would accept a trailing newline.
        if compiled.fullmatch(value) is None:
            raise ValueError("pattern mismatch")
        return value

    return check


NonEmptyStr = Annotated[StrictStr, AfterValidator(_not_blank)]
StringList = List[StrictStr]

AgentModel = Annotated[
    StrictStr,
    StringConstraints(min_length=1, max_length=MAX_AGENT_MODEL_LEN, pattern=AGENT_MODEL_PATTERN),
    AfterValidator(_full_match(AGENT_MODEL_PATTERN)),
]
InstallId = Annotated[
    StrictStr,
    StringConstraints(min_length=1, max_length=MAX_INSTALL_ID_LEN, pattern=INSTALL_ID_PATTERN),
    AfterValidator(_full_match(INSTALL_ID_PATTERN)),
]


class FailureMode(BaseModel):
    model_config = ConfigDict(frozen=True)

    symptom: NonEmptyStr
    likely_cause: NonEmptyStr
    recovery: NonEmptyStr
    frequency: Literal["rare", "occasional", "frequent", "persistent"]


class Evidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_call_id: NonEmptyStr
    timestamp_utc: NonEmptyStr


class ReviewSubmission(BaseModel):
    """A submission that passed validation. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    tool_slug: NonEmptyStr
    agent_model: AgentModel
    review_window_start_utc: NonEmptyStr
    review_window_end_utc: NonEmptyStr
    recommendation: Literal["recommended", "caution", "avoid"]
    confidence: Literal["high", "medium", "low"]
    idempotency_key: NonEmptyStr
    install_id: Optional[InstallId] = None
    submission_scope: Optional[Literal["single_tool", "all_observed"]] = None
    observed_tool_slugs: Optional[StringList] = Field(default_factory=list)
    redacted_tool_slugs: Optional[StringList] = Field(default_factory=list)
    reliable_tools: StringList
    unreliable_tools: StringList
    hallucinated_tools: StringList
    never_used_tools: StringList
    behavioral_notes: StringList
    failure_modes: List[FailureMode]
    evidence: List[Evidence]

    @field_validator("observed_tool_slugs", "redacted_tool_slugs")
    @classmethod
    def _absent_as_empty(cls, value: Optional[List[str]]) -> List[str]:
        return [] if value is None else value

    @property
    def validated_tool_use_count(self) -> int:
        return len(self.evidence)

    @property
    def is_meaningful(self) -> bool:
        """Carries at least one observed tool (as opposed to a placeholder)."""
        return len(self.observed_tool_slugs or []) > 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


@dataclass
class ValidationResult:
    ok: bool
    value: Optional[ReviewSubmission] = None
    errors: List[FieldError] = field(default_factory=list)

    def errors_as_dicts(self) -> List[Dict[str, str]]:
        return [e.to_dict() for e in self.errors]


# ---------------------------
# pydantic error -> {field, message}
# ---------------------------

def _one_of(values: Tuple[str, ...]) -> str:
    return "|".join(values)


def _field_path(loc: Tuple[Union[str, int], ...]) -> str:
    if not loc:
        return "body"
    if loc[0] in STRING_LIST_FIELDS:
        return str(loc[0])
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _message(loc: Tuple[Union[str, int], ...], err_type: str) -> str:
    if not loc:
        return "must be a JSON object"
    top = loc[0]

    if top in STRING_LIST_FIELDS:
        return "must be an array of strings"
    if top in OBJECT_LIST_FIELDS:
        if len(loc) == 1:
            return "must be an array"
        if len(loc) == 2:
            return "must be an object"
        if loc[-1] == "frequency":
            return f"must be one of {_one_of(FAILURE_FREQUENCIES)}"
        return "must be a non-empty string"

    if top == "agent_model":
        if err_type == "string_too_long":
            return f"must be at most {MAX_AGENT_MODEL_LEN} characters"
        if err_type in ("string_pattern_mismatch", "value_error"):
            return f"must match {AGENT_MODEL_PATTERN}"
        return "must be a non-empty string"
    if top == "install_id":
        if err_type == "string_too_long":
            return f"must be at most {MAX_INSTALL_ID_LEN} characters"
        if err_type in ("string_pattern_mismatch", "value_error"):
            return "contains invalid characters"
        return "must be a non-empty string when provided"

    if top in ENUM_FIELDS:
        suffix = " when provided" if top == "submission_scope" else ""
        return f"must be one of {_one_of(ENUM_FIELDS[top])}{suffix}"
    return "must be a non-empty string"


def _field_errors(exc: ValidationError) -> List[FieldError]:
    errors: List[FieldError] = []
    for err in exc.errors():
        loc = tuple(err.get("loc") or ())
        fe = FieldError(_field_path(loc), _message(loc, err.get("type", "")))
        if fe not in errors:
            errors.append(fe)
    return errors


def validate_submission(body: Any) -> ValidationResult:
    """Validate a decoded request body against the submission shape."""
    if not isinstance(body, dict):
        return ValidationResult(ok=False, errors=[FieldError("body", "must be a JSON object")])
    if body.get("install_id") is None:
        body = {k: v for k, v in body.items() if k != "install_id"}
    try:
        submission = ReviewSubmission.model_validate(body)
    except ValidationError as e:
        return ValidationResult(ok=False, errors=_field_errors(e))
    return ValidationResult(ok=True, value=submission)
