"""ToolSpec agent package.

Client side of the ToolSpec protocol: recover observed tools from local agent
history, redact what is not on the public registry, and package the rest
into a review submission.

    from toolspec_agent import collect_observed_tools, build_submission
"""

from __future__ import annotations

from .canonical import canonicalize
from .history import HistoryScan, HistoryScanConfig, ScanReport, collect_observed_tools, extract
from .submission import (
    ExcludeAllDecider,
    IncludeAllDecider,
    InteractiveDecisionRequired,
    SubmissionDraft,
    TerminalDecider,
    build_submission,
)
from .whitelist import DEFAULT_REGISTRY, Partition, ToolRegistry, partition

__all__ = [
    "canonicalize",
    "HistoryScan",
    "HistoryScanConfig",
    "ScanReport",
    "collect_observed_tools",
    "extract",
    "ExcludeAllDecider",
    "IncludeAllDecider",
    "InteractiveDecisionRequired",
    "SubmissionDraft",
    "TerminalDecider",
    "build_submission",
    "DEFAULT_REGISTRY",
    "Partition",
    "ToolRegistry",
    "partition",
]
