"""Public tool registry and the whitelist partitioner.

The registry only tracks coarse provider names ("github", "linear"), while
observed slugs arrive in vendor-specific shapes (`mcp__linear__create_issue`,
`@modelcontextprotocol/server-github`). Each slug is expanded into candidate
tokens and counts as public if any token is a registry name.

The registry is injected. `DEFAULT_REGISTRY` is the built-in list; set
TOOLSPEC_WHITELIST_FILE to a JSON file `{"version": "...", "tools": [...]}`
to replace it without touching this module.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional

from .canonical import canonicalize

logger = logging.getLogger(__name__)

_SEPARATORS_RE = re.compile(r"[/:_\-.@]+")
_MCP_SERVER_RE = re.compile(r"^mcp__([^_]+)__")
_SERVER_MARKER = "server-"

DEFAULT_REGISTRY_VERSION = "2026-02-27"

DEFAULT_TOOL_NAMES = (
    "anthropic",
    "airtable",
    "asana",
    "aws",
    "azure",
    "bigquery",
    "brave",
    "browserbase",
    "cloudflare",
    "confluence",
    "discord",
    "fetch",
    "figma",
    "filesystem",
    "gcp",
    "github",
    "gitlab",
    "google",
    "hubspot",
    "jira",
    "linear",
    "mongodb",
    "mysql",
    "notion",
    "openai",
    "paypal",
    "postgres",
    "redis",
    "salesforce",
    "serpapi",
    "shopify",
    "slack",
    "snowflake",
    "sqlite",
    "stripe",
    "supabase",
    "tavily",
    "twilio",
    "vercel",
    "zendesk",
)


@dataclass(frozen=True)
class ToolRegistry:
    """Versioned set of public provider names."""

    version: str
    names: FrozenSet[str]

    @classmethod
    def of(cls, version: str, names: Iterable[str]) -> "ToolRegistry":
        cleaned = frozenset(n for n in (canonicalize(x) for x in names) if n)
        return cls(version=str(version), names=cleaned)

    @classmethod
    def from_file(cls, path: Path) -> "ToolRegistry":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("tools"), list):
            raise ValueError(f"whitelist file {path} must be an object with a 'tools' array")
        return cls.of(data.get("version") or "custom", (t for t in data["tools"] if isinstance(t, str)))

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def __len__(self) -> int:
        return len(self.names)


DEFAULT_REGISTRY = ToolRegistry.of(DEFAULT_REGISTRY_VERSION, DEFAULT_TOOL_NAMES)


def load_registry_from_env() -> ToolRegistry:
    """Registry named by TOOLSPEC_WHITELIST_FILE, else the built-in one.

    An unreadable or malformed file falls back to the built-in registry with a
    warning rather than widening what gets submitted.
    """
    raw = (os.getenv("TOOLSPEC_WHITELIST_FILE", "") or "").strip()
    if not raw:
        return DEFAULT_REGISTRY
    path = Path(raw).expanduser()
    try:
        registry = ToolRegistry.from_file(path)
    except (OSError, ValueError) as e:
        logger.warning("ignoring TOOLSPEC_WHITELIST_FILE=%s: %s", path, e)
        return DEFAULT_REGISTRY
    logger.debug("loaded tool registry %s (%d names) from %s", registry.version, len(registry), path)
    return registry


def slug_candidates(slug: str) -> List[str]:
    s = (slug or "").strip().lower()
    if not s:
        return []

    candidates = [s]
    candidates.extend(t for t in _SEPARATORS_RE.split(s) if t)

    m = _MCP_SERVER_RE.match(s)
    if m:
        candidates.append(m.group(1))

    if _SERVER_MARKER in s:
        candidates.append(s.rsplit(_SERVER_MARKER, 1)[1])

    # Order-preserving dedupe
    return list(dict.fromkeys(candidates))


def is_public(slug: str, registry: ToolRegistry = DEFAULT_REGISTRY) -> bool:
    return any(c in registry for c in slug_candidates(slug))


@dataclass(frozen=True)
class Partition:
    public: List[str]
    unknown: List[str]


def partition(slugs: Iterable[str], registry: Optional[ToolRegistry] = None) -> Partition:
    """Split slugs into public and unknown.

    Every input slug lands in exactly one side; input order is kept and
    duplicates are collapsed.
    """
    if registry is None:
        registry = DEFAULT_REGISTRY
    public: List[str] = []
    unknown: List[str] = []
    for slug in dict.fromkeys(slugs):
        if is_public(slug, registry):
            public.append(slug)
        else:
            unknown.append(slug)
    return Partition(public=public, unknown=unknown)
