"""Local history scanning.

Recovers the set of tools an agent has used from the logs that coding agents
leave on disk (Claude, Codex, Cursor). The formats are heterogeneous and
untrusted, so extraction is heuristic and best-effort:

- JSON lines are walked for known tool-invocation fields; embedded strings
  and non-JSON lines are scanned for `mcp__<server>__<tool>` and
  `functions.<name>` tokens.
- Only the tail of each file is read, newest files first, within a per-file
  and a total byte budget.
- A file that cannot be read is recorded as `FileSkipped` and the scan moves
  on. An empty result is a valid result.

`HistoryScan` is lazy and restartable: every iteration re-lists the targets
and yields one outcome per candidate file.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Set, Union

from .canonical import canonicalize

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

MCP_TOOL_RE = re.compile(r"\bmcp__[a-z0-9_]+__[a-z0-9_]+\b", re.IGNORECASE)
FUNCTION_TOOL_RE = re.compile(r"\bfunctions\.[a-z0-9_]+\b", re.IGNORECASE)

INSPECTABLE_SUFFIXES = (".jsonl", ".log")
INSPECTABLE_BASENAMES = ("history", "history.json")

TOOL_RECORD_TYPES = ("tool_use", "function_call")


def parse_csv_list(raw: Optional[str]) -> List[str]:
    """Split a comma separated value, dropping blanks and repeats."""
    items = [part.strip() for part in (raw or "").split(",")]
    return list(dict.fromkeys(i for i in items if i))


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        value = int(str(env.get(name, "")).strip())
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class HistoryScanConfig:
    max_bytes_per_file: int = 1 * MIB
    max_total_bytes: int = 16 * MIB
    max_files: int = 250
    max_dir_entries: int = 5000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "HistoryScanConfig":
        """Read TOOLSPEC_HISTORY_* budgets. Non-positive or junk values use defaults."""
        env = os.environ if env is None else env
        return cls(
            max_bytes_per_file=_positive_int(env, "TOOLSPEC_HISTORY_MAX_BYTES_PER_FILE", cls.max_bytes_per_file),
            max_total_bytes=_positive_int(env, "TOOLSPEC_HISTORY_MAX_TOTAL_BYTES", cls.max_total_bytes),
            max_files=_positive_int(env, "TOOLSPEC_HISTORY_MAX_FILES", cls.max_files),
            max_dir_entries=_positive_int(env, "TOOLSPEC_HISTORY_MAX_DIR_ENTRIES", cls.max_dir_entries),
        )


# ---------------------------
# Scan targets
# ---------------------------

def expand_home(path: str) -> str:
    if path == "~" or path.startswith("~/") or path.startswith("~\\"):
        return os.path.expanduser(path)
    return path


def cursor_roots(platform: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> List[str]:
    platform = platform or sys.platform
    env = os.environ if env is None else env
    home = os.path.expanduser("~")
    roots: List[str] = []
    if platform == "darwin":
        roots.append(os.path.join(home, "Library", "Application Support", "Cursor"))
    elif platform.startswith("linux"):
        roots.append(os.path.join(home, ".config", "Cursor"))
    elif platform == "win32":
        appdata = env.get("APPDATA", "")
        if appdata:
            roots.append(os.path.join(appdata, "Cursor"))
        roots.append(os.path.join(home, "AppData", "Roaming", "Cursor"))
    return list(dict.fromkeys(os.path.abspath(r) for r in roots))


def default_scan_targets(platform: Optional[str] = None) -> List[str]:
    home = os.path.expanduser("~")
    targets = [
        os.path.join(home, ".claude", "history.jsonl"),
        os.path.join(home, ".claude", "projects"),
        os.path.join(home, ".codex", "history.jsonl"),
        os.path.join(home, ".codex", "sessions"),
    ]
    targets.extend(os.path.join(root, "logs") for root in cursor_roots(platform))
    return targets


def scan_targets(
    search_roots: Optional[Sequence[str]] = None,
    env_overrides: Optional[Sequence[str]] = None,
) -> List[str]:
    """Defaults (or `search_roots`) followed by overrides, absolute and de-duplicated.

    `env_overrides=None` reads TOOLSPEC_HISTORY_PATHS.
    """
    roots = default_scan_targets() if search_roots is None else list(search_roots)
    if env_overrides is None:
        env_overrides = parse_csv_list(os.getenv("TOOLSPEC_HISTORY_PATHS", ""))
    combined = [expand_home(p) for p in list(roots) + list(env_overrides) if p]
    return list(dict.fromkeys(os.path.abspath(p) for p in combined))


def should_inspect(path: str) -> bool:
    name = str(path or "").lower()
    if name.endswith(INSPECTABLE_SUFFIXES):
        return True
    return os.path.basename(name) in INSPECTABLE_BASENAMES


@dataclass(frozen=True)
class Candidate:
    path: str
    size: int
    mtime: float


def list_history_files(root: str, max_entries: int) -> List[Candidate]:
    """Breadth-first listing, entries sorted by name descending.

    At most `max_entries` directory entries are visited in total. Symlinks are
    not followed.
    """
    queue = [root]
    files: List[Candidate] = []
    visited = 0
    index = 0
    while index < len(queue) and visited < max_entries:
        current = queue[index]
        index += 1
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name, reverse=True)
        except OSError:
            continue

        for entry in entries:
            if visited >= max_entries:
                break
            visited += 1
            try:
                if entry.is_dir(follow_symlinks=False):
                    queue.append(entry.path)
                    continue
                if not entry.is_file(follow_symlinks=False) or not should_inspect(entry.path):
                    continue
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            files.append(Candidate(path=entry.path, size=st.st_size, mtime=st.st_mtime))
    return files


def collect_candidates(targets: Sequence[str], config: HistoryScanConfig) -> List[Candidate]:
    """Candidates from all targets: one per path (newest mtime wins), newest first."""
    found: List[Candidate] = []
    for target in targets:
        try:
            st = os.stat(target)
        except OSError:
            continue
        if os.path.isdir(target):
            found.extend(list_history_files(target, config.max_dir_entries))
        elif os.path.isfile(target) and should_inspect(target):
            found.append(Candidate(path=target, size=st.st_size, mtime=st.st_mtime))

    by_path: Dict[str, Candidate] = {}
    for c in found:
        prev = by_path.get(c.path)
        if prev is None or c.mtime > prev.mtime:
            by_path[c.path] = c
    return sorted(by_path.values(), key=lambda c: c.mtime, reverse=True)


def read_tail(path: str, max_bytes: int) -> bytes:
    """Last `max_bytes` bytes of the file. Bytes before the cutoff are never read."""
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        length = min(size, max_bytes)
        if length <= 0:
            return b""
        f.seek(size - length)
        return f.read(length)


# ---------------------------
# Extraction
# ---------------------------

def _add_tool(tools: Set[str], raw: Any) -> None:
    slug = canonicalize(raw)
    if slug:
        tools.add(slug)


def extract_from_text(text: Any, tools: Set[str]) -> None:
    if not isinstance(text, str) or not text:
        return
    for m in MCP_TOOL_RE.findall(text):
        _add_tool(tools, m)
    for m in FUNCTION_TOOL_RE.findall(text):
        _add_tool(tools, m)


def _extract_content_items(items: List[Any], tools: Set[str]) -> None:
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "tool_use" and isinstance(item.get("name"), str):
            _add_tool(tools, item["name"])
        extract_from_text(item.get("text"), tools)


def extract_from_record(record: Any, tools: Set[str]) -> None:
    """Pull tool names out of one decoded JSON history record."""
    if not isinstance(record, dict):
        return

    if record.get("type") in TOOL_RECORD_TYPES and isinstance(record.get("name"), str):
        _add_tool(tools, record["name"])

    extract_from_text(record.get("content"), tools)
    extract_from_text(record.get("text"), tools)

    message = record.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list):
            _extract_content_items(content, tools)
        else:
            extract_from_text(content, tools)

    payload = record.get("payload")
    if isinstance(payload, dict):
        if payload.get("type") in TOOL_RECORD_TYPES and isinstance(payload.get("name"), str):
            _add_tool(tools, payload["name"])
        extract_from_text(payload.get("arguments"), tools)
        extract_from_text(payload.get("output"), tools)
        if isinstance(payload.get("content"), list):
            _extract_content_items(payload["content"], tools)


def parse_history_content(content: str, tools: Set[str]) -> None:
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line[0] in "{[":
            try:
                record = json.loads(line)
            except (ValueError, RecursionError):
                pass
            else:
                extract_from_record(record, tools)
                continue
        extract_from_text(line, tools)


# ---------------------------
# Scan outcomes
# ---------------------------

@dataclass(frozen=True)
class FileParsed:
    path: str
    tools: FrozenSet[str]
    bytes_read: int


@dataclass(frozen=True)
class FileSkipped:
    path: str
    reason: str


FileOutcome = Union[FileParsed, FileSkipped]


@dataclass
class ScanReport:
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def parsed(self) -> List[FileParsed]:
        return [o for o in self.outcomes if isinstance(o, FileParsed)]

    @property
    def skipped(self) -> List[FileSkipped]:
        return [o for o in self.outcomes if isinstance(o, FileSkipped)]

    @property
    def bytes_read(self) -> int:
        return sum(o.bytes_read for o in self.parsed)

    @property
    def tools(self) -> Set[str]:
        out: Set[str] = set()
        for o in self.parsed:
            out.update(o.tools)
        return out


class HistoryScan:
    """Restartable scan over local history files."""

    def __init__(self, targets: Optional[Sequence[str]] = None, config: Optional[HistoryScanConfig] = None):
        self._targets = list(targets) if targets is not None else None
        self.config = config or HistoryScanConfig.from_env()

    @property
    def targets(self) -> List[str]:
        return scan_targets() if self._targets is None else scan_targets(self._targets, env_overrides=[])

    def __iter__(self) -> Iterator[FileOutcome]:
        cfg = self.config
        candidates = collect_candidates(self.targets, cfg)
        remaining = cfg.max_total_bytes

        for index, cand in enumerate(candidates):
            if index >= cfg.max_files:
                yield FileSkipped(cand.path, "max_files_reached")
                continue
            if remaining <= 0:
                yield FileSkipped(cand.path, "total_budget_exhausted")
                continue

            try:
                data = read_tail(cand.path, min(cfg.max_bytes_per_file, remaining))
            except OSError as e:
                logger.debug("skipping unreadable history file %s: %s", cand.path, e)
                yield FileSkipped(cand.path, f"unreadable: {e.__class__.__name__}")
                continue

            remaining -= len(data)
            tools: Set[str] = set()
            parse_history_content(data.decode("utf-8", errors="replace"), tools)
            yield FileParsed(cand.path, frozenset(tools), len(data))

    def run(self) -> ScanReport:
        report = ScanReport(outcomes=list(self))
        logger.debug(
            "history scan: %d parsed, %d skipped, %d bytes, %d tools",
            len(report.parsed), len(report.skipped), report.bytes_read, len(report.tools),
        )
        return report


def extract(
    search_roots: Optional[Sequence[str]] = None,
    env_overrides: Optional[Sequence[str]] = None,
    config: Optional[HistoryScanConfig] = None,
) -> Set[str]:
    """Observed tool slugs from local history."""
    targets = scan_targets(search_roots, env_overrides)
    return HistoryScan(targets, config).run().tools


def collect_observed_tools(scan: Optional[HistoryScan] = None, env: Optional[Mapping[str, str]] = None) -> List[str]:
    """TOOLSPEC_OBSERVED_TOOLS merged with the history scan, sorted."""
    env = os.environ if env is None else env
    from_env = {s for s in (canonicalize(x) for x in parse_csv_list(env.get("TOOLSPEC_OBSERVED_TOOLS", ""))) if s}
    scan = scan or HistoryScan()
    return sorted(from_env | scan.run().tools)
