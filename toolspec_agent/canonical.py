"""Tool-name canonicalization.

Different agents name the same shell tool differently. Everything observed in
local history goes through `canonicalize` before it is counted.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

SHELL_TOOL = "bash"

SYNONYMS: Dict[str, str] = {
    "shell_command": SHELL_TOOL,
    "exec_command": SHELL_TOOL,
    "functions.exec_command": SHELL_TOOL,
    "write_stdin": SHELL_TOOL,
    "functions.write_stdin": SHELL_TOOL,
}


def canonicalize(raw: Any) -> Optional[str]:
    """Return the stable slug for `raw`, or None if there is nothing to keep.

    Total and idempotent: never raises, and canonicalize(canonicalize(x)) ==
    canonicalize(x).
    """
    if not isinstance(raw, str):
        return None
    slug = raw.strip().lower()
    if not slug:
        return None
    return SYNONYMS.get(slug, slug)
