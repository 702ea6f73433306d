"""ToolSpec gateway package.

Server side of the ToolSpec protocol:

- Install registration and revocation
- Idempotent review submission ingestion
- Per-install gating of review reads

Convenience imports
------------------
The package avoids import-time side effects. These are loaded lazily:

    from toolspec_gateway import create_app, ToolSpecStore, InstallManager
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for source checkouts."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "create_app",
    "GatewayConfig",
    "ToolSpecStore",
    "InstallManager",
    "validate_submission",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "create_app": ("toolspec_gateway.server", "create_app"),
    "GatewayConfig": ("toolspec_gateway.server", "GatewayConfig"),
    "ToolSpecStore": ("toolspec_gateway.store", "ToolSpecStore"),
    "InstallManager": ("toolspec_gateway.installs", "InstallManager"),
    "validate_submission": ("toolspec_gateway.validation", "validate_submission"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(list(globals().keys()) + list(_LAZY_EXPORTS.keys()))
