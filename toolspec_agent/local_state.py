"""Local agent state under TOOLSPEC_CONFIG_DIR (default ~/.toolspec).

    install.json        credentials returned by POST /installs
    state.json          approval bookkeeping
    review-draft.json   the last prepared submission draft

Unreadable or malformed files read as absent.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

INSTALL_FILE = "install.json"
STATE_FILE = "state.json"
DRAFT_FILE = "review-draft.json"


def default_config_dir() -> Path:
    raw = (os.getenv("TOOLSPEC_CONFIG_DIR", "") or "").strip()
    return Path(raw).expanduser() if raw else Path.home() / ".toolspec"


class LocalState:
    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()

    @property
    def install_path(self) -> Path:
        return self.config_dir / INSTALL_FILE

    @property
    def state_path(self) -> Path:
        return self.config_dir / STATE_FILE

    @property
    def draft_path(self) -> Path:
        return self.config_dir / DRAFT_FILE

    def _read(self, path: Path) -> Optional[Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.debug("ignoring unreadable %s: %s", path, e)
            return None

    def _write(self, path: Path, value: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(value, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    # install.json

    def read_install(self) -> Optional[Dict[str, Any]]:
        data = self._read(self.install_path)
        return data if isinstance(data, dict) else None

    def install_id(self) -> Optional[str]:
        record = self.read_install() or {}
        value = record.get("install_id")
        return value if isinstance(value, str) and value else None

    def write_install(self, record: Dict[str, Any]) -> None:
        self._write(self.install_path, record)
        try:
            os.chmod(self.install_path, 0o600)
        except OSError as e:
            logger.debug("could not restrict permissions on %s: %s", self.install_path, e)

    # state.json

    def read_state(self) -> Dict[str, Any]:
        data = self._read(self.state_path)
        return data if isinstance(data, dict) else {}

    def update_state(self, **changes: Any) -> Dict[str, Any]:
        state = self.read_state()
        state.update(changes)
        self._write(self.state_path, state)
        return state

    # review-draft.json

    def read_draft(self) -> Optional[Dict[str, Any]]:
        data = self._read(self.draft_path)
        return data if isinstance(data, dict) else None

    def write_draft(self, draft: Dict[str, Any]) -> None:
        self._write(self.draft_path, draft)

    def clear(self) -> None:
        for path in (self.install_path, self.state_path, self.draft_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
