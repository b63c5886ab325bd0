"""Multi-file persistence of the WhatsApp authentication state.

The directory layout mirrors what multi-device WhatsApp clients expect:
``creds.json`` holds the identity and registration data, and every signal
key lives in its own ``<type>-<id>.json`` file so that a key rotation only
rewrites the files that changed.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from .logger import get_logger

CREDS_FILE = "creds.json"

logger = get_logger("AuthState")


def _fix_file_name(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


class MultiFileAuthState:
    """Read and write the credential directory."""

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory).expanduser()
        self.creds: Dict[str, Any] = {}

    @property
    def has_credentials(self) -> bool:
        return (self.directory / CREDS_FILE).exists()

    def _write_json(self, file_name: str, data: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / _fix_file_name(file_name)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, path)

    def _read_json(self, path: Path) -> Optional[Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupted auth file %s", path)
            return None

    def load(self) -> Dict[str, Any]:
        """Return ``{"creds": ..., "keys": {type: {id: value}}}`` from disk."""
        creds = self._read_json(self.directory / CREDS_FILE) or {}
        keys: Dict[str, Dict[str, Any]] = {}
        if self.directory.is_dir():
            for path in sorted(self.directory.glob("*.json")):
                if path.name == CREDS_FILE:
                    continue
                entry = self._read_json(path)
                if not isinstance(entry, dict) or "type" not in entry or "id" not in entry:
                    continue
                keys.setdefault(entry["type"], {})[entry["id"]] = entry.get("value")
        self.creds = creds
        return {"creds": creds, "keys": keys}

    def update_creds(self, update: Dict[str, Any]) -> None:
        """Merge a credential update and write it before returning."""
        self.creds.update(update or {})
        self._write_json(CREDS_FILE, self.creds)

    def set_keys(self, data: Dict[str, Dict[str, Any]]) -> None:
        """Write (or delete, for ``None`` values) rotated signal keys."""
        for key_type, entries in (data or {}).items():
            for key_id, value in (entries or {}).items():
                file_name = f"{key_type}-{key_id}.json"
                if value is None:
                    (self.directory / _fix_file_name(file_name)).unlink(missing_ok=True)
                else:
                    self._write_json(file_name, {"type": key_type, "id": key_id, "value": value})

    def clear(self) -> None:
        """Remove every persisted credential (used after a confirmed logout)."""
        self.creds = {}
        if self.directory.exists():
            shutil.rmtree(self.directory)
        logger.warning("Removed WhatsApp credentials in %s", self.directory)
