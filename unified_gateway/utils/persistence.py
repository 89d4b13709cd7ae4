from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

from unified_gateway.errors import ConfigError

YAML_SUFFIXES = {".yaml", ".yml"}


class FileStore:
    """Durable document store; writes go through a temp file and a rename.

    Documents are JSON unless the path ends in ``.yaml``/``.yml``.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @property
    def is_yaml(self) -> bool:
        return self.path.suffix.lower() in YAML_SUFFIXES

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                if self.is_yaml:
                    payload = yaml.safe_load(handle)
                else:
                    text = handle.read()
                    payload = json.loads(text) if text.strip() else None
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not read '{self.path}': {exc}") from exc
        if payload is None:
            return default
        return payload

    def write(self, payload: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                self._dump(payload, handle)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def _dump(self, payload: Any, handle: Any) -> None:
        if self.is_yaml:
            yaml.safe_dump(payload, handle, sort_keys=False)
        else:
            json.dump(payload, handle, indent=2)
            handle.write("\n")

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")
