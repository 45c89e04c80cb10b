from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any
from uuid import uuid4


class JsonFileStore:
    """Small JSON document on disk, replaced atomically on every write."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = handle.read()
            if not raw.strip():
                return default
            return json.loads(raw)
        except ValueError:
            # Undecodable bytes and malformed JSON both read as absent.
            return default

    def write(self, payload: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, separators=(",", ":"))
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")
