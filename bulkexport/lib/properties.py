"""Durable key/value property storage.

The coordinator keeps all of its cross-invocation state (watermark, pending
jobs, cached token, lease lock) as string properties. ``JsonFilePropertyStore``
keeps them in a single JSON file inside the state directory; every write
replaces the file atomically so a crash never leaves a half-written store.
The store is last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

logger = logging.getLogger(__name__)

__all__ = ["JsonFilePropertyStore", "PropertyStore"]

PROPERTIES_FILE = "properties.json"


class PropertyStore(Protocol):
    """Interface the coordinator needs from durable storage."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_all(self) -> None: ...


class JsonFilePropertyStore:
    """Property store backed by ``<state_dir>/properties.json``.

    Example:
        >>> store = JsonFilePropertyStore(".state")
        >>> store.set("lastMaxUID", "102")
        >>> store.get("lastMaxUID")
        '102'
    """

    def __init__(self, state_dir: Union[str, Path], filename: str = PROPERTIES_FILE):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / filename

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Invalid property file %s: %s", self.path, exc)
            return {}
        return dict(data.get("properties", {}))

    def _write(self, properties: Dict[str, str]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "properties": properties,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.state_dir), prefix=".properties-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        properties = self._read()
        properties[key] = value
        self._write(properties)
        logger.debug("Saved property %s", key)

    def delete(self, key: str) -> None:
        properties = self._read()
        if key in properties:
            del properties[key]
            self._write(properties)
            logger.debug("Deleted property %s", key)

    def delete_all(self) -> None:
        if self.path.exists():
            self.path.unlink()
        logger.info("Cleared all properties in %s", self.path)
