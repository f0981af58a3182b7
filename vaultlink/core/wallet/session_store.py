"""
Session persistence.

Only the minimal session record is persisted. Stores raise SessionStoreError
for anything that prevents a clean read; the state machine treats that as an
ambiguous restore.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union


logger = logging.getLogger(__name__)


class SessionStoreError(Exception):
    """The persisted session could not be read or written."""
    pass


class SessionStore(ABC):
    @abstractmethod
    async def save(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the persisted record, or None when nothing is stored"""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    def __init__(self, record: Optional[Dict[str, Any]] = None):
        self._record = dict(record) if record is not None else None

    async def save(self, record: Dict[str, Any]) -> None:
        self._record = dict(record)

    async def load(self) -> Optional[Dict[str, Any]]:
        return dict(self._record) if self._record is not None else None

    async def clear(self) -> None:
        self._record = None


class JsonFileSessionStore(SessionStore):
    """Stores the session as a single JSON document on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def save(self, record: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, record)

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def clear(self) -> None:
        await asyncio.to_thread(self._remove)

    def _write(self, record: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(record, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise SessionStoreError(f"Failed to write session to {self.path}: {e}") from e

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SessionStoreError(f"Failed to read session from {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise SessionStoreError(f"Unexpected session format in {self.path}")
        return data

    def _remove(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise SessionStoreError(f"Failed to clear session at {self.path}: {e}") from e


def create_session_store(path: Optional[str] = None) -> SessionStore:
    """File store when a path is configured, otherwise in-memory."""
    if path:
        logger.info(f"Persisting wallet session to {path}")
        return JsonFileSessionStore(path)
    return InMemorySessionStore()
