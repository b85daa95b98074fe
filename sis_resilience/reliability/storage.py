"""Durable backends for dead-letter queue snapshots."""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Snapshot = List[Dict[str, Any]]


class DLQStorage(Protocol):
    """Protocol for dead-letter queue persistence backends."""

    async def save(self, snapshot: Snapshot) -> None:
        """Replace the stored snapshot."""
        ...

    async def load(self) -> Optional[Snapshot]:
        """Return the stored snapshot, or None when nothing was saved yet."""
        ...


class InMemoryStorage:
    """Process-local storage, mostly for tests and ephemeral workers."""

    def __init__(self):
        self._snapshot: Optional[Snapshot] = None

    async def save(self, snapshot: Snapshot) -> None:
        self._snapshot = json.loads(json.dumps(snapshot))

    async def load(self) -> Optional[Snapshot]:
        if self._snapshot is None:
            return None
        return json.loads(json.dumps(self._snapshot))


class JsonFileStorage:
    """
    JSON file storage.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so readers see either the old or the new snapshot.
    """

    def __init__(self, path: Union[str, Path] = "./dlq-storage.json"):
        self.path = Path(path)

    async def save(self, snapshot: Snapshot) -> None:
        await asyncio.to_thread(self._write, snapshot)
        logger.debug(f"Wrote {len(snapshot)} dead-letter records to {self.path}")

    async def load(self) -> Optional[Snapshot]:
        return await asyncio.to_thread(self._read)

    def _write(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _read(self) -> Optional[Snapshot]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None

        if not isinstance(data, list):
            raise ValueError(f"Dead-letter snapshot at {self.path} is not a list")
        return data
