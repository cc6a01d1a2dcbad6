"""
Chunk checkpoints for resumable syncs.

A checkpoint records that one (chunk, scope) pair of an operation was
committed. Re-running the operation skips every checkpointed pair.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..models import DateRange, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    operation_id: str
    chunk: DateRange
    scope: str | None
    records_written: int
    committed_at: datetime

    @property
    def key(self) -> str:
        return checkpoint_key(self.chunk, self.scope)


def checkpoint_key(chunk: DateRange, scope: str | None) -> str:
    return f"{chunk}@{scope or '*'}"


class CheckpointStore(ABC):
    """Stores committed (chunk, scope) markers per operation."""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None: ...

    @abstractmethod
    async def load(self, operation_id: str) -> dict[str, Checkpoint]: ...

    @abstractmethod
    async def clear(self, operation_id: str) -> None: ...

    async def mark_complete(
        self, operation_id: str, chunk: DateRange, scope: str | None, records_written: int = 0
    ) -> Checkpoint:
        checkpoint = Checkpoint(operation_id, chunk, scope, records_written, utcnow())
        await self.save(checkpoint)
        return checkpoint

    async def is_complete(self, operation_id: str, chunk: DateRange, scope: str | None) -> bool:
        return checkpoint_key(chunk, scope) in await self.load(operation_id)


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self):
        self._checkpoints: dict[str, dict[str, Checkpoint]] = {}

    async def save(self, checkpoint: Checkpoint) -> None:
        self._checkpoints.setdefault(checkpoint.operation_id, {})[checkpoint.key] = checkpoint

    async def load(self, operation_id: str) -> dict[str, Checkpoint]:
        return dict(self._checkpoints.get(operation_id, {}))

    async def clear(self, operation_id: str) -> None:
        self._checkpoints.pop(operation_id, None)


class FileCheckpointStore(CheckpointStore):
    """JSON-file checkpoint store, one file per operation."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, operation_id: str) -> Path:
        return self.directory / f"{operation_id}.json"

    def _read(self, operation_id: str) -> dict[str, Checkpoint]:
        path = self._path(operation_id)
        if not path.exists():
            return {}
        with open(path) as f:
            raw = json.load(f)
        checkpoints = {}
        for item in raw.get("checkpoints", []):
            checkpoint = Checkpoint(
                operation_id=operation_id,
                chunk=DateRange.parse(item["chunk_start"], item["chunk_end"]),
                scope=item.get("scope"),
                records_written=item.get("records_written", 0),
                committed_at=datetime.fromisoformat(item["committed_at"]),
            )
            checkpoints[checkpoint.key] = checkpoint
        return checkpoints

    def _write(self, operation_id: str, checkpoints: dict[str, Checkpoint]) -> None:
        payload = {
            "operation_id": operation_id,
            "checkpoints": [
                {
                    "chunk_start": c.chunk.start.isoformat(),
                    "chunk_end": c.chunk.end.isoformat(),
                    "scope": c.scope,
                    "records_written": c.records_written,
                    "committed_at": c.committed_at.isoformat(),
                }
                for c in checkpoints.values()
            ],
        }
        path = self._path(operation_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, path)

    async def save(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            checkpoints = self._read(checkpoint.operation_id)
            checkpoints[checkpoint.key] = checkpoint
            self._write(checkpoint.operation_id, checkpoints)
        logger.debug("Checkpointed %s for %s", checkpoint.key, checkpoint.operation_id)

    async def load(self, operation_id: str) -> dict[str, Checkpoint]:
        async with self._lock:
            return self._read(operation_id)

    async def clear(self, operation_id: str) -> None:
        async with self._lock:
            self._path(operation_id).unlink(missing_ok=True)
