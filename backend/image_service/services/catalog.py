"""Metadata catalog: in-memory index of artifact records with a JSON snapshot on disk.

Every mutation rewrites the whole snapshot before returning, so the file on
disk never lags behind what callers have been told. Snapshot writes go to a
temporary sibling and are renamed into place, and all mutations share one
lock so two writes never interleave.

Usage:
    catalog = MetadataCatalog(settings.catalog_path)
    await catalog.load()
    await catalog.put(record)
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import pydantic
from pydantic import TypeAdapter

from image_service.schemas.artifact import ArtifactRecord
from image_service.services.errors import PersistenceError

logger = logging.getLogger(__name__)

_snapshot_adapter = TypeAdapter(list[ArtifactRecord])


class MetadataCatalog:
    """Single owner of the artifact record index. Nothing else mutates it."""

    def __init__(self, snapshot_path: Path | str):
        self.snapshot_path = Path(snapshot_path)
        self._records: dict[str, ArtifactRecord] = {}
        self._lock = asyncio.Lock()
        self._writable = True

    @property
    def is_writable(self) -> bool:
        """False after a snapshot write failed and no later write has succeeded."""
        return self._writable

    async def load(self) -> None:
        """Read the snapshot into memory, creating an empty one if none exists.

        A snapshot that exists but cannot be read or parsed is a fatal error:
        it is left untouched for the operator instead of being overwritten.
        """
        async with self._lock:
            if not await aiofiles.os.path.exists(self.snapshot_path):
                logger.info(f"Catalog snapshot not found at {self.snapshot_path}, creating new one")
                self._records = {}
                await self._flush()
                return

            try:
                async with aiofiles.open(self.snapshot_path, "rb") as f:
                    raw = await f.read()
                records = _snapshot_adapter.validate_json(raw)
            except (OSError, pydantic.ValidationError) as e:
                logger.error(f"Catalog snapshot {self.snapshot_path} is unreadable: {e}")
                raise PersistenceError(
                    f"Catalog snapshot {self.snapshot_path} is corrupt or unreadable; "
                    "refusing to start. Restore or remove the file."
                ) from e

            self._records = {record.id: record for record in records}
            logger.info(f"Loaded {len(self._records)} catalog records")

    async def _flush(self) -> None:
        """Write the full snapshot. Caller must hold the lock."""
        payload = _snapshot_adapter.dump_json(
            list(self._records.values()), by_alias=True, indent=2
        )
        tmp_path = self.snapshot_path.with_name(self.snapshot_path.name + ".tmp")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, self.snapshot_path)
        except OSError as e:
            self._writable = False
            logger.error(f"Failed to write catalog snapshot {self.snapshot_path}: {e}")
            raise PersistenceError("Catalog snapshot could not be written") from e
        if not self._writable:
            logger.info("Catalog snapshot writable again")
        self._writable = True

    # ── Mutations ────────────────────────────────────────────────

    async def put(self, record: ArtifactRecord) -> None:
        """Insert or replace ``record`` and persist."""
        async with self._lock:
            if not self._writable:
                raise PersistenceError("Catalog is read-only after a failed snapshot write")
            previous = self._records.get(record.id)
            self._records[record.id] = record
            try:
                await self._flush()
            except PersistenceError:
                if previous is None:
                    del self._records[record.id]
                else:
                    self._records[record.id] = previous
                raise

    async def remove(self, artifact_id: str) -> bool:
        """Delete the record for ``artifact_id`` and persist. Returns False if absent."""
        async with self._lock:
            previous = self._records.pop(artifact_id, None)
            if previous is None:
                return False
            try:
                await self._flush()
            except PersistenceError:
                self._records[artifact_id] = previous
                raise
            return True

    async def sweep_expired(self, ttl: timedelta, now: Optional[datetime] = None) -> int:
        """Remove every record older than ``ttl``. Persists once for the whole batch."""
        async with self._lock:
            expired = self._expired(ttl, now)
            if not expired:
                return 0
            for record in expired:
                del self._records[record.id]
            try:
                await self._flush()
            except PersistenceError:
                for record in expired:
                    self._records[record.id] = record
                raise
            return len(expired)

    # ── Reads ────────────────────────────────────────────────────

    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:
        return self._records.get(artifact_id)

    def list_all(self) -> list[ArtifactRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def _expired(self, ttl: timedelta, now: Optional[datetime]) -> list[ArtifactRecord]:
        cutoff = (now or datetime.now(timezone.utc)) - ttl
        return [r for r in self._records.values() if r.created_at < cutoff]

    def expired(self, ttl: timedelta, now: Optional[datetime] = None) -> list[ArtifactRecord]:
        """Records whose ``created_at`` is older than ``ttl`` relative to ``now``."""
        return self._expired(ttl, now)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._records
