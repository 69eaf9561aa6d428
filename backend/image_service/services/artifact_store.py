"""Artifact storage on the local filesystem.

Two content roots live under the storage root: ``raw/`` for uploads and
``processed/`` for pipeline output. Files are named by artifact id, never by
the client-supplied filename.
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os

from image_service.services.errors import NotFoundError, PersistenceError, QuotaExceededError

logger = logging.getLogger(__name__)

RAW_DIR = "raw"
PROCESSED_DIR = "processed"


class ArtifactStore:
    """Handles path resolution, quota accounting, writes and deletes for artifacts."""

    def __init__(self, root: Path | str, quota_bytes: int):
        self.root = Path(root)
        self.raw_dir = self.root / RAW_DIR
        self.processed_dir = self.root / PROCESSED_DIR
        self.quota_bytes = quota_bytes
        # Held from quota check to rename so concurrent writers see each other's bytes
        self._quota_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create both content roots. Safe to call on every start."""
        await aiofiles.os.makedirs(self.raw_dir, exist_ok=True)
        await aiofiles.os.makedirs(self.processed_dir, exist_ok=True)
        logger.info(f"Storage directories initialized under {self.root}")

    # ── Paths ────────────────────────────────────────────────────

    def resolve_raw_path(self, name: str) -> Path:
        return self.raw_dir / Path(name).name

    def resolve_processed_path(self, name: str) -> Path:
        return self.processed_dir / Path(name).name

    # ── Quota ────────────────────────────────────────────────────

    def _directory_size(self, directory: Path) -> int:
        total = 0
        for dirpath, _dirnames, filenames in os.walk(directory):
            for filename in filenames:
                try:
                    total += os.stat(os.path.join(dirpath, filename)).st_size
                except FileNotFoundError:
                    # Deleted between listing and stat
                    continue
        return total

    async def total_size(self) -> int:
        """Bytes used by every file under both roots."""
        sizes = await asyncio.gather(
            asyncio.to_thread(self._directory_size, self.raw_dir),
            asyncio.to_thread(self._directory_size, self.processed_dir),
        )
        return sum(sizes)

    async def check_quota(self, incoming: int = 0) -> bool:
        """True if the roots plus ``incoming`` new bytes stay strictly below the quota."""
        total = await self.total_size()
        within = total + incoming < self.quota_bytes
        if not within:
            logger.warning(
                f"Disk quota check failed: {total} bytes used + {incoming} incoming "
                f">= {self.quota_bytes} quota"
            )
        return within

    async def write_within_quota(self, path: Path, data: bytes) -> None:
        """Check the quota and write ``data`` as one step. Raises QuotaExceededError."""
        async with self._quota_lock:
            if not await self.check_quota(incoming=len(data)):
                raise QuotaExceededError("Disk quota exceeded")
            await self.write(path, data)

    # ── I/O ──────────────────────────────────────────────────────

    async def write(self, path: Path, data: bytes) -> None:
        """Write ``data`` to ``path`` atomically. Raises PersistenceError, leaving nothing behind."""
        tmp_path = path.with_name(path.name + ".part")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write artifact {path}: {e}")
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                pass
            raise PersistenceError(f"Could not write artifact {path.name}") from e

    async def read(self, path: Path | str) -> bytes:
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise NotFoundError("File not found on disk") from e

    async def delete(self, path: Path | str) -> bool:
        """Best-effort unlink. A missing file counts as deleted; other failures are logged."""
        try:
            await aiofiles.os.remove(path)
            logger.info(f"Deleted file: {path}")
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(f"Error deleting file {path}: {e}")
            return False

    # ── Retention helpers ────────────────────────────────────────

    def _stale_files(self, cutoff: float) -> list[Path]:
        stale = []
        for directory in (self.raw_dir, self.processed_dir):
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                try:
                    if entry.is_file() and entry.stat().st_mtime < cutoff:
                        stale.append(entry)
                except FileNotFoundError:
                    continue
        return stale

    async def stale_files(self, older_than: datetime) -> list[Path]:
        """Files under both roots last modified before ``older_than``."""
        if older_than.tzinfo is None:
            older_than = older_than.replace(tzinfo=timezone.utc)
        return await asyncio.to_thread(self._stale_files, older_than.timestamp())
