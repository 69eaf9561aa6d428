"""Retention sweeper.

Deletes artifacts older than the retention TTL: files first, then the
catalog record. Runs as an asyncio task within the FastAPI process.

A failure on one artifact is logged and collected; it never stops the sweep
of the remaining ones.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from image_service.services.artifact_store import ArtifactStore
from image_service.services.catalog import MetadataCatalog
from image_service.services.errors import safe_error_message
from image_service.services.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    removed: int = 0
    orphans_removed: int = 0
    failures: list[str] = field(default_factory=list)


class RetentionSweeper:
    def __init__(
        self,
        catalog: MetadataCatalog,
        store: ArtifactStore,
        ttl: timedelta,
        interval_seconds: float,
        locks: Optional[KeyedLocks] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.ttl = ttl
        self.interval_seconds = interval_seconds
        self.locks = locks or KeyedLocks()

    async def _delete_files(self, artifact_id: str, report: SweepReport) -> None:
        async with self.locks.hold(artifact_id):
            # Re-read under the lock: a process call may have just replaced the output
            record = self.catalog.get(artifact_id)
            if record is None:
                return
            locations = [record.raw_location]
            if record.processed_location:
                locations.append(record.processed_location)
            for location in locations:
                if not await self.store.delete(location):
                    report.failures.append(f"{artifact_id}: could not delete {location}")

    async def _remove_orphans(self, now: datetime, report: SweepReport) -> None:
        """Delete stale files no record points at, e.g. left behind by a crash."""
        referenced: set[Path] = set()
        for record in self.catalog.list_all():
            referenced.add(Path(record.raw_location))
            if record.processed_location:
                referenced.add(Path(record.processed_location))

        for path in await self.store.stale_files(now - self.ttl):
            if path in referenced:
                continue
            if await self.store.delete(path):
                report.orphans_removed += 1
            else:
                report.failures.append(f"orphan: could not delete {path}")

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one retention pass."""
        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        expired = self.catalog.expired(self.ttl, now)
        report.expired = len(expired)
        for record in expired:
            try:
                await self._delete_files(record.id, report)
            except Exception as e:
                report.failures.append(f"{record.id}: {safe_error_message(e)}")

        if expired:
            try:
                report.removed = await self.catalog.sweep_expired(self.ttl, now)
            except Exception as e:
                report.failures.append(f"catalog: {safe_error_message(e)}")

        try:
            await self._remove_orphans(now, report)
        except Exception as e:
            report.failures.append(f"orphans: {safe_error_message(e)}")

        logger.info(
            f"Retention sweep: {report.removed}/{report.expired} expired record(s) removed, "
            f"{report.orphans_removed} orphan file(s) removed, {len(report.failures)} failure(s)"
        )
        for failure in report.failures:
            logger.warning(f"Retention sweep failure: {failure}")
        return report

    async def run_forever(self):
        """Main sweeper loop. Sweeps every ``interval_seconds`` until cancelled."""
        logger.info(
            f"Retention sweeper started (ttl={self.ttl}, interval={self.interval_seconds}s)"
        )
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Retention sweep error: {e}")
