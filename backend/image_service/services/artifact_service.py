"""Artifact lifecycle: upload, process, fetch, delete, list.

This is the boundary the HTTP routes call. Upload goes
validator -> store (quota + write) -> catalog; processing goes
catalog -> pipeline -> store -> catalog.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

from image_service.config import Settings
from image_service.schemas.artifact import ArtifactRecord, ProcessResult
from image_service.schemas.operation import Operation
from image_service.services.artifact_store import ArtifactStore
from image_service.services.catalog import MetadataCatalog
from image_service.services.errors import (
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from image_service.services.locks import KeyedLocks
from image_service.services.pipeline import OperationPipeline
from image_service.services.sweeper import RetentionSweeper
from image_service.services.validation import extension_for, sniff_content_type

logger = logging.getLogger(__name__)


class ArtifactService:
    def __init__(
        self,
        store: ArtifactStore,
        catalog: MetadataCatalog,
        pipeline: OperationPipeline,
        sweeper: RetentionSweeper,
        *,
        allowed_mime_types: Sequence[str],
        max_upload_bytes: int,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.pipeline = pipeline
        self.sweeper = sweeper
        self.allowed_mime_types = list(allowed_mime_types)
        self.max_upload_bytes = max_upload_bytes
        self.locks = locks or sweeper.locks
        self._sweeper_task: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self, run_sweeper: bool = True) -> None:
        """Create storage roots, load the catalog and start the sweeper.

        Raises PersistenceError if the catalog snapshot is corrupt.
        """
        await self.store.initialize()
        await self.catalog.load()
        if run_sweeper:
            self._sweeper_task = asyncio.create_task(self.sweeper.run_forever())

    async def shutdown(self) -> None:
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        self.pipeline.shutdown()

    # ── Operations ───────────────────────────────────────────────

    def _get_or_404(self, artifact_id: str) -> ArtifactRecord:
        record = self.catalog.get(artifact_id)
        if record is None:
            raise NotFoundError("File not found")
        return record

    async def upload(self, data: bytes, declared_name: str, declared_mime: Optional[str]) -> ArtifactRecord:
        """Validate and store a new upload. Leaves no file or record behind on failure."""
        if not data:
            raise ValidationError("No file uploaded")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                f"File too large: {len(data)} bytes (max {self.max_upload_bytes})"
            )
        if declared_mime not in self.allowed_mime_types:
            raise ValidationError(
                f"Invalid file type. Allowed types: {', '.join(self.allowed_mime_types)}"
            )

        content_type = sniff_content_type(data, self.allowed_mime_types)
        if content_type is None:
            raise ValidationError("Invalid file format or corrupted file")

        artifact_id = uuid.uuid4().hex
        raw_path = self.store.resolve_raw_path(f"{artifact_id}.{extension_for(content_type)}")
        await self.store.write_within_quota(raw_path, data)

        record = ArtifactRecord(
            id=artifact_id,
            original_name=declared_name or "unnamed",
            byte_size=len(data),
            content_type=content_type,
            raw_location=str(raw_path),
            created_at=datetime.now(timezone.utc),
        )
        try:
            await self.catalog.put(record)
        except PersistenceError:
            await self.store.delete(raw_path)
            raise

        logger.info(
            f"File uploaded: {artifact_id} ({record.original_name}, {content_type}, {len(data)} bytes)"
        )
        return record

    async def process(self, artifact_id: str, operations: Sequence[Operation]) -> ProcessResult:
        """Run ``operations`` on the raw artifact and replace the processed output."""
        self._get_or_404(artifact_id)
        async with self.locks.hold(artifact_id):
            record = self._get_or_404(artifact_id)
            raw = await self.store.read(record.raw_location)

            result = await self.pipeline.run(raw, operations)

            output_path = self.store.resolve_processed_path(
                f"{artifact_id}.{extension_for(result.format)}"
            )
            await self.store.write_within_quota(output_path, result.data)

            previous = record.processed_location
            updated = record.model_copy(update={
                "processed_location": str(output_path),
                "applied_operations": list(operations),
            })
            try:
                await self.catalog.put(updated)
            except PersistenceError:
                if previous != str(output_path):
                    await self.store.delete(output_path)
                raise

            if previous and previous != str(output_path):
                await self.store.delete(previous)

        logger.info(
            f"Image processed: {artifact_id} ({len(operations)} operation(s), "
            f"{result.format}, {result.byte_size} bytes)"
        )
        return ProcessResult(
            file_id=artifact_id,
            processed_location=str(output_path),
            byte_size=result.byte_size,
            format=result.format,
        )

    async def fetch_raw(self, artifact_id: str) -> bytes:
        record = self._get_or_404(artifact_id)
        return await self.store.read(record.raw_location)

    async def fetch_processed(self, artifact_id: str) -> bytes:
        record = self._get_or_404(artifact_id)
        if not record.processed_location:
            raise NotFoundError("File has not been processed")
        return await self.store.read(record.processed_location)

    def get(self, artifact_id: str) -> ArtifactRecord:
        return self._get_or_404(artifact_id)

    async def delete(self, artifact_id: str) -> None:
        """Delete both files, then the record. Unknown ids change nothing."""
        self._get_or_404(artifact_id)
        async with self.locks.hold(artifact_id):
            record = self._get_or_404(artifact_id)
            await self.store.delete(record.raw_location)
            if record.processed_location:
                await self.store.delete(record.processed_location)
            await self.catalog.remove(artifact_id)
        logger.info(f"Image deleted: {artifact_id}")

    def list_all(self) -> list[ArtifactRecord]:
        return self.catalog.list_all()


def build_artifact_service(settings: Settings) -> ArtifactService:
    """Wire the store, catalog, pipeline and sweeper from settings."""
    store = ArtifactStore(settings.storage_root, quota_bytes=settings.DISK_QUOTA_BYTES)
    catalog = MetadataCatalog(settings.catalog_path)
    pipeline = OperationPipeline(
        max_workers=settings.PROCESS_WORKERS,
        timeout=settings.PROCESS_TIMEOUT_SECONDS,
    )
    locks = KeyedLocks()
    sweeper = RetentionSweeper(
        catalog,
        store,
        ttl=settings.retention_ttl,
        interval_seconds=settings.sweep_interval_seconds,
        locks=locks,
    )
    return ArtifactService(
        store,
        catalog,
        pipeline,
        sweeper,
        allowed_mime_types=settings.allowed_mime_types,
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        locks=locks,
    )
