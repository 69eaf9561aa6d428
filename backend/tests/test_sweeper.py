"""Tests for the retention sweeper."""
import asyncio
import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from image_service.schemas.artifact import ArtifactRecord
from image_service.services.artifact_store import ArtifactStore
from image_service.services.catalog import MetadataCatalog
from image_service.services.sweeper import RetentionSweeper

TTL = timedelta(hours=24)


@pytest.fixture
async def parts(tmp_path):
    store = ArtifactStore(tmp_path / "storage", quota_bytes=10**9)
    await store.initialize()
    catalog = MetadataCatalog(tmp_path / "storage" / "metadata.json")
    await catalog.load()
    sweeper = RetentionSweeper(catalog, store, ttl=TTL, interval_seconds=3600)
    return store, catalog, sweeper


async def add_artifact(store, catalog, artifact_id, age, processed=False):
    raw = store.resolve_raw_path(f"{artifact_id}.png")
    await store.write(raw, b"raw-bytes")
    processed_path = None
    if processed:
        processed_path = store.resolve_processed_path(f"{artifact_id}.jpg")
        await store.write(processed_path, b"processed-bytes")
    record = ArtifactRecord(
        id=artifact_id,
        original_name="x.png",
        byte_size=9,
        content_type="image/png",
        raw_location=str(raw),
        processed_location=str(processed_path) if processed_path else None,
        created_at=datetime.now(timezone.utc) - age,
    )
    await catalog.put(record)
    return record


@pytest.mark.asyncio
async def test_sweep_removes_expired_files_and_records(parts):
    store, catalog, sweeper = parts
    old = await add_artifact(store, catalog, "old", timedelta(hours=30), processed=True)
    fresh = await add_artifact(store, catalog, "fresh", timedelta(hours=1), processed=True)

    report = await sweeper.sweep_once()

    assert report.expired == 1
    assert report.removed == 1
    assert report.failures == []
    assert catalog.get("old") is None
    assert len(sweeper.locks) == 0
    assert not os.path.exists(old.raw_location)
    assert not os.path.exists(old.processed_location)
    assert catalog.get("fresh") is not None
    assert os.path.exists(fresh.raw_location)
    assert os.path.exists(fresh.processed_location)


@pytest.mark.asyncio
async def test_second_sweep_removes_nothing(parts):
    store, catalog, sweeper = parts
    await add_artifact(store, catalog, "old1", timedelta(hours=48))
    await add_artifact(store, catalog, "old2", timedelta(hours=25))

    first = await sweeper.sweep_once()
    second = await sweeper.sweep_once()
    assert first.removed == 2
    assert second.removed == 0
    assert second.expired == 0


@pytest.mark.asyncio
async def test_one_failed_delete_does_not_stop_the_sweep(parts):
    store, catalog, sweeper = parts
    bad = await add_artifact(store, catalog, "bad", timedelta(hours=30))
    good = await add_artifact(store, catalog, "good", timedelta(hours=30))

    # Replace the raw file with a directory so unlinking it fails
    os.remove(bad.raw_location)
    os.mkdir(bad.raw_location)

    report = await sweeper.sweep_once()

    assert report.removed == 2
    assert len(report.failures) == 1
    assert "bad" in report.failures[0]
    assert not os.path.exists(good.raw_location)
    assert len(catalog) == 0


@pytest.mark.asyncio
async def test_stale_orphans_are_removed(parts):
    store, catalog, sweeper = parts
    orphan = store.resolve_processed_path("orphan.jpg")
    await store.write(orphan, b"left behind")
    recent_orphan = store.resolve_processed_path("recent.jpg")
    await store.write(recent_orphan, b"in flight")
    live = await add_artifact(store, catalog, "live", timedelta(hours=1))

    two_days_ago = time.time() - 2 * 86400
    os.utime(orphan, (two_days_ago, two_days_ago))
    # Live record with an old file on disk must survive
    os.utime(live.raw_location, (two_days_ago, two_days_ago))

    report = await sweeper.sweep_once()

    assert report.orphans_removed == 1
    assert not orphan.exists()
    assert recent_orphan.exists()
    assert os.path.exists(live.raw_location)


@pytest.mark.asyncio
async def test_run_forever_sweeps_on_interval(parts):
    store, catalog, sweeper = parts
    await add_artifact(store, catalog, "old", timedelta(hours=30))
    sweeper.interval_seconds = 0.01

    task = asyncio.create_task(sweeper.run_forever())
    try:
        for _ in range(100):
            if catalog.get("old") is None:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert catalog.get("old") is None
