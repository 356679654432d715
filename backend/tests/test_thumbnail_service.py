"""
Exposure Backend — Thumbnail Queue Tests
==========================================

What we test:
    ✅ Variants are written as WebP within their size bound
    ✅ Status moves pending → processing → completed | failed
    ✅ Transient derivation failures are retried, persistent ones give up
    ✅ Jobs for deleted photos are cancelled and leave no orphans
    ✅ retry_failed re-queues failed (and optionally stale) photos
"""

import asyncio
import threading
from unittest.mock import patch

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy import delete, select

from app.models.photo import (
    THUMBNAIL_COMPLETED,
    THUMBNAIL_FAILED,
    THUMBNAIL_PENDING,
    THUMBNAIL_PROCESSING,
    Photo,
)
from app.services.file_service import PHOTO_VARIANTS
from app.services.thumbnail_service import (
    CANCELLED,
    PillowVariantDeriver,
    ThumbnailQueue,
    VariantDeriver,
)


class FlakyDeriver(VariantDeriver):
    """Fails `failures` times, then writes placeholder variants."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def derive(self, source, targets):
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError("decoder crashed")
        for target in targets:
            target.write_bytes(b"variant")


class BlockingDeriver(VariantDeriver):
    """Writes its variants, then waits until the test lets it finish."""

    def __init__(self):
        self.started = threading.Event()
        self.proceed = threading.Event()

    def derive(self, source, targets):
        for target in targets:
            target.write_bytes(b"variant")
        self.started.set()
        self.proceed.wait(timeout=5)


@pytest.fixture
def queue_factory(session_factory, files):
    def _make(deriver=None, max_attempts=3):
        return ThumbnailQueue(
            session_factory=session_factory,
            files=files,
            deriver=deriver,
            max_attempts=max_attempts,
            min_wait=0,
            max_wait=0,
        )

    return _make


@pytest_asyncio.fixture
async def job(db, place_id, files, make_image):
    """(photo_id, place_id, file_name) of a committed photo with its original on disk."""
    content = make_image("JPEG", size=(1200, 600))
    await files.write_photo(place_id, "original.jpg", content)
    row = Photo(
        place_id=place_id,
        photo_num=1,
        slug="photoslug2",
        file_name="original.jpg",
        width=1200,
        height=600,
        thumbnail_status=THUMBNAIL_PENDING,
    )
    db.add(row)
    await db.commit()
    return row.id, place_id, row.file_name


async def status_of(session_factory, photo_id):
    async with session_factory() as session:
        result = await session.execute(
            select(Photo.thumbnail_status).where(Photo.id == photo_id)
        )
        return result.scalar_one_or_none()


class TestProcess:
    """One derivation job."""

    @pytest.mark.asyncio
    async def test_writes_bounded_webp_variants(
        self, queue_factory, session_factory, job, files
    ):
        queue = queue_factory(PillowVariantDeriver())

        status = await queue.process(*job)

        assert status == THUMBNAIL_COMPLETED
        assert await status_of(session_factory, job[0]) == THUMBNAIL_COMPLETED
        paths = files.variant_paths(*job[1:])
        for path, size in zip(paths, PHOTO_VARIANTS.values()):
            with Image.open(path) as variant:
                assert variant.format == "WEBP"
                assert max(variant.size) == size

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, queue_factory, session_factory, job):
        deriver = FlakyDeriver(failures=2)
        queue = queue_factory(deriver, max_attempts=3)

        assert await queue.process(*job) == THUMBNAIL_COMPLETED
        assert deriver.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, queue_factory, session_factory, job):
        deriver = FlakyDeriver(failures=10)
        queue = queue_factory(deriver, max_attempts=3)

        assert await queue.process(*job) == THUMBNAIL_FAILED
        assert deriver.calls == 3
        assert await status_of(session_factory, job[0]) == THUMBNAIL_FAILED

    @pytest.mark.asyncio
    async def test_missing_source_fails_without_deriving(
        self, queue_factory, session_factory, job, files
    ):
        files.photo_path(*job[1:]).unlink()
        deriver = FlakyDeriver(failures=0)
        queue = queue_factory(deriver)

        assert await queue.process(*job) == THUMBNAIL_FAILED
        assert deriver.calls == 0
        assert await status_of(session_factory, job[0]) == THUMBNAIL_FAILED

    @pytest.mark.asyncio
    async def test_deleted_photo_is_cancelled(self, queue_factory, session_factory, job, db):
        await db.execute(delete(Photo).where(Photo.id == job[0]))
        await db.commit()
        deriver = FlakyDeriver(failures=0)

        status = await queue_factory(deriver).process(*job)

        assert status == CANCELLED
        assert deriver.calls == 0

    @pytest.mark.asyncio
    async def test_deleted_during_derivation_removes_variants(
        self, queue_factory, session_factory, job, files
    ):
        deriver = BlockingDeriver()
        queue = queue_factory(deriver)
        task = asyncio.create_task(queue.process(*job))

        assert await asyncio.to_thread(deriver.started.wait, 5)
        async with session_factory() as session:
            await session.execute(delete(Photo).where(Photo.id == job[0]))
            await session.commit()
        deriver.proceed.set()

        assert await task == CANCELLED
        assert not any(p.exists() for p in files.variant_paths(*job[1:]))


class TestQueue:
    """Scheduling and recovery."""

    @pytest.mark.asyncio
    async def test_enqueue_and_drain(self, queue_factory, session_factory, job):
        queue = queue_factory(FlakyDeriver(failures=0))

        queue.enqueue(*job)
        assert queue.pending_jobs == 1
        await queue.drain()

        assert queue.pending_jobs == 0
        assert await status_of(session_factory, job[0]) == THUMBNAIL_COMPLETED

    @pytest.mark.asyncio
    async def test_crashing_job_is_logged_not_raised(self, queue_factory, job):
        queue = queue_factory()
        with patch.object(queue, "process", side_effect=RuntimeError("boom")):
            task = queue.enqueue(*job)
            assert await task == THUMBNAIL_FAILED

    @pytest.mark.asyncio
    async def test_retry_failed(self, queue_factory, db, place_id):
        for num, status in enumerate(
            [THUMBNAIL_FAILED, THUMBNAIL_PENDING, THUMBNAIL_PROCESSING, THUMBNAIL_COMPLETED],
            start=1,
        ):
            db.add(
                Photo(
                    place_id=place_id,
                    photo_num=num,
                    slug=f"slug{num}abcd",
                    file_name=f"{num}.jpg",
                    thumbnail_status=status,
                )
            )
        await db.commit()
        queue = queue_factory()

        with patch.object(queue, "enqueue") as enqueue:
            assert await queue.retry_failed(db) == 1
            enqueue.assert_called_once()
            assert enqueue.call_args.args[1:] == (place_id, "1.jpg")

            enqueue.reset_mock()
            assert await queue.retry_failed(db, include_stale=True) == 3
            assert sorted(call.args[2] for call in enqueue.call_args_list) == [
                "1.jpg",
                "2.jpg",
                "3.jpg",
            ]
