"""
Exposure Backend — Thumbnail Queue
====================================

What:  Background derivation of resized photo variants.
Why:   Resizing a 10000x5000 JPEG takes seconds of CPU; uploads should
       return as soon as the originals are committed.
How:   PhotoService calls enqueue() after its transaction commits. Each job
       is an asyncio task that opens its own database session, moves the
       photo's thumbnail_status through
           pending → processing → completed | failed
       and runs the VariantDeriver in a worker thread. Failed derivations
       are retried with exponential backoff via tenacity.
Who:   PhotoService (enqueue), app lifespan (drain on shutdown),
       admin tooling (retry_failed).

Cancellation:
    A job whose photo was deleted in the meantime stops without touching
    the status, and removes any variants it wrote after the deletion.

Deployment constraint:
    Jobs live in process memory. Photos left in pending/processing by a
    restart are picked up again by retry_failed(include_stale=True).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from PIL import Image, ImageOps
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.config import settings
from app.database import async_session_factory
from app.models.photo import (
    THUMBNAIL_COMPLETED,
    THUMBNAIL_FAILED,
    THUMBNAIL_PENDING,
    THUMBNAIL_PROCESSING,
    Photo,
)
from app.services.file_service import (
    PHOTO_VARIANTS,
    FileService,
    file_service,
    variant_file_name,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


class PhotoDeletedError(Exception):
    """The photo row disappeared while its job was running."""


# ══════════════════════════════════════════════════════════════════════════
# Variant Derivation
# ══════════════════════════════════════════════════════════════════════════


class VariantDeriver(ABC):
    """
    Contract for producing resized copies of one original.

    derive() is synchronous and CPU-bound; the queue runs it in a thread.
    """

    @abstractmethod
    def derive(self, source: Path, targets: Dict[Path, int]) -> None:
        """Write one variant per target path, longest edge ≤ the given size."""
        ...


class PillowVariantDeriver(VariantDeriver):
    """WebP variants via Pillow's thumbnail(), honouring EXIF orientation."""

    def __init__(self, quality: int = 82):
        self.quality = quality

    def derive(self, source: Path, targets: Dict[Path, int]) -> None:
        with Image.open(source) as original:
            image = ImageOps.exif_transpose(original)
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
            for target, size in targets.items():
                variant = image.copy()
                variant.thumbnail((size, size))
                variant.save(target, "WEBP", quality=self.quality)


# ══════════════════════════════════════════════════════════════════════════
# Queue
# ══════════════════════════════════════════════════════════════════════════


class ThumbnailQueue:
    """In-process job queue for variant derivation."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        files: FileService = file_service,
        deriver: Optional[VariantDeriver] = None,
        max_attempts: Optional[int] = None,
        min_wait: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.files = files
        self.deriver = deriver or PillowVariantDeriver()
        self.max_attempts = max_attempts or settings.thumbnail_max_attempts
        self.min_wait = settings.thumbnail_min_wait if min_wait is None else min_wait
        self.max_wait = settings.thumbnail_max_wait if max_wait is None else max_wait
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_jobs(self) -> int:
        return len(self._tasks)

    def enqueue(self, photo_id: int, place_id: int, file_name: str) -> asyncio.Task:
        """Schedule derivation for one photo. Must be called from the event loop."""
        task = asyncio.create_task(
            self._run(photo_id, place_id, file_name),
            name=f"thumbnail-{photo_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Queued thumbnails for photo %s", photo_id)
        return task

    async def _run(self, photo_id: int, place_id: int, file_name: str) -> str:
        try:
            return await self.process(photo_id, place_id, file_name)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Background task: nobody awaits the result
            logger.error("Thumbnail job for photo %s crashed", photo_id, exc_info=True)
            return THUMBNAIL_FAILED

    async def _photo_exists(self, photo_id: int) -> bool:
        async with self.session_factory() as db:
            return await db.get(Photo, photo_id) is not None

    async def _set_status(self, photo_id: int, status: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Photo).where(Photo.id == photo_id).values(thumbnail_status=status)
            )
            await db.commit()
            return result.rowcount > 0

    async def process(self, photo_id: int, place_id: int, file_name: str) -> str:
        """
        Derive every variant of one photo.

        Returns:
            The final status: "completed", "failed" or "cancelled"
        """
        if not await self._set_status(photo_id, THUMBNAIL_PROCESSING):
            logger.info("Photo %s no longer exists, cancelling thumbnail job", photo_id)
            return CANCELLED

        source = self.files.photo_path(place_id, file_name)
        if not source.is_file():
            logger.error("Source file missing for photo %s: %s", photo_id, file_name)
            await self._set_status(photo_id, THUMBNAIL_FAILED)
            return THUMBNAIL_FAILED

        targets = {
            self.files.photo_path(place_id, variant_file_name(file_name, suffix)): size
            for suffix, size in PHOTO_VARIANTS.items()
        }

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_not_exception_type(PhotoDeletedError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential_jitter(initial=self.min_wait, max=self.max_wait),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    if not await self._photo_exists(photo_id):
                        raise PhotoDeletedError()
                    await asyncio.to_thread(self.deriver.derive, source, targets)
        except PhotoDeletedError:
            logger.info("Photo %s deleted during thumbnail job, cancelling", photo_id)
            return CANCELLED
        except Exception as e:
            logger.error(
                "Thumbnail generation failed for photo %s after %d attempts: %s",
                photo_id,
                self.max_attempts,
                str(e),
            )
            await self._set_status(photo_id, THUMBNAIL_FAILED)
            return THUMBNAIL_FAILED

        if not await self._set_status(photo_id, THUMBNAIL_COMPLETED):
            # Deleted while deriving: the variants just written are orphans
            await self.files.remove_files(list(targets))
            logger.info("Photo %s deleted during thumbnail job, removed variants", photo_id)
            return CANCELLED

        logger.info("Generated %d variants for photo %s", len(targets), photo_id)
        return THUMBNAIL_COMPLETED

    async def retry_failed(self, db: AsyncSession, include_stale: bool = False) -> int:
        """
        Re-enqueue photos whose derivation failed.

        With include_stale, photos stuck in pending/processing (e.g. after a
        restart) are queued too. Returns the number of jobs queued.
        """
        statuses = [THUMBNAIL_FAILED]
        if include_stale:
            statuses += [THUMBNAIL_PENDING, THUMBNAIL_PROCESSING]
        result = await db.execute(
            select(Photo.id, Photo.place_id, Photo.file_name).where(
                Photo.thumbnail_status.in_(statuses)
            )
        )
        rows = result.all()
        for photo_id, place_id, file_name in rows:
            self.enqueue(photo_id, place_id, file_name)
        if rows:
            logger.info("Re-queued %d thumbnail jobs", len(rows))
        return len(rows)

    async def drain(self) -> None:
        """Wait for every queued job to finish (application shutdown)."""
        if self._tasks:
            logger.info("Waiting for %d thumbnail jobs", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ── Singleton Instance ────────────────────────────────────────────────────
thumbnail_queue = ThumbnailQueue()
