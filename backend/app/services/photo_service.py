"""
Exposure Backend — Photo Service
==================================

What:  Photo lifecycle within a place: upload, delete, reorder, favorite,
       and the atomic deletion of a place with all of its photos.
Why:   Every mutation here rewrites photo_num or is_favorite across several
       rows. Without serialization two concurrent requests on one place
       would leave gaps, duplicates or two favorites.
How:   Each mutation runs inside the place's ConcurrencyGuard lock and
       commits its own transaction before the lock is released. File
       writes are undone and file deletions are staged so that a failed
       transaction leaves disk and database as they were.
Who:   Admin route handlers; PlaceService.delete for place removal.

Invariants after every successful mutation:
    - photo_num of a place with N photos is exactly {1..N}
    - at most one photo per place has is_favorite = true
    - photo slugs are unique within their place

Renumbering:
    (place_id, photo_num) is unique and checked row by row, so numbers are
    never shifted in place. They first move into the negative range, which
    no committed row ever uses, and then onto their final values.

    delete #2 of 1..5       reorder [3, 1, 2]
    ──────────────────      ──────────────────────────
    3,4,5 → -2,-3,-4        1,2,3 → -1,-2,-3
    -2,-3,-4 → 2,3,4        -3 → 1, -1 → 2, -2 → 3
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import DatabaseError, NotFoundError, ValidationError
from app.models.photo import THUMBNAIL_PENDING, Photo
from app.models.place import Place
from app.services.concurrency import ConcurrencyGuard, place_guard
from app.services.file_service import (
    FileService,
    UploadedFile,
    ValidatedImage,
    file_service,
)
from app.services.malware_scanner import MalwareScanner, ScanResult, malware_scanner
from app.services.slug_generator import SlugGenerator, slug_generator
from app.services.thumbnail_service import ThumbnailQueue, thumbnail_queue

logger = logging.getLogger(__name__)

PlaceDeleteCallback = Callable[[AsyncSession, int], Awaitable[None]]


class PhotoService:
    """
    Business logic for photos.

    Error Handling Strategy:
        - ValidationError / NotFoundError: expected outcomes, nothing changed
        - FileStorageError: raised by FileService, nothing changed
        - DatabaseError: wraps SQLAlchemy failures after a rollback
        Files written or staged by the failed call are removed or restored
        on every exit path, cancellation included, before the lock is released.
    """

    def __init__(
        self,
        guard: ConcurrencyGuard = place_guard,
        files: FileService = file_service,
        scanner: MalwareScanner = malware_scanner,
        thumbnails: ThumbnailQueue = thumbnail_queue,
        slugs: SlugGenerator = slug_generator,
    ):
        self.guard = guard
        self.files = files
        self.scanner = scanner
        self.thumbnails = thumbnails
        self.slugs = slugs

    # ══════════════════════════════════════════════════════════════════════
    # Reads (no lock)
    # ══════════════════════════════════════════════════════════════════════

    async def get_photos(self, db: AsyncSession, place_id: int) -> List[Photo]:
        result = await db.execute(
            select(Photo).where(Photo.place_id == place_id).order_by(Photo.photo_num)
        )
        return list(result.scalars().all())

    async def get_photo(
        self, db: AsyncSession, place_id: int, photo_num: int
    ) -> Optional[Photo]:
        result = await db.execute(
            select(Photo).where(Photo.place_id == place_id, Photo.photo_num == photo_num)
        )
        return result.scalar_one_or_none()

    async def get_favorite_photo(self, db: AsyncSession, place_id: int) -> Optional[Photo]:
        """The favorite photo, else the first one, else None."""
        result = await db.execute(
            select(Photo)
            .where(Photo.place_id == place_id)
            .order_by(Photo.is_favorite.desc(), Photo.photo_num)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _max_photo_num(self, db: AsyncSession, place_id: int) -> int:
        result = await db.execute(
            select(func.coalesce(func.max(Photo.photo_num), 0)).where(
                Photo.place_id == place_id
            )
        )
        return int(result.scalar_one())

    async def _require_place(self, db: AsyncSession, place_id: int) -> Place:
        place = await db.get(Place, place_id)
        if place is None:
            raise NotFoundError(resource="place", resource_id=str(place_id))
        return place

    # ══════════════════════════════════════════════════════════════════════
    # Upload
    # ══════════════════════════════════════════════════════════════════════

    async def _scan(self, images: Sequence[ValidatedImage]) -> None:
        if not settings.malware_scan_enabled:
            return
        errors = []
        for index, image in enumerate(images, start=1):
            verdict = await self.scanner.scan(image.upload.content)
            if verdict != ScanResult.CLEAN:
                errors.append(
                    f"File {index} ({image.upload.filename}): File failed the malware scan"
                )
        if errors:
            logger.warning("Malware scan rejected %d of %d files", len(errors), len(images))
            raise ValidationError(message="; ".join(errors), field="files", errors=errors)

    async def upload(
        self, db: AsyncSession, place_id: int, uploads: Sequence[UploadedFile]
    ) -> int:
        """
        Store a batch of photos at the end of a place's sequence.

        Workflow:
            1. Validate and scan every file (no lock, nothing written)
            2. Under the place lock: write files, insert rows numbered
               max+1.., commit
            3. Queue thumbnail derivation for the committed photos

        Returns:
            Number of photos stored

        Raises:
            ValidationError: any file failed validation or scanning
            NotFoundError: the place does not exist
            FileStorageError / DatabaseError: nothing of the batch remains
        """
        images = self.files.validate_files(uploads)
        await self._scan(images)

        async with self.guard.lock(place_id):
            await self._require_place(db, place_id)

            written: List[Path] = []
            photos: List[Photo] = []
            committed = False
            try:
                next_num = await self._max_photo_num(db, place_id) + 1
                result = await db.execute(select(Photo.slug).where(Photo.place_id == place_id))
                taken = set(result.scalars().all())

                for offset, image in enumerate(images):
                    file_name = self.files.new_file_name(image.extension)
                    # Recorded before writing so a cancelled write is cleaned up too
                    written.append(self.files.photo_path(place_id, file_name))
                    await self.files.write_photo(place_id, file_name, image.upload.content)
                    slug = self.slugs.generate_unique(taken)
                    taken.add(slug)
                    photo = Photo(
                        place_id=place_id,
                        photo_num=next_num + offset,
                        slug=slug,
                        file_name=file_name,
                        is_favorite=False,
                        width=image.width,
                        height=image.height,
                        thumbnail_status=THUMBNAIL_PENDING,
                    )
                    db.add(photo)
                    photos.append(photo)

                await db.commit()
                committed = True
            except SQLAlchemyError as e:
                logger.error("Upload to place %s failed: %s", place_id, str(e))
                raise DatabaseError(
                    message="Could not save the uploaded photos. Please try again.",
                    context={"place_id": place_id, "error_type": type(e).__name__},
                )
            finally:
                if not committed:
                    await self.files.remove_files(written)
                    await db.rollback()

        logger.info(
            "Uploaded %d photos to place %s (photo_num %d-%d)",
            len(photos),
            place_id,
            next_num,
            next_num + len(photos) - 1,
        )
        for photo in photos:
            self.thumbnails.enqueue(photo.id, place_id, photo.file_name)
        return len(photos)

    # ══════════════════════════════════════════════════════════════════════
    # Delete
    # ══════════════════════════════════════════════════════════════════════

    async def _close_gap(self, db: AsyncSession, place_id: int, deleted_num: int) -> None:
        # n > deleted → -(n - 1), then back to positive
        await db.execute(
            update(Photo)
            .where(Photo.place_id == place_id, Photo.photo_num > deleted_num)
            .values(photo_num=1 - Photo.photo_num)
        )
        await db.execute(
            update(Photo)
            .where(Photo.place_id == place_id, Photo.photo_num < 0)
            .values(photo_num=-Photo.photo_num)
        )

    async def delete_photo(self, db: AsyncSession, place_id: int, photo_num: int) -> bool:
        """
        Delete one photo with its files and close the numbering gap.

        A deleted favorite is not replaced; the place simply has none.

        Returns:
            False if the place has no photo with this number
        """
        async with self.guard.lock(place_id):
            photo = await self.get_photo(db, place_id, photo_num)
            if photo is None:
                return False

            staged = self.files.stage_photo_files(place_id, photo.file_name)
            committed = False
            try:
                await db.delete(photo)
                await db.flush()
                await self._close_gap(db, place_id, photo_num)
                await db.commit()
                committed = True
            except SQLAlchemyError as e:
                logger.error(
                    "Deleting photo %d of place %s failed: %s", photo_num, place_id, str(e)
                )
                raise DatabaseError(
                    message="Could not delete the photo. Please try again.",
                    context={"place_id": place_id, "photo_num": photo_num},
                )
            finally:
                if not committed:
                    self.files.restore(staged)
                    await db.rollback()

            await self.files.purge(staged)

        logger.info("Deleted photo %d of place %s", photo_num, place_id)
        return True

    # ══════════════════════════════════════════════════════════════════════
    # Reorder
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def _validate_order(current: Sequence[int], new_order: Sequence[int]) -> None:
        errors = []
        if len(new_order) != len(current):
            errors.append(
                f"Expected {len(current)} photo numbers, received {len(new_order)}"
            )
        duplicates = sorted(num for num, count in Counter(new_order).items() if count > 1)
        if duplicates:
            errors.append(f"Duplicate photo numbers: {duplicates}")
        foreign = sorted(set(new_order) - set(current))
        if foreign:
            errors.append(f"Unknown photo numbers: {foreign}")
        missing = sorted(set(current) - set(new_order))
        if missing:
            errors.append(f"Missing photo numbers: {missing}")
        if errors:
            raise ValidationError(
                message="; ".join(errors), field="photo_order", errors=errors
            )

    async def reorder(
        self, db: AsyncSession, place_id: int, new_order: Sequence[int]
    ) -> None:
        """
        Rearrange a place's photos.

        Args:
            new_order: current photo numbers listed in their target order,
                       e.g. [3, 1, 2] moves the third photo to the front

        Raises:
            NotFoundError: the place does not exist
            ValidationError: new_order is not a permutation of the current
                             numbers (nothing changed)
        """
        new_order = list(new_order)
        async with self.guard.lock(place_id):
            await self._require_place(db, place_id)
            result = await db.execute(
                select(Photo.photo_num)
                .where(Photo.place_id == place_id)
                .order_by(Photo.photo_num)
            )
            current = list(result.scalars().all())
            self._validate_order(current, new_order)
            if new_order == current:
                return

            committed = False
            try:
                await db.execute(
                    update(Photo)
                    .where(Photo.place_id == place_id, Photo.photo_num > 0)
                    .values(photo_num=-Photo.photo_num)
                )
                for new_num, old_num in enumerate(new_order, start=1):
                    await db.execute(
                        update(Photo)
                        .where(Photo.place_id == place_id, Photo.photo_num == -old_num)
                        .values(photo_num=new_num)
                    )
                await db.commit()
                committed = True
            except SQLAlchemyError as e:
                logger.error("Reordering place %s failed: %s", place_id, str(e))
                raise DatabaseError(
                    message="Could not reorder the photos. Please try again.",
                    context={"place_id": place_id},
                )
            finally:
                if not committed:
                    await db.rollback()

        logger.info("Reordered %d photos of place %s", len(new_order), place_id)

    # ══════════════════════════════════════════════════════════════════════
    # Favorite
    # ══════════════════════════════════════════════════════════════════════

    async def set_favorite(
        self, db: AsyncSession, place_id: int, photo_num: int, is_favorite: bool
    ) -> bool:
        """
        Mark or unmark a photo as the place's favorite.

        Marking clears any other favorite first. Place.favorites grows by one
        only when the photo goes from not-favorite to favorite, so repeating
        the call is harmless.

        Returns:
            False if the place has no photo with this number
        """
        async with self.guard.lock(place_id):
            photo = await self.get_photo(db, place_id, photo_num)
            if photo is None:
                return False

            was_favorite = photo.is_favorite
            committed = False
            try:
                if is_favorite:
                    await db.execute(
                        update(Photo)
                        .where(
                            Photo.place_id == place_id,
                            Photo.id != photo.id,
                            Photo.is_favorite.is_(True),
                        )
                        .values(is_favorite=False)
                    )
                    photo.is_favorite = True
                    if not was_favorite:
                        await db.execute(
                            update(Place)
                            .where(Place.id == place_id)
                            .values(favorites=Place.favorites + 1)
                        )
                else:
                    photo.is_favorite = False
                await db.commit()
                committed = True
            except SQLAlchemyError as e:
                logger.error(
                    "Setting favorite %d of place %s failed: %s", photo_num, place_id, str(e)
                )
                raise DatabaseError(
                    message="Could not update the favorite photo. Please try again.",
                    context={"place_id": place_id, "photo_num": photo_num},
                )
            finally:
                if not committed:
                    await db.rollback()

        logger.debug("Photo %d of place %s favorite=%s", photo_num, place_id, is_favorite)
        return True

    # ══════════════════════════════════════════════════════════════════════
    # Place Deletion
    # ══════════════════════════════════════════════════════════════════════

    async def delete_place_with_photos(
        self,
        db: AsyncSession,
        place_id: int,
        place_delete_callback: PlaceDeleteCallback,
    ) -> bool:
        """
        Delete a place, all of its photo rows and its directory, or nothing.

        The place lock is held across `place_delete_callback`, so no upload,
        reorder or favorite can slip in between removing the photos and
        removing the place.

        Args:
            place_delete_callback: deletes the place row in the given session
                                   without committing

        Returns:
            False if the place does not exist
        """
        async with self.guard.lock(place_id):
            place = await db.get(Place, place_id)
            if place is None:
                return False

            staged = self.files.stage_place_directory(place_id)
            committed = False
            try:
                result = await db.execute(delete(Photo).where(Photo.place_id == place_id))
                photo_count = result.rowcount
                await place_delete_callback(db, place_id)
                await db.commit()
                committed = True
            except SQLAlchemyError as e:
                logger.error("Deleting place %s failed: %s", place_id, str(e))
                raise DatabaseError(
                    message="Could not delete the place. Please try again.",
                    context={"place_id": place_id},
                )
            finally:
                if not committed:
                    self.files.restore(staged)
                    await db.rollback()

            await self.files.purge(staged)

        logger.info("Deleted place %s with %d photos", place_id, photo_count)
        return True


# ── Singleton Instance ────────────────────────────────────────────────────
photo_service = PhotoService()
