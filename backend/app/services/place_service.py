"""
Exposure Backend — Place Service
==================================

What:  Place lifecycle (create, update, delete, home ordering) and the read
       projections behind the public gallery.
Why:   Keeps slug assignment, form validation and display formatting out of
       the route handlers.
How:   Mutations validate a PlaceForm, then write through the request's
       AsyncSession and commit. Deletion is delegated to
       PhotoService.delete_place_with_photos so that it runs under the
       place lock together with the photo removal. Reads take no lock.
Who:   Public and admin route handlers.

Slugs:
    A place gets two identities when it is created, and keeps both forever:
      - slug: random (SlugGenerator), globally unique
      - country_slug/location_slug/name_slug: readable path; the name part
        gets a -2, -3... suffix when the same path already exists
    Both are backed by unique constraints. A concurrent insert that wins
    the race raises IntegrityError; the insert is retried with fresh slugs
    (tenacity) and ConflictError is raised once attempts run out.
"""

import logging
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from app.config import settings
from app.exceptions import ConflictError, DatabaseError, NotFoundError, ValidationError
from app.models.photo import THUMBNAIL_COMPLETED, Photo
from app.models.place import Place
from app.schemas.place import (
    PhotoResponse,
    PlaceDetail,
    PlaceForm,
    PlaceSummary,
    form_errors,
)
from app.services.file_service import variant_file_name
from app.services.photo_service import PhotoService, photo_service
from app.services.slug_generator import SlugGenerator, slug_generator

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Display Helpers
# ══════════════════════════════════════════════════════════════════════════


def format_date_for_display(iso_date: Optional[str]) -> str:
    """'2024-06-03' → '03 Jun, 2024'; unparseable input is returned as-is."""
    if not iso_date:
        return ""
    try:
        return date.fromisoformat(iso_date).strftime("%d %b, %Y")
    except ValueError:
        return iso_date


def trip_dates_display(start_date: str, end_date: Optional[str] = None) -> str:
    """
    Compact trip period text.

        2024-06-03                → 03 Jun, 2024
        2024-06-03 .. 2024-06-10  → 03-10 Jun, 2024
        2024-06-28 .. 2024-07-03  → 28 Jun - 03 Jul, 2024
        2024-12-28 .. 2025-01-03  → 28 Dec, 2024 - 03 Jan, 2025
    """
    formatted_start = format_date_for_display(start_date)
    if not end_date or end_date == start_date:
        return formatted_start
    try:
        start, end = date.fromisoformat(start_date), date.fromisoformat(end_date)
    except ValueError:
        return f"{formatted_start} - {format_date_for_display(end_date)}"

    if (start.year, start.month) == (end.year, end.month):
        return f"{start:%d}-{end:%d %b, %Y}"
    if start.year == end.year:
        return f"{start:%d %b} - {end:%d %b, %Y}"
    return f"{start:%d %b, %Y} - {end:%d %b, %Y}"


def photo_url(place_id: int, file_name: str) -> str:
    return f"/api/files/places/{place_id}/{file_name}"


def to_photo_response(photo: Photo) -> PhotoResponse:
    thumbnail_url = None
    if photo.thumbnail_status == THUMBNAIL_COMPLETED:
        thumbnail_url = photo_url(photo.place_id, variant_file_name(photo.file_name, "thumb"))
    return PhotoResponse(
        id=photo.id,
        photo_num=photo.photo_num,
        slug=photo.slug,
        file_name=photo.file_name,
        url=photo_url(photo.place_id, photo.file_name),
        thumbnail_url=thumbnail_url,
        is_favorite=photo.is_favorite,
        width=photo.width,
        height=photo.height,
        thumbnail_status=photo.thumbnail_status,
    )


def _summary_fields(place: Place, photo_count: int, cover: Optional[Photo]) -> dict:
    return dict(
        id=place.id,
        slug=place.slug,
        country_slug=place.country_slug,
        location_slug=place.location_slug,
        name_slug=place.name_slug,
        name=place.name,
        location=place.location,
        country=place.country,
        start_date=place.start_date,
        end_date=place.end_date,
        trip_dates=trip_dates_display(place.start_date, place.end_date),
        favorites=place.favorites,
        sort_order=place.sort_order,
        photo_count=photo_count,
        cover_photo=to_photo_response(cover) if cover else None,
        created_at=place.created_at,
        updated_at=place.updated_at,
    )


# ══════════════════════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════════════════════


class PlaceService:
    """Business logic for places."""

    def __init__(
        self,
        photos: PhotoService = photo_service,
        slugs: SlugGenerator = slug_generator,
        max_attempts: Optional[int] = None,
    ):
        self.photos = photos
        self.slugs = slugs
        self.max_attempts = max_attempts or settings.slug_max_attempts

    # ── Validation ────────────────────────────────────────────────────────

    @staticmethod
    def validate_form(
        name: str,
        location: str,
        country: str,
        start_date: str,
        end_date: Optional[str] = None,
    ) -> PlaceForm:
        """
        Raises:
            ValidationError listing every invalid field
        """
        try:
            return PlaceForm(
                name=name,
                location=location,
                country=country,
                start_date=start_date,
                end_date=end_date,
            )
        except PydanticValidationError as e:
            errors = form_errors(e)
            raise ValidationError(message="; ".join(errors), field="place", errors=errors)

    def _path_slugs(self, form: PlaceForm) -> Dict[str, str]:
        slugs = {
            "country": self.slugs.slugify(form.country),
            "location": self.slugs.slugify(form.location),
            "name": self.slugs.slugify(form.name),
        }
        empty = [label for label, value in slugs.items() if not value]
        if empty:
            errors = [f"{label.capitalize()} must contain letters or digits" for label in empty]
            raise ValidationError(message="; ".join(errors), field="place", errors=errors)
        return slugs

    # ── Create ────────────────────────────────────────────────────────────

    async def _path_taken(
        self, db: AsyncSession, country_slug: str, location_slug: str, name_slug: str
    ) -> bool:
        result = await db.execute(
            select(Place.id).where(
                Place.country_slug == country_slug,
                Place.location_slug == location_slug,
                Place.name_slug == name_slug,
            )
        )
        return result.first() is not None

    async def _insert(
        self, db: AsyncSession, form: PlaceForm, path: Dict[str, str]
    ) -> Place:
        name_slug = await self.slugs.unique_slugify(
            form.name,
            lambda candidate: self._path_taken(db, path["country"], path["location"], candidate),
        )
        result = await db.execute(select(func.coalesce(func.max(Place.sort_order), 0)))
        sort_order = int(result.scalar_one()) + 1

        place = Place(
            slug=self.slugs.generate(),
            country_slug=path["country"],
            location_slug=path["location"],
            name_slug=name_slug,
            name=form.name,
            location=form.location,
            country=form.country,
            start_date=form.start_date,
            end_date=form.end_date,
            favorites=0,
            sort_order=sort_order,
        )
        db.add(place)
        try:
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise
        return place

    async def create(
        self,
        db: AsyncSession,
        name: str,
        location: str,
        country: str,
        start_date: str,
        end_date: Optional[str] = None,
    ) -> Place:
        """
        Create a place at the end of the home ordering.

        Returns:
            The committed Place (id, slug and path slugs populated)

        Raises:
            ValidationError: invalid form
            ConflictError: unique slugs could not be assigned
            DatabaseError: any other store failure
        """
        form = self.validate_form(name, location, country, start_date, end_date)
        path = self._path_slugs(form)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(IntegrityError),
                stop=stop_after_attempt(self.max_attempts),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    place = await self._insert(db, form, path)
        except IntegrityError as e:
            logger.warning("Place slug conflict persisted after %d attempts", self.max_attempts)
            raise ConflictError(
                message="Could not assign a unique address to this place. Please try again.",
                context={"error_type": type(e).__name__},
            )
        except SQLAlchemyError as e:
            logger.error("Creating place failed: %s", str(e))
            raise DatabaseError(
                message="Could not create the place. Please try again.",
                context={"error_type": type(e).__name__},
            )

        logger.info(
            "Created place %s '%s' at /%s/%s/%s",
            place.id,
            place.name,
            place.country_slug,
            place.location_slug,
            place.name_slug,
        )
        return place

    # ── Update ────────────────────────────────────────────────────────────

    async def update(
        self,
        db: AsyncSession,
        place_id: int,
        name: str,
        location: str,
        country: str,
        start_date: str,
        end_date: Optional[str] = None,
    ) -> Place:
        """
        Change display fields. Slugs, id and created_at never change.

        Raises:
            ValidationError / NotFoundError / DatabaseError
        """
        form = self.validate_form(name, location, country, start_date, end_date)
        place = await self._get(db, place_id)

        place.name = form.name
        place.location = form.location
        place.country = form.country
        place.start_date = form.start_date
        place.end_date = form.end_date
        place.updated_at = datetime.now(timezone.utc)
        try:
            await db.commit()
        except StaleDataError:
            # Deleted by a concurrent request after _get loaded it
            await db.rollback()
            raise NotFoundError(resource="place", resource_id=str(place_id))
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Updating place %s failed: %s", place_id, str(e))
            raise DatabaseError(
                message="Could not update the place. Please try again.",
                context={"place_id": place_id},
            )
        logger.info("Updated place %s", place_id)
        return place

    # ── Delete ────────────────────────────────────────────────────────────

    @staticmethod
    async def _delete_place_row(db: AsyncSession, place_id: int) -> None:
        await db.execute(delete(Place).where(Place.id == place_id))

    async def delete(self, db: AsyncSession, place_id: int) -> None:
        """
        Delete a place with all of its photos and files.

        Always goes through PhotoService so the place lock covers the
        whole sequence.

        Raises:
            NotFoundError: no such place
        """
        deleted = await self.photos.delete_place_with_photos(
            db, place_id, self._delete_place_row
        )
        if not deleted:
            raise NotFoundError(resource="place", resource_id=str(place_id))

    # ── Home Ordering ─────────────────────────────────────────────────────

    async def reorder_places(self, db: AsyncSession, ordered_ids: Sequence[int]) -> None:
        """
        Assign sort_order 1..N following `ordered_ids`.

        Raises:
            ValidationError: ordered_ids is not exactly the set of place ids
        """
        ordered_ids = list(ordered_ids)
        result = await db.execute(select(Place.id))
        existing = set(result.scalars().all())
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != existing:
            raise ValidationError(
                message="The new order must list every place exactly once",
                field="place_ids",
                context={"expected": len(existing), "received": len(ordered_ids)},
            )
        try:
            for position, place_id in enumerate(ordered_ids, start=1):
                await db.execute(
                    update(Place).where(Place.id == place_id).values(sort_order=position)
                )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("Reordering places failed: %s", str(e))
            raise DatabaseError(
                message="Could not reorder the places. Please try again.",
                context={"error_type": type(e).__name__},
            )
        logger.info("Reordered %d places", len(ordered_ids))

    # ══════════════════════════════════════════════════════════════════════
    # Read Projections (no lock)
    # ══════════════════════════════════════════════════════════════════════

    async def _get(self, db: AsyncSession, place_id: int) -> Place:
        place = await db.get(Place, place_id)
        if place is None:
            raise NotFoundError(resource="place", resource_id=str(place_id))
        return place

    async def _detail(self, db: AsyncSession, place: Place) -> PlaceDetail:
        photos = await self.photos.get_photos(db, place.id)
        cover = next((p for p in photos if p.is_favorite), photos[0] if photos else None)
        return PlaceDetail(
            **_summary_fields(place, len(photos), cover),
            photos=[to_photo_response(p) for p in photos],
        )

    async def get_all(self, db: AsyncSession) -> List[PlaceSummary]:
        """Every place in home order, with photo count and cover photo."""
        result = await db.execute(
            select(Place).order_by(Place.sort_order.asc(), Place.created_at.desc())
        )
        places = list(result.scalars().all())
        if not places:
            return []

        counts_result = await db.execute(
            select(Photo.place_id, func.count(Photo.id)).group_by(Photo.place_id)
        )
        counts = {place_id: count for place_id, count in counts_result.all()}

        # Candidates for the cover: the favorite or photo #1 of each place
        covers_result = await db.execute(
            select(Photo).where(or_(Photo.is_favorite.is_(True), Photo.photo_num == 1))
        )
        covers: Dict[int, Photo] = {}
        for photo in covers_result.scalars().all():
            current = covers.get(photo.place_id)
            if current is None or (photo.is_favorite and not current.is_favorite):
                covers[photo.place_id] = photo

        return [
            PlaceSummary(**_summary_fields(place, counts.get(place.id, 0), covers.get(place.id)))
            for place in places
        ]

    async def get_by_id(self, db: AsyncSession, place_id: int) -> PlaceDetail:
        return await self._detail(db, await self._get(db, place_id))

    async def get_by_slug(self, db: AsyncSession, slug: str) -> PlaceDetail:
        result = await db.execute(select(Place).where(Place.slug == slug))
        place = result.scalar_one_or_none()
        if place is None:
            raise NotFoundError(resource="place", resource_id=slug)
        return await self._detail(db, place)

    async def get_by_path(
        self, db: AsyncSession, country_slug: str, location_slug: str, name_slug: str
    ) -> PlaceDetail:
        result = await db.execute(
            select(Place).where(
                Place.country_slug == country_slug,
                Place.location_slug == location_slug,
                Place.name_slug == name_slug,
            )
        )
        place = result.scalar_one_or_none()
        if place is None:
            raise NotFoundError(
                resource="place", resource_id=f"{country_slug}/{location_slug}/{name_slug}"
            )
        return await self._detail(db, place)

    async def total_favorites(self, db: AsyncSession) -> int:
        result = await db.execute(select(func.coalesce(func.sum(Place.favorites), 0)))
        return int(result.scalar_one())


# ── Singleton Instance ────────────────────────────────────────────────────
place_service = PlaceService()
