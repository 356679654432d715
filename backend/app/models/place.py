"""
Exposure Backend — Place SQLAlchemy Model
===========================================

What:  ORM model representing the `places` table (one trip in the gallery).
Why:   Maps places to rows for PlaceService and PhotoService.
How:   Inherits from the shared DeclarativeBase; Alembic reads this for migrations.
Who:   Used by PlaceService (lifecycle, projections) and PhotoService
       (existence checks, favorite counter).

Table Design:
    - slug: random, immutable, globally unique public handle
    - country_slug / location_slug / name_slug: text-derived URL path,
      unique as a tuple and fixed at creation
    - start_date / end_date: ISO YYYY-MM-DD strings, as entered
    - favorites: accumulating counter of false→true favorite transitions
    - sort_order: home page position, appended at max+1
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Place(Base):
    """
    A trip with an ordered set of photos.

    Lifecycle:
        1. Created by PlaceService.create (slugs assigned once)
        2. Display fields changed by PlaceService.update
        3. Deleted together with its photos and files by
           PhotoService.delete_place_with_photos
    """

    __tablename__ = "places"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Slugs ─────────────────────────────────────────────────────────────
    slug: Mapped[str] = mapped_column(String(12), nullable=False, unique=True)
    country_slug: Mapped[str] = mapped_column(String(40), nullable=False)
    location_slug: Mapped[str] = mapped_column(String(40), nullable=False)
    name_slug: Mapped[str] = mapped_column(String(40), nullable=False)

    # ── Display Fields ────────────────────────────────────────────────────
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    location: Mapped[str] = mapped_column(String(100), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[str] = mapped_column(String(10), nullable=False)
    end_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    favorites: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    sort_order: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    # ── Timestamps ────────────────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        UniqueConstraint(
            "country_slug", "location_slug", "name_slug", name="uq_places_path"
        ),
        Index("idx_places_sort_order", "sort_order"),
    )

    def __repr__(self) -> str:
        return f"<Place(id={self.id}, slug='{self.slug}', name='{self.name}')>"
