"""
Exposure Backend — Photo SQLAlchemy Model
===========================================

What:  ORM model representing the `photos` table.
Why:   Each row is one uploaded image belonging to a place, with its
       position (photo_num), public slug and derived-variant status.
Who:   Written only by PhotoService (under the place lock) and by the
       thumbnail queue (status column only).

Invariants maintained by PhotoService:
    - photo_num values of a place with N photos are exactly 1..N
    - at most one photo per place has is_favorite = true
    - slug is unique within the place

The (place_id, photo_num) unique constraint is NOT deferrable, so every
renumbering goes through a temporary negative range first.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.place import utcnow


# Values of Photo.thumbnail_status
THUMBNAIL_PENDING = "pending"
THUMBNAIL_PROCESSING = "processing"
THUMBNAIL_COMPLETED = "completed"
THUMBNAIL_FAILED = "failed"


class Photo(Base):
    """An uploaded image at a 1-based position within its place."""

    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    place_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("places.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    photo_num: Mapped[int] = mapped_column(Integer, nullable=False)
    slug: Mapped[str] = mapped_column(String(12), nullable=False)

    # What: Stored file name inside the place directory, "<uuid><ext>"
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_favorite: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    thumbnail_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=THUMBNAIL_PENDING,
        server_default=text(f"'{THUMBNAIL_PENDING}'"),
    )

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
        UniqueConstraint("place_id", "photo_num", name="uq_photos_place_num"),
        UniqueConstraint("place_id", "slug", name="uq_photos_place_slug"),
    )

    def __repr__(self) -> str:
        return (
            f"<Photo(id={self.id}, place_id={self.place_id}, "
            f"photo_num={self.photo_num}, favorite={self.is_favorite})>"
        )
