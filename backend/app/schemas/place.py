"""
Exposure Backend — Place & Photo Schemas
==========================================

What:  Pydantic models for the place form, gallery responses and the
       reorder/favorite request bodies.
Why:   The form rules (lengths, dates, disallowed markup) are enforced in
       one place for both create and update; responses control exactly
       which columns leave the server.
Who:   PlaceService validates PlaceForm; route handlers return the
       response models.
"""

import re
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

# ══════════════════════════════════════════════════════════════════════════
# Place Form
# ══════════════════════════════════════════════════════════════════════════

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MIN_YEAR = 1900
MAX_YEAR = 2100

# Markup and script injection
_MARKUP_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>", re.IGNORECASE),
    re.compile(r"<object[^>]*>", re.IGNORECASE),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
]

# Path traversal, plain and URL-encoded
_TRAVERSAL_PATTERNS = [
    re.compile(r"\.{2,}"),
    re.compile(r"%2e%2e", re.IGNORECASE),
]


def _clean_text(value: Optional[str], label: str, max_length: int) -> str:
    if value is None or not value.strip():
        raise ValueError(f"{label} cannot be empty")
    if len(value) > max_length:
        raise ValueError(f"{label} cannot exceed {max_length} characters")
    trimmed = value.strip()
    if any(p.search(trimmed) for p in _MARKUP_PATTERNS + _TRAVERSAL_PATTERNS):
        raise ValueError(f"{label} contains invalid characters")
    return trimmed


def _parse_iso_date(value: str, label: str) -> date:
    if not ISO_DATE_PATTERN.match(value):
        raise ValueError(f"{label} must be in YYYY-MM-DD format")
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"{label} is not a valid date")
    if not MIN_YEAR <= parsed.year <= MAX_YEAR:
        raise ValueError(f"{label} year must be between {MIN_YEAR} and {MAX_YEAR}")
    return parsed


class PlaceForm(BaseModel):
    """
    Validated input for creating or updating a place.

    Text fields come back trimmed; an empty end_date becomes None.
    """

    name: str
    location: str
    country: str
    start_date: str
    end_date: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _clean_text(v, "Place name", 200)

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        return _clean_text(v, "Location", 100)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        return _clean_text(v, "Country", 100)

    @field_validator("start_date")
    @classmethod
    def validate_start_date(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Start date cannot be empty")
        _parse_iso_date(v, "Start date")
        return v

    @field_validator("end_date")
    @classmethod
    def validate_end_date(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        if not v:
            return None
        _parse_iso_date(v, "End date")
        return v

    @model_validator(mode="after")
    def validate_date_range(self) -> "PlaceForm":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be on or after the start date")
        return self


def form_errors(exc: PydanticValidationError) -> List[str]:
    """Flatten pydantic errors into the plain messages raised by the validators."""
    messages = []
    for error in exc.errors():
        ctx_error = (error.get("ctx") or {}).get("error")
        if ctx_error is not None:
            messages.append(str(ctx_error))
        else:
            location = ".".join(str(part) for part in error.get("loc", ()))
            messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return messages


# ══════════════════════════════════════════════════════════════════════════
# Request Bodies
# ══════════════════════════════════════════════════════════════════════════


class PlaceRequest(BaseModel):
    """
    Create/update body as typed by the admin.

    Only types are checked here. PlaceService runs PlaceForm on it and
    reports every field message in one 400.
    """

    name: str = ""
    location: str = ""
    country: str = ""
    start_date: str = ""
    end_date: Optional[str] = None


class PlaceReorderRequest(BaseModel):
    place_ids: List[int] = Field(description="Every place id, in the desired home order")


class PhotoReorderRequest(BaseModel):
    photo_order: List[int] = Field(
        description="Current photo numbers listed in their target order, e.g. [3, 1, 2]"
    )


class FavoriteRequest(BaseModel):
    is_favorite: bool = Field(default=True)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class PhotoResponse(BaseModel):
    """
    What:  One photo as shown in a place page.
    Why url fields: the frontend never builds storage paths itself.
    thumbnail_url is null until the variants exist.
    """

    id: int
    photo_num: int
    slug: str
    file_name: str
    url: str
    thumbnail_url: Optional[str] = None
    is_favorite: bool
    width: Optional[int] = None
    height: Optional[int] = None
    thumbnail_status: str


class PlaceSummary(BaseModel):
    """A place card on the home page."""

    id: int
    slug: str
    country_slug: str
    location_slug: str
    name_slug: str
    name: str
    location: str
    country: str
    start_date: str
    end_date: Optional[str] = None
    trip_dates: str = Field(description="Display text, e.g. '03-10 Jun, 2024'")
    favorites: int
    sort_order: int
    photo_count: int
    cover_photo: Optional[PhotoResponse] = None
    created_at: datetime
    updated_at: datetime


class PlaceDetail(PlaceSummary):
    """A place page: the summary plus every photo in order."""

    photos: List[PhotoResponse] = Field(default_factory=list)


class PlaceListResponse(BaseModel):
    places: List[PlaceSummary]
    total_favorites: int


class PlaceCreatedResponse(BaseModel):
    id: int
    slug: str
    path: str = Field(description="country/location/name URL path")


class UploadResponse(BaseModel):
    uploaded: int
    message: str
