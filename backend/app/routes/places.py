"""
Exposure Backend — Public Gallery Routes
==========================================

What:  Read-only endpoints for visitors: the home listing, a place page (by
       random slug or by readable path) and the photo files themselves.
Why:   Visitors never need a session; none of these handlers take a lock.
How:   Thin handlers delegating to PlaceService / FileService through
       Depends. Errors surface through the global exception handlers.
Who:   The gallery frontend.
"""

import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.dependencies import get_file_service, get_place_service
from app.exceptions import NotFoundError
from app.schemas.common import ErrorResponse
from app.schemas.place import PlaceDetail, PlaceListResponse
from app.services.file_service import FileService
from app.services.place_service import PlaceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Gallery"])


@router.get(
    "/places",
    response_model=PlaceListResponse,
    summary="List every place in home order",
)
async def list_places(
    response: Response,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> PlaceListResponse:
    items = await places.get_all(db)
    total = await places.total_favorites(db)
    response.headers["Cache-Control"] = "public, max-age=60"
    return PlaceListResponse(places=items, total_favorites=total)


@router.get(
    "/places/{slug}",
    response_model=PlaceDetail,
    responses={404: {"description": "Unknown slug", "model": ErrorResponse}},
    summary="Get a place by its short slug",
)
async def get_place_by_slug(
    slug: str,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> PlaceDetail:
    return await places.get_by_slug(db, slug)


@router.get(
    "/places/{country}/{location}/{name}",
    response_model=PlaceDetail,
    responses={404: {"description": "Unknown path", "model": ErrorResponse}},
    summary="Get a place by its country/location/name path",
)
async def get_place_by_path(
    country: str,
    location: str,
    name: str,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> PlaceDetail:
    return await places.get_by_path(db, country, location, name)


@router.get(
    "/files/places/{place_id}/{file_name}",
    summary="Serve a stored photo or one of its variants",
    responses={
        200: {"description": "Image file"},
        400: {"description": "Invalid path", "model": ErrorResponse},
        404: {"description": "File not found", "model": ErrorResponse},
    },
)
async def serve_photo_file(
    place_id: int,
    file_name: str,
    files: FileService = Depends(get_file_service),
) -> FileResponse:
    """
    Security:
        - file_name must be a single safe segment (no '..', separators, dots)
        - the resolved path must stay under the storage root
    """
    path = files.photo_path(place_id, file_name)
    if not path.is_file():
        raise NotFoundError(resource="file", resource_id=file_name)

    # File names are random and never reused, so the content never changes
    return FileResponse(
        path=str(path),
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
