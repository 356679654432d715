"""
Exposure Backend — Admin Routes
=================================

What:  Login/logout, place and photo management, TOTP enrollment.
Why:   Every mutation of the gallery goes through these handlers.
How:   Login stores the username in the signed session cookie
       (Starlette SessionMiddleware); every other handler depends on
       require_admin. Services are injected through Depends and all
       failures are raised as GalleryError subclasses.
Who:   The admin frontend.

Endpoints:
    POST   /api/admin/login
    POST   /api/admin/logout
    POST   /api/admin/places
    PUT    /api/admin/places/{place_id}
    DELETE /api/admin/places/{place_id}
    POST   /api/admin/places/reorder
    POST   /api/admin/places/{place_id}/photos                  (multipart)
    DELETE /api/admin/places/{place_id}/photos/{photo_num}
    POST   /api/admin/places/{place_id}/photos/reorder
    POST   /api/admin/places/{place_id}/photos/{photo_num}/favorite
    POST   /api/admin/thumbnails/retry
    POST   /api/admin/storage/cleanup
    POST   /api/admin/totp/setup | verify | disable
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.dependencies import (
    SESSION_USER_KEY,
    get_auth_service,
    get_photo_service,
    get_place_service,
    get_storage_maintenance,
    get_thumbnail_queue,
    read_uploads,
    require_admin,
)
from app.exceptions import NotFoundError
from app.schemas.auth import (
    LoginRequest,
    LoginResponse,
    TotpCodeRequest,
    TotpSetupResponse,
    TotpStatusResponse,
)
from app.schemas.common import ErrorResponse
from app.schemas.place import (
    FavoriteRequest,
    PhotoReorderRequest,
    PlaceCreatedResponse,
    PlaceDetail,
    PlaceReorderRequest,
    PlaceRequest,
    UploadResponse,
)
from app.services.auth_service import AuthenticationService
from app.services.file_service import UploadedFile
from app.services.photo_service import PhotoService
from app.services.place_service import PlaceService
from app.services.storage_maintenance import StorageMaintenance
from app.services.thumbnail_service import ThumbnailQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])
protected = APIRouter(dependencies=[Depends(require_admin)])


# ══════════════════════════════════════════════════════════════════════════
# Session
# ══════════════════════════════════════════════════════════════════════════


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        401: {"description": "Invalid credentials", "model": ErrorResponse},
        429: {"description": "Too many failed attempts", "model": ErrorResponse},
    },
    summary="Log in as an administrator",
)
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthenticationService = Depends(get_auth_service),
) -> LoginResponse:
    user = await auth.authenticate(db, body.username, body.password, body.totp_code)
    # Fresh session on privilege change
    request.session.clear()
    request.session[SESSION_USER_KEY] = user.username
    return LoginResponse(username=user.username)


@router.post("/logout", status_code=204, summary="End the admin session")
async def logout(request: Request) -> Response:
    request.session.clear()
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════════════════
# Places
# ══════════════════════════════════════════════════════════════════════════


@protected.post(
    "/places",
    status_code=201,
    response_model=PlaceCreatedResponse,
    responses={
        400: {"description": "Invalid form", "model": ErrorResponse},
        409: {"description": "Slug conflict", "model": ErrorResponse},
    },
    summary="Create a place",
)
async def create_place(
    body: PlaceRequest,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> PlaceCreatedResponse:
    place = await places.create(
        db, body.name, body.location, body.country, body.start_date, body.end_date
    )
    return PlaceCreatedResponse(
        id=place.id,
        slug=place.slug,
        path=f"{place.country_slug}/{place.location_slug}/{place.name_slug}",
    )


@protected.post("/places/reorder", status_code=204, summary="Set the home page order")
async def reorder_places(
    body: PlaceReorderRequest,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> Response:
    await places.reorder_places(db, body.place_ids)
    return Response(status_code=204)


@protected.put(
    "/places/{place_id}",
    response_model=PlaceDetail,
    responses={
        400: {"description": "Invalid form", "model": ErrorResponse},
        404: {"description": "Unknown place", "model": ErrorResponse},
    },
    summary="Update a place's display fields",
)
async def update_place(
    place_id: int,
    body: PlaceRequest,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> PlaceDetail:
    await places.update(
        db, place_id, body.name, body.location, body.country, body.start_date, body.end_date
    )
    return await places.get_by_id(db, place_id)


@protected.delete(
    "/places/{place_id}",
    status_code=204,
    responses={404: {"description": "Unknown place", "model": ErrorResponse}},
    summary="Delete a place with all of its photos",
)
async def delete_place(
    place_id: int,
    db: AsyncSession = Depends(get_db_session),
    places: PlaceService = Depends(get_place_service),
) -> Response:
    await places.delete(db, place_id)
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════════════════
# Photos
# ══════════════════════════════════════════════════════════════════════════


@protected.post(
    "/places/{place_id}/photos",
    status_code=201,
    response_model=UploadResponse,
    responses={
        400: {"description": "A file was rejected; nothing was stored", "model": ErrorResponse},
        404: {"description": "Unknown place", "model": ErrorResponse},
        503: {"description": "Place busy, retry", "model": ErrorResponse},
    },
    summary="Upload photos to a place",
)
async def upload_photos(
    place_id: int,
    uploads: List[UploadedFile] = Depends(read_uploads),
    db: AsyncSession = Depends(get_db_session),
    photos: PhotoService = Depends(get_photo_service),
) -> UploadResponse:
    count = await photos.upload(db, place_id, uploads)
    noun = "photo" if count == 1 else "photos"
    return UploadResponse(uploaded=count, message=f"Uploaded {count} {noun}")


@protected.post(
    "/places/{place_id}/photos/reorder",
    status_code=204,
    responses={400: {"description": "Not a permutation", "model": ErrorResponse}},
    summary="Reorder a place's photos",
)
async def reorder_photos(
    place_id: int,
    body: PhotoReorderRequest,
    db: AsyncSession = Depends(get_db_session),
    photos: PhotoService = Depends(get_photo_service),
) -> Response:
    await photos.reorder(db, place_id, body.photo_order)
    return Response(status_code=204)


@protected.delete(
    "/places/{place_id}/photos/{photo_num}",
    status_code=204,
    responses={404: {"description": "Unknown photo", "model": ErrorResponse}},
    summary="Delete a photo and close the numbering gap",
)
async def delete_photo(
    place_id: int,
    photo_num: int,
    db: AsyncSession = Depends(get_db_session),
    photos: PhotoService = Depends(get_photo_service),
) -> Response:
    if not await photos.delete_photo(db, place_id, photo_num):
        raise NotFoundError(resource="photo", resource_id=f"{place_id}/{photo_num}")
    return Response(status_code=204)


@protected.post(
    "/places/{place_id}/photos/{photo_num}/favorite",
    status_code=204,
    responses={404: {"description": "Unknown photo", "model": ErrorResponse}},
    summary="Mark or unmark the place's favorite photo",
)
async def set_favorite(
    place_id: int,
    photo_num: int,
    body: FavoriteRequest,
    db: AsyncSession = Depends(get_db_session),
    photos: PhotoService = Depends(get_photo_service),
) -> Response:
    if not await photos.set_favorite(db, place_id, photo_num, body.is_favorite):
        raise NotFoundError(resource="photo", resource_id=f"{place_id}/{photo_num}")
    return Response(status_code=204)


@protected.post("/thumbnails/retry", summary="Re-queue failed thumbnail jobs")
async def retry_thumbnails(
    include_stale: bool = False,
    db: AsyncSession = Depends(get_db_session),
    thumbnails: ThumbnailQueue = Depends(get_thumbnail_queue),
) -> dict:
    queued = await thumbnails.retry_failed(db, include_stale=include_stale)
    return {"queued": queued}


@protected.post("/storage/cleanup", summary="Delete files no photo or place refers to")
async def cleanup_storage(
    dry_run: bool = True,
    db: AsyncSession = Depends(get_db_session),
    maintenance: StorageMaintenance = Depends(get_storage_maintenance),
) -> dict:
    stats = await maintenance.cleanup_orphans(db, dry_run=dry_run)
    return {
        "dry_run": stats.dry_run,
        "orphan_files": stats.orphan_files,
        "orphan_directories": stats.orphan_directories,
        "errors": len(stats.errors),
    }


# ══════════════════════════════════════════════════════════════════════════
# TOTP
# ══════════════════════════════════════════════════════════════════════════


@protected.post(
    "/totp/setup",
    response_model=TotpSetupResponse,
    responses={409: {"description": "Already enabled", "model": ErrorResponse}},
    summary="Start two-factor enrollment",
)
async def totp_setup(
    username: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthenticationService = Depends(get_auth_service),
) -> TotpSetupResponse:
    enrollment = await auth.enable_totp(db, username)
    return TotpSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        qr_code_png=enrollment.qr_code_png,
    )


@protected.post(
    "/totp/verify",
    response_model=TotpStatusResponse,
    responses={400: {"description": "Wrong code", "model": ErrorResponse}},
    summary="Confirm two-factor enrollment",
)
async def totp_verify(
    body: TotpCodeRequest,
    username: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthenticationService = Depends(get_auth_service),
) -> TotpStatusResponse:
    await auth.verify_totp(db, username, body.code)
    return TotpStatusResponse(totp_enabled=True, message="Two-factor authentication enabled")


@protected.post(
    "/totp/disable",
    response_model=TotpStatusResponse,
    summary="Turn off two-factor authentication",
)
async def totp_disable(
    username: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthenticationService = Depends(get_auth_service),
) -> TotpStatusResponse:
    await auth.disable_totp(db, username)
    return TotpStatusResponse(totp_enabled=False, message="Two-factor authentication disabled")


router.include_router(protected)
