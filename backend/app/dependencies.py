"""
Exposure Backend — Route Dependencies
=======================================

What:  FastAPI `Depends` providers for services, the admin session check
       and multipart upload parsing.
Why:   Route handlers stay plain functions; tests swap any service through
       app.dependency_overrides without patching module globals.
"""

import logging
from typing import List

from fastapi import Depends, File, Request, UploadFile

from app.config import settings
from app.exceptions import AuthenticationError
from app.services.auth_service import AuthenticationService, auth_service
from app.services.file_service import FileService, UploadedFile, file_service
from app.services.photo_service import PhotoService, photo_service
from app.services.place_service import PlaceService, place_service
from app.services.storage_maintenance import StorageMaintenance, storage_maintenance
from app.services.thumbnail_service import ThumbnailQueue, thumbnail_queue

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "admin_user"


def get_place_service() -> PlaceService:
    return place_service


def get_photo_service() -> PhotoService:
    return photo_service


def get_auth_service() -> AuthenticationService:
    return auth_service


def get_file_service() -> FileService:
    return file_service


def get_thumbnail_queue() -> ThumbnailQueue:
    return thumbnail_queue


def get_storage_maintenance() -> StorageMaintenance:
    return storage_maintenance


def require_admin(request: Request) -> str:
    """
    Return the logged-in admin's username.

    Raises:
        AuthenticationError: no admin session
    """
    username = request.session.get(SESSION_USER_KEY)
    if not username:
        raise AuthenticationError(message="Authentication required")
    return username


async def read_uploads(
    files: List[UploadFile] = File(..., description="Images (JPEG, PNG or WebP)"),
    storage: FileService = Depends(get_file_service),
) -> List[UploadedFile]:
    """
    Read multipart files into UploadedFile values, closing each upload.

    Each file is read at most one byte past MAX_FILE_SIZE_MB; an oversized
    file is then rejected by batch validation without being buffered whole.
    """
    storage.validate_file_count(len(files))
    uploads = []
    for upload in files:
        try:
            content = await upload.read(settings.max_file_size + 1)
        finally:
            await upload.close()
        uploads.append(
            UploadedFile(
                filename=upload.filename or "",
                content=content,
                content_type=upload.content_type,
            )
        )
    logger.info(
        "Received %d files (%d bytes)", len(uploads), sum(len(u.content) for u in uploads)
    )
    return uploads
