"""
Exposure Backend — File Storage Service
=========================================

What:  Upload validation, path safety and the on-disk photo layout.
Why:   Centralizes every file system operation behind one set of checks so
       PhotoService never builds a path from unchecked input.
How:   Validates each upload (name, size, extension, declared content type,
       decoded image format and dimensions), writes with aiofiles into
       per-place directories, and deletes in two steps (stage, then purge)
       so a failed database transaction can put files back.
Who:   PhotoService (upload, delete, place deletion), ThumbnailQueue
       (variant paths), the public file route.
When:  Validation runs before the place lock is taken; writes and staging
       run inside it.

Directory Structure:
    storage/
    ├── places/
    │   └── 42/
    │       ├── 9f1c...e2.jpg            original
    │       ├── 9f1c...e2-thumb.webp     variants (ThumbnailQueue)
    │       ├── 9f1c...e2-small.webp
    │       └── 9f1c...e2-medium.webp
    └── .trash/
        └── <token>/                     staged deletions awaiting commit
            ├── manifest.json            {"place_id": 42, "file_name": "9f1c...e2.jpg"}
            └── 0-9f1c...e2.jpg

Security Model:
    1. File name check: no empty names, no "..", "/" or "\\", max 255 chars
    2. Extension and declared MIME type allow-lists
    3. Size check (empty and oversized files rejected)
    4. Pillow decodes the header: the real format must be JPEG, PNG or WebP
       and the dimensions must stay inside the configured bounds
    5. Stored names are "<uuid><ext>"; no user input reaches the file system
    6. Every resolved path must stay under the storage root
"""

import asyncio
import io
import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles
from PIL import Image, UnidentifiedImageError

from app.config import settings
from app.exceptions import FileStorageError, ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}

# What: Pillow format name → stored extension (.jpeg is stored as .jpg)
FORMAT_EXTENSIONS = {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp"}

MAX_FILE_NAME_LENGTH = 255
MAX_PLACE_ID = 999_999

# ── Derived Variants ──────────────────────────────────────────────────────
# suffix → longest edge in pixels
PHOTO_VARIANTS = {"thumb": 200, "small": 400, "medium": 800}
VARIANT_EXTENSION = ".webp"

PLACES_DIR = "places"
TRASH_DIR = ".trash"
STAGE_MANIFEST = "manifest.json"


def variant_file_name(file_name: str, suffix: str) -> str:
    """'abc.jpg', 'thumb' → 'abc-thumb.webp'"""
    return f"{Path(file_name).stem}-{suffix}{VARIANT_EXTENSION}"


@dataclass
class UploadedFile:
    """One file of a multipart upload, fully read into memory."""

    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class ValidatedImage:
    """An upload that passed every check, with what Pillow found in it."""

    upload: UploadedFile
    extension: str
    image_format: str
    width: int
    height: int


@dataclass
class StagedDeletion:
    """
    Files moved into the trash, remembered so they can be restored or purged.

    `moves` pairs each original location with its staged location.
    `file_name` is None when the whole place directory was staged.
    """

    token_dir: Path
    place_id: Optional[int] = None
    file_name: Optional[str] = None
    moves: List[Tuple[Path, Path]] = field(default_factory=list)


class FileService:
    """
    Manages photo validation, storage and removal.

    Lifecycle of a stored photo:
        1. validate_files() checks the whole batch; nothing is written yet
        2. write_photo() stores each file as <uuid><ext> in the place directory
        3. remove_files() undoes a batch whose database insert failed
        4. stage_photo_files() / stage_place_directory() move files aside
           before a delete; restore() or purge() finishes the job once the
           transaction outcome is known
    """

    def __init__(self, storage_root: Optional[str] = None):
        """
        Args:
            storage_root: Override the default storage path (used in tests).
                          If None, uses settings.storage_root.
        """
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.places_root = self.storage_root / PLACES_DIR
        self.trash_root = self.storage_root / TRASH_DIR
        self.places_root.mkdir(parents=True, exist_ok=True)
        self.trash_root.mkdir(parents=True, exist_ok=True)
        logger.info("FileService initialized with storage_root=%s", self.storage_root)

    # ══════════════════════════════════════════════════════════════════════
    # Upload Validation
    # ══════════════════════════════════════════════════════════════════════

    def validate_file_count(self, count: int) -> None:
        if count == 0:
            raise ValidationError(message="No files provided", field="files")
        if count > settings.max_files_per_upload:
            raise ValidationError(
                message=(
                    f"Too many files ({count}). "
                    f"Maximum allowed: {settings.max_files_per_upload}"
                ),
                field="files",
            )

    @staticmethod
    def _check_file_name(filename: Optional[str]) -> Optional[str]:
        if not filename:
            return "Invalid file name"
        if ".." in filename or "/" in filename or "\\" in filename:
            return "File name contains invalid characters (possible path traversal attempt)"
        if len(filename) > MAX_FILE_NAME_LENGTH:
            return f"File name is too long (max {MAX_FILE_NAME_LENGTH} characters)"
        return None

    @staticmethod
    def _check_size(content: bytes) -> Optional[str]:
        if not content:
            return "File is empty"
        # Uploads are read at most one byte past the limit, so the real size is unknown
        if len(content) > settings.max_file_size:
            return f"File exceeds maximum allowed size ({settings.max_file_size_mb} MB)"
        return None

    @staticmethod
    def _check_extension(filename: str) -> Optional[str]:
        extension = Path(filename).suffix.lower()
        if not extension:
            return "File has no extension"
        if extension not in ALLOWED_EXTENSIONS:
            return (
                f"File extension '{extension}' is not allowed. "
                f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
            )
        return None

    @staticmethod
    def _check_content_type(content_type: Optional[str]) -> Optional[str]:
        if not content_type:
            return "File MIME type is missing"
        if content_type.lower() not in ALLOWED_MIME_TYPES:
            return (
                f"MIME type '{content_type}' is not allowed. "
                f"Allowed: {', '.join(sorted(ALLOWED_MIME_TYPES))}"
            )
        return None

    @staticmethod
    def inspect_image(content: bytes) -> Tuple[str, int, int]:
        """
        Decode the image header with Pillow.

        Returns:
            (format, width, height), format being one of FORMAT_EXTENSIONS

        Raises:
            ValueError with a client-safe message
        """
        try:
            with Image.open(io.BytesIO(content)) as image:
                image_format = image.format
                width, height = image.size
                image.verify()
        except Image.DecompressionBombError:
            raise ValueError("Image has too many pixels")
        except (UnidentifiedImageError, OSError, SyntaxError):
            raise ValueError(
                "File content does not match any valid image format (invalid magic number)"
            )

        if image_format not in FORMAT_EXTENSIONS:
            raise ValueError(f"Image format '{image_format}' is not allowed")
        if width > settings.max_image_width or height > settings.max_image_height:
            raise ValueError(
                f"Image dimensions {width}x{height} exceed the maximum of "
                f"{settings.max_image_width}x{settings.max_image_height}"
            )
        if width * height > settings.max_image_pixels:
            raise ValueError(
                f"Image has {width * height} pixels; maximum is {settings.max_image_pixels}"
            )
        return image_format, width, height

    def validate_file(self, upload: UploadedFile) -> ValidatedImage:
        """
        Run every check on one upload, cheapest first.

        Raises:
            ValueError with the first failure message
        """
        for problem in (
            self._check_file_name(upload.filename),
            self._check_size(upload.content),
            self._check_extension(upload.filename),
            self._check_content_type(upload.content_type),
        ):
            if problem:
                raise ValueError(problem)

        image_format, width, height = self.inspect_image(upload.content)
        return ValidatedImage(
            upload=upload,
            extension=FORMAT_EXTENSIONS[image_format],
            image_format=image_format,
            width=width,
            height=height,
        )

    def validate_files(self, uploads: Sequence[UploadedFile]) -> List[ValidatedImage]:
        """
        Validate a whole batch; any failing file rejects all of them.

        Raises:
            ValidationError whose `errors` lists "File <n> (<name>): <reason>"
            for every failing file
        """
        self.validate_file_count(len(uploads))

        validated: List[ValidatedImage] = []
        errors: List[str] = []
        for index, upload in enumerate(uploads, start=1):
            try:
                validated.append(self.validate_file(upload))
            except ValueError as e:
                errors.append(f"File {index} ({upload.filename}): {e}")

        if errors:
            raise ValidationError(
                message="; ".join(errors),
                field="files",
                errors=errors,
            )
        return validated

    # ══════════════════════════════════════════════════════════════════════
    # Path Safety
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def validate_id(value: int, name: str = "place_id") -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(message=f"{name} must be a valid integer", field=name)
        if not 1 <= value <= MAX_PLACE_ID:
            raise ValidationError(
                message=f"{name} must be between 1 and {MAX_PLACE_ID}", field=name
            )
        return value

    @staticmethod
    def sanitize_path_component(component: Optional[str]) -> str:
        """
        Reject a single path segment that could escape its directory.

        Raises:
            ValidationError("Invalid path")
        """
        reason = None
        if not component:
            reason = "empty"
        elif ".." in component:
            reason = "contains '..'"
        elif "/" in component or "\\" in component:
            reason = "contains a separator"
        elif ":" in component:
            reason = "contains a colon"
        elif component.startswith("."):
            reason = "starts with a dot"

        if reason:
            logger.warning("Rejected path component %r: %s", component, reason)
            raise ValidationError(message="Invalid path", field="path")
        return component

    def _ensure_within_root(self, path: Path) -> Path:
        resolved = path.resolve()
        if resolved != self.storage_root and self.storage_root not in resolved.parents:
            logger.warning("Blocked path outside storage root: %s", resolved)
            raise ValidationError(message="Access denied", field="path")
        return resolved

    def place_dir(self, place_id: int) -> Path:
        place_id = self.validate_id(place_id)
        return self._ensure_within_root(self.places_root / str(place_id))

    def photo_path(self, place_id: int, file_name: str) -> Path:
        file_name = self.sanitize_path_component(file_name)
        return self._ensure_within_root(self.place_dir(place_id) / file_name)

    def variant_paths(self, place_id: int, file_name: str) -> List[Path]:
        return [
            self.photo_path(place_id, variant_file_name(file_name, suffix))
            for suffix in PHOTO_VARIANTS
        ]

    # ══════════════════════════════════════════════════════════════════════
    # Writing
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def new_file_name(extension: str) -> str:
        """Fresh stored name; '.jpeg' is normalised to '.jpg'."""
        extension = extension.lower()
        if extension == ".jpeg":
            extension = ".jpg"
        return f"{uuid.uuid4().hex}{extension}"

    async def write_photo(self, place_id: int, file_name: str, content: bytes) -> Path:
        """
        Write one photo into its place directory.

        Raises:
            FileStorageError on any OS-level failure (disk full, permissions)
        """
        path = self.photo_path(place_id, file_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store file at %s: %s", path, str(e))
            raise FileStorageError(
                message="Failed to save uploaded photo. Please try again.",
                context={"path": str(path), "os_error": str(e)},
            )
        logger.info("Stored %s for place %s (%d bytes)", file_name, place_id, len(content))
        return path

    async def remove_files(self, paths: Sequence[Path]) -> None:
        """
        Best-effort removal of files written by a batch that was rolled back.

        Failures are logged, never raised: the caller is already unwinding
        another error.
        """
        for path in paths:
            try:
                path.unlink(missing_ok=True)
                logger.debug("Removed %s", path.name)
            except OSError as e:
                logger.warning("Failed to remove %s: %s", path, str(e))

    # ══════════════════════════════════════════════════════════════════════
    # Staged Deletion
    # ══════════════════════════════════════════════════════════════════════

    def _new_stage(self, place_id: int, file_name: Optional[str] = None) -> StagedDeletion:
        """
        Create a token directory and record what it will hold.

        The manifest is written before anything moves, so a process that
        dies mid-delete leaves enough behind for recover_staged_deletions.
        """
        token_dir = self.trash_root / uuid.uuid4().hex
        token_dir.mkdir(parents=True)
        manifest = {"place_id": place_id, "file_name": file_name}
        (token_dir / STAGE_MANIFEST).write_text(json.dumps(manifest), encoding="utf-8")
        return StagedDeletion(token_dir=token_dir, place_id=place_id, file_name=file_name)

    def _stage_move(self, staged: StagedDeletion, source: Path) -> None:
        target = staged.token_dir / f"{len(staged.moves)}-{source.name}"
        os.replace(source, target)
        staged.moves.append((source, target))

    def stage_photo_files(self, place_id: int, file_name: str) -> StagedDeletion:
        """
        Move a photo and its variants into the trash.

        Missing files are skipped. If a move fails, files already moved are
        put back before FileStorageError is raised.
        """
        paths = [self.photo_path(place_id, file_name)] + self.variant_paths(place_id, file_name)
        staged = self._new_stage(place_id, file_name)
        try:
            for path in paths:
                if path.exists():
                    self._stage_move(staged, path)
        except OSError as e:
            self.restore(staged)
            logger.error("Failed to stage %s for deletion: %s", file_name, str(e))
            raise FileStorageError(
                message="Failed to delete photo files. Please try again.",
                context={"place_id": place_id, "file_name": file_name, "os_error": str(e)},
            )
        return staged

    def stage_place_directory(self, place_id: int) -> StagedDeletion:
        """Move a whole place directory into the trash (no-op if it does not exist)."""
        directory = self.place_dir(place_id)
        staged = self._new_stage(place_id)
        if directory.exists():
            try:
                self._stage_move(staged, directory)
            except OSError as e:
                self.restore(staged)
                logger.error("Failed to stage directory of place %s: %s", place_id, str(e))
                raise FileStorageError(
                    message="Failed to delete place files. Please try again.",
                    context={"place_id": place_id, "os_error": str(e)},
                )
        return staged

    def restore(self, staged: StagedDeletion) -> None:
        """Move staged files back to where they came from."""
        for source, target in reversed(staged.moves):
            try:
                source.parent.mkdir(parents=True, exist_ok=True)
                os.replace(target, source)
            except OSError as e:
                logger.error("Failed to restore %s from trash: %s", source, str(e))
        staged.moves.clear()
        shutil.rmtree(staged.token_dir, ignore_errors=True)

    async def purge(self, staged: StagedDeletion) -> None:
        """Permanently delete staged files once the database change is committed."""
        await asyncio.to_thread(shutil.rmtree, staged.token_dir, True)
        staged.moves.clear()

    def leftover_stages(self) -> List[StagedDeletion]:
        """
        Rebuild the StagedDeletion of every token directory still in the trash.

        Only meaningful at startup: while requests are being served, the
        trash also holds deletions whose transaction is still open. Tokens
        without a readable manifest come back with place_id None.
        """
        stages = []
        for token_dir in sorted(p for p in self.trash_root.iterdir() if p.is_dir()):
            staged = StagedDeletion(token_dir=token_dir)
            try:
                manifest = json.loads((token_dir / STAGE_MANIFEST).read_text(encoding="utf-8"))
                staged.place_id = self.validate_id(manifest["place_id"])
                staged.file_name = manifest.get("file_name")
            except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
                logger.warning("Unreadable trash manifest in %s: %s", token_dir.name, str(e))
                stages.append(staged)
                continue

            # Photo stages came from the place directory, place stages from places/
            origin = self.place_dir(staged.place_id) if staged.file_name else self.places_root
            for target in sorted(token_dir.iterdir()):
                if target.name == STAGE_MANIFEST:
                    continue
                _, _, original_name = target.name.partition("-")
                staged.moves.append((origin / original_name, target))
            stages.append(staged)
        return stages


# ── Singleton Instance ────────────────────────────────────────────────────
file_service = FileService()
