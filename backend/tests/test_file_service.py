"""
Exposure Backend — File Service Unit Tests
============================================

What:  Tests for FileService validation, path safety and staged deletion.
Why:   Upload validation and path handling are the security boundary of
       the file store.
How:   Real image bytes from Pillow, a temporary storage root per test.

Test Strategy:
    ✅ Allowed and rejected extensions, MIME types, sizes
    ✅ Content must decode as an allowed image format
    ✅ Batch validation reports every failing file
    ✅ Path components cannot escape the storage root
    ✅ Staged deletion can be restored or purged
"""

import os

import pytest

from app.exceptions import FileStorageError, ValidationError
from app.services.file_service import (
    FileService,
    UploadedFile,
    variant_file_name,
)


class TestFileValidation:
    """Tests for per-file validation."""

    @pytest.fixture(autouse=True)
    def _service(self, files):
        self.service = files

    def test_accepts_jpeg_png_webp(self, make_upload):
        for name, fmt in (("a.jpg", "JPEG"), ("b.png", "PNG"), ("c.webp", "WEBP")):
            image = self.service.validate_file(make_upload(name, fmt, size=(30, 20)))
            assert (image.width, image.height) == (30, 20)

    def test_extension_check_is_case_insensitive(self, make_upload):
        assert self.service.validate_file(make_upload("PHOTO.JPEG")).extension == ".jpg"

    def test_extension_follows_decoded_format(self, make_upload):
        """A PNG named .jpg is stored as .png."""
        upload = make_upload("mislabelled.jpg", "PNG")
        upload.content_type = "image/jpeg"
        assert self.service.validate_file(upload).extension == ".png"

    @pytest.mark.parametrize("name", ["animation.gif", "notes.pdf", "run.exe", "noext"])
    def test_rejects_extensions(self, make_upload, name):
        with pytest.raises(ValueError):
            self.service.validate_file(make_upload(name))

    def test_rejects_mime_type(self, make_upload):
        upload = make_upload("a.jpg")
        upload.content_type = "application/pdf"
        with pytest.raises(ValueError, match="MIME type"):
            self.service.validate_file(upload)

    def test_rejects_missing_mime_type(self, make_upload):
        upload = make_upload("a.jpg")
        upload.content_type = None
        with pytest.raises(ValueError, match="MIME type is missing"):
            self.service.validate_file(upload)

    def test_rejects_empty_file(self):
        upload = UploadedFile(filename="a.jpg", content=b"", content_type="image/jpeg")
        with pytest.raises(ValueError, match="empty"):
            self.service.validate_file(upload)

    def test_rejects_oversized_file(self):
        content = b"\xff\xd8" + b"\x00" * (10 * 1024 * 1024)
        upload = UploadedFile(filename="big.jpg", content=content, content_type="image/jpeg")
        with pytest.raises(ValueError, match="exceeds maximum"):
            self.service.validate_file(upload)

    def test_rejects_non_image_content(self):
        upload = UploadedFile(
            filename="fake.jpg", content=b"%PDF-1.4 not an image", content_type="image/jpeg"
        )
        with pytest.raises(ValueError, match="valid image format"):
            self.service.validate_file(upload)

    def test_rejects_disallowed_image_format(self, make_image):
        upload = UploadedFile(
            filename="a.png", content=make_image("GIF"), content_type="image/png"
        )
        with pytest.raises(ValueError, match="not allowed"):
            self.service.validate_file(upload)

    @pytest.mark.parametrize("name", ["../evil.jpg", "dir/evil.jpg", "dir\\evil.jpg"])
    def test_rejects_traversal_in_file_name(self, make_upload, name):
        with pytest.raises(ValueError, match="path traversal"):
            self.service.validate_file(make_upload(name))


class TestBatchValidation:
    """A single bad file rejects the whole batch."""

    @pytest.fixture(autouse=True)
    def _service(self, files):
        self.service = files

    def test_reports_every_failing_file(self, make_upload):
        uploads = [make_upload("ok.jpg"), make_upload("bad.gif"), make_upload("bad.bmp")]
        with pytest.raises(ValidationError) as exc_info:
            self.service.validate_files(uploads)
        errors = exc_info.value.errors
        assert len(errors) == 2
        assert errors[0].startswith("File 2 (bad.gif):")
        assert errors[1].startswith("File 3 (bad.bmp):")

    def test_empty_batch_rejected(self):
        with pytest.raises(ValidationError, match="No files"):
            self.service.validate_files([])

    def test_too_many_files_rejected(self, make_upload):
        upload = make_upload("a.jpg", size=(2, 2))
        with pytest.raises(ValidationError, match="Too many files"):
            self.service.validate_files([upload] * 51)


class TestPathSafety:
    """Every path must stay under the storage root."""

    @pytest.fixture(autouse=True)
    def _service(self, files):
        self.service = files

    @pytest.mark.parametrize(
        "component", ["", "..", "a/../b", "a/b", "a\\b", "c:evil", ".hidden"]
    )
    def test_sanitize_rejects(self, component):
        with pytest.raises(ValidationError, match="Invalid path"):
            self.service.sanitize_path_component(component)

    def test_sanitize_accepts_plain_name(self):
        assert self.service.sanitize_path_component("abc123.jpg") == "abc123.jpg"

    @pytest.mark.parametrize("place_id", [0, -1, 1_000_000, True])
    def test_place_id_bounds(self, place_id):
        with pytest.raises(ValidationError):
            self.service.place_dir(place_id)

    def test_photo_path_layout(self):
        path = self.service.photo_path(12, "abc.jpg")
        assert path == self.service.storage_root / "places" / "12" / "abc.jpg"

    def test_variant_names(self):
        assert variant_file_name("abc.jpg", "thumb") == "abc-thumb.webp"
        names = [p.name for p in self.service.variant_paths(1, "abc.jpg")]
        assert names == ["abc-thumb.webp", "abc-small.webp", "abc-medium.webp"]

    def test_new_file_name_normalizes_jpeg(self):
        name = self.service.new_file_name(".JPEG")
        assert name.endswith(".jpg")
        assert len(name) == 32 + 4


class TestWriteAndStaging:
    """Writing photos and reversible deletion."""

    @pytest.fixture(autouse=True)
    def _service(self, files):
        self.service = files

    @pytest.mark.asyncio
    async def test_write_photo(self):
        path = await self.service.write_photo(5, "a.jpg", b"data")
        assert path.read_bytes() == b"data"

    @pytest.mark.asyncio
    async def test_write_failure_raises_file_storage_error(self):
        # A regular file where the place directory should be
        self.service.places_root.joinpath("6").write_bytes(b"")
        with pytest.raises(FileStorageError):
            await self.service.write_photo(6, "a.jpg", b"data")

    @pytest.mark.asyncio
    async def test_stage_photo_then_restore(self):
        photo = await self.service.write_photo(1, "a.jpg", b"orig")
        thumb = await self.service.write_photo(1, "a-thumb.webp", b"thumb")

        staged = self.service.stage_photo_files(1, "a.jpg")
        assert not photo.exists() and not thumb.exists()

        self.service.restore(staged)
        assert photo.read_bytes() == b"orig"
        assert thumb.read_bytes() == b"thumb"
        assert not staged.token_dir.exists()

    @pytest.mark.asyncio
    async def test_stage_photo_then_purge(self):
        photo = await self.service.write_photo(1, "a.jpg", b"orig")
        staged = self.service.stage_photo_files(1, "a.jpg")
        await self.service.purge(staged)
        assert not photo.exists()
        assert not staged.token_dir.exists()

    @pytest.mark.asyncio
    async def test_stage_place_directory_then_restore(self):
        photo = await self.service.write_photo(2, "a.jpg", b"orig")
        staged = self.service.stage_place_directory(2)
        assert not self.service.place_dir(2).exists()
        self.service.restore(staged)
        assert photo.read_bytes() == b"orig"

    def test_stage_missing_directory_is_noop(self):
        staged = self.service.stage_place_directory(99)
        assert staged.moves == []

    @pytest.mark.asyncio
    async def test_remove_files_ignores_missing(self, tmp_path):
        existing = await self.service.write_photo(3, "a.jpg", b"x")
        await self.service.remove_files([existing, tmp_path / "missing.jpg"])
        assert not os.path.exists(existing)
