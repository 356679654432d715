"""
Exposure Backend — Storage Maintenance Tests
==============================================

What we test:
    ✅ Deletions interrupted before commit are restored on the next start
    ✅ Deletions that committed but were never purged are purged
    ✅ Orphan files and directories of deleted places are swept
    ✅ Originals, variants, hidden files and young files are kept
    ✅ dry_run reports without deleting
"""

import os
import time

import pytest
from sqlalchemy import delete

from app.models.photo import Photo
from app.models.place import Place
from app.services.file_service import STAGE_MANIFEST, FileService, variant_file_name
from app.services.storage_maintenance import StorageMaintenance

HOUR_AGO = time.time() - 3600


def age(path, when=HOUR_AGO):
    os.utime(path, (when, when))


def restarted(storage_root):
    """What a new process would build over the same storage root."""
    return StorageMaintenance(files=FileService(storage_root=storage_root), file_age_minutes=30)


async def first_photo(photos, db, place_id, make_upload):
    await photos.upload(db, place_id, [make_upload()])
    return (await photos.get_photos(db, place_id))[0].file_name


class TestRecoverStagedDeletions:
    """Trash left behind by a process that stopped mid-delete."""

    @pytest.mark.asyncio
    async def test_uncommitted_photo_delete_is_restored(
        self, db, place_id, photos, files, storage_root, make_upload
    ):
        file_name = await first_photo(photos, db, place_id, make_upload)
        original = files.photo_path(place_id, file_name)
        # Files staged, then the process dies before the row delete commits
        files.stage_photo_files(place_id, file_name)
        await db.rollback()
        assert not original.exists()

        assert await restarted(storage_root).recover_staged_deletions(db) == (1, 0)

        assert original.exists()
        assert list(files.trash_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_committed_photo_delete_is_purged(
        self, db, place_id, photos, files, storage_root, make_upload
    ):
        file_name = await first_photo(photos, db, place_id, make_upload)
        files.stage_photo_files(place_id, file_name)
        await db.execute(delete(Photo).where(Photo.place_id == place_id))
        await db.commit()

        assert await restarted(storage_root).recover_staged_deletions(db) == (0, 1)

        assert not files.photo_path(place_id, file_name).exists()
        assert list(files.trash_root.iterdir()) == []

    @pytest.mark.asyncio
    async def test_uncommitted_place_delete_is_restored(
        self, db, place_id, photos, files, storage_root, make_upload
    ):
        file_name = await first_photo(photos, db, place_id, make_upload)
        files.stage_place_directory(place_id)

        assert await restarted(storage_root).recover_staged_deletions(db) == (1, 0)

        assert files.photo_path(place_id, file_name).exists()

    @pytest.mark.asyncio
    async def test_unreadable_manifest_is_purged(self, db, place_id, files, storage_root):
        await files.write_photo(place_id, "a.jpg", b"orig")
        staged = files.stage_photo_files(place_id, "a.jpg")
        (staged.token_dir / STAGE_MANIFEST).write_text("{not json", encoding="utf-8")

        assert await restarted(storage_root).recover_staged_deletions(db) == (0, 1)
        assert not staged.token_dir.exists()

    def test_leftover_stage_is_rebuilt_from_manifest(self, files, storage_root):
        staged = files.stage_place_directory(7)

        (rebuilt,) = FileService(storage_root=storage_root).leftover_stages()

        assert rebuilt.token_dir == staged.token_dir
        assert (rebuilt.place_id, rebuilt.file_name) == (7, None)


class TestCleanupOrphans:
    """Files no row refers to."""

    @pytest.mark.asyncio
    async def test_sweeps_unreferenced_files_only(
        self, db, place_id, photos, files, make_upload
    ):
        file_name = await first_photo(photos, db, place_id, make_upload)
        variant = await files.write_photo(place_id, variant_file_name(file_name, "thumb"), b"v")
        stray = await files.write_photo(place_id, "leftover.jpg", b"x")
        young = await files.write_photo(place_id, "uploading.jpg", b"x")
        hidden = files.place_dir(place_id) / ".keep"
        hidden.write_bytes(b"")
        for path in (files.photo_path(place_id, file_name), variant, stray, hidden):
            age(path)

        stats = await StorageMaintenance(files=files, file_age_minutes=30).cleanup_orphans(db)

        assert (stats.orphan_files, stats.orphan_directories) == (1, 0)
        assert not stray.exists()
        assert files.photo_path(place_id, file_name).exists()
        assert variant.exists() and young.exists() and hidden.exists()

    @pytest.mark.asyncio
    async def test_sweeps_directories_of_deleted_places(self, db, place_id, files):
        gone = files.places_root / "777"
        gone.mkdir()
        age(gone)
        recent = files.places_root / "778"
        recent.mkdir()
        other = files.places_root / "not-a-place"
        other.mkdir()
        age(other)

        stats = await StorageMaintenance(files=files, file_age_minutes=30).cleanup_orphans(db)

        assert stats.orphan_directories == 1
        assert not gone.exists()
        assert recent.exists() and other.exists()

    @pytest.mark.asyncio
    async def test_dry_run_deletes_nothing(self, db, place_id, files):
        stray = await files.write_photo(place_id, "leftover.jpg", b"x")
        age(stray)
        await db.execute(delete(Place).where(Place.id == place_id))
        await db.commit()
        age(files.place_dir(place_id))

        stats = await StorageMaintenance(files=files, file_age_minutes=30).cleanup_orphans(
            db, dry_run=True
        )

        assert stats.dry_run
        assert stats.orphan_directories == 1
        assert files.place_dir(place_id).exists() and stray.exists()
