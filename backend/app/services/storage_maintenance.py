"""
Exposure Backend — Storage Maintenance
========================================

What:  Brings the photo store back in line with the database: finishes
       deletions interrupted by a crash and sweeps files no row refers to.
Why:   A delete stages files into .trash/ before its transaction commits.
       A process that dies in between leaves either rows pointing at
       trashed files or trash nobody will purge. Failed uploads and
       deleted places can also leave stray files behind.
How:   recover_staged_deletions() runs once at startup, before requests
       are served. cleanup_orphans() runs at startup and then every
       ORPHAN_CLEANUP_INTERVAL_HOURS from a background task, and can be
       triggered by an admin.
Who:   The application lifespan and POST /api/admin/storage/cleanup.

Orphan rules:
    - places/<id>/ whose place row is gone: the whole directory, once
      older than ORPHAN_FILE_AGE_MINUTES
    - a file in a live place directory that is neither a photo's original
      nor one of its variants, once older than ORPHAN_FILE_AGE_MINUTES
      (younger files may belong to an upload still in progress)
    - hidden files and non-numeric directories are never touched
    Rows pointing at missing files are left alone.
"""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.photo import Photo
from app.models.place import Place
from app.services.file_service import (
    PHOTO_VARIANTS,
    FileService,
    StagedDeletion,
    file_service,
    variant_file_name,
)

logger = logging.getLogger(__name__)


@dataclass
class CleanupStats:
    orphan_files: int = 0
    orphan_directories: int = 0
    dry_run: bool = False
    errors: List[str] = field(default_factory=list)


class StorageMaintenance:
    """Reconciles the file store with the places and photos tables."""

    def __init__(
        self,
        files: FileService = file_service,
        file_age_minutes: Optional[int] = None,
    ):
        self.files = files
        self.file_age_minutes = (
            settings.orphan_file_age_minutes if file_age_minutes is None else file_age_minutes
        )

    # ══════════════════════════════════════════════════════════════════════
    # Interrupted Deletions
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    async def _still_referenced(db: AsyncSession, staged: StagedDeletion) -> bool:
        if staged.file_name:
            query = select(Photo.id).where(
                Photo.place_id == staged.place_id, Photo.file_name == staged.file_name
            )
        else:
            query = select(Place.id).where(Place.id == staged.place_id)
        result = await db.execute(query)
        return result.first() is not None

    async def recover_staged_deletions(self, db: AsyncSession) -> Tuple[int, int]:
        """
        Settle every deletion left in the trash by a previous process.

        A stage whose row still exists belongs to a transaction that never
        committed: its files go back. Any other stage was committed (or is
        unreadable) and is purged.

        Must not run while deletes are in flight.

        Returns:
            (restored, purged)
        """
        restored = purged = 0
        for staged in self.files.leftover_stages():
            if staged.place_id is not None and await self._still_referenced(db, staged):
                self.files.restore(staged)
                restored += 1
            else:
                await self.files.purge(staged)
                purged += 1
        if restored or purged:
            logger.warning(
                "Recovered interrupted deletions: %d restored, %d purged", restored, purged
            )
        return restored, purged

    # ══════════════════════════════════════════════════════════════════════
    # Orphan Sweep
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def _expected_names(file_names: Set[str]) -> Set[str]:
        expected = set(file_names)
        for file_name in file_names:
            expected.update(variant_file_name(file_name, suffix) for suffix in PHOTO_VARIANTS)
        return expected

    def _remove(self, path: Path, stats: CleanupStats) -> bool:
        if stats.dry_run:
            return True
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            return True
        except OSError as e:
            logger.error("Failed to delete orphan %s: %s", path, str(e))
            stats.errors.append(f"{path.name}: {e}")
            return False

    @staticmethod
    def _older_than(path: Path, cutoff: float) -> bool:
        try:
            return path.stat().st_mtime < cutoff
        except OSError:
            return False

    async def cleanup_orphans(self, db: AsyncSession, dry_run: bool = False) -> CleanupStats:
        """
        Delete files and directories that no database row refers to.

        With dry_run the counts describe what would be deleted and nothing
        is touched.
        """
        stats = CleanupStats(dry_run=dry_run)
        mode = "[DRY RUN] " if dry_run else ""

        place_ids = set((await db.execute(select(Place.id))).scalars().all())
        rows = await db.execute(select(Photo.place_id, Photo.file_name))
        names_by_place = {}
        for place_id, file_name in rows.all():
            names_by_place.setdefault(place_id, set()).add(file_name)

        # Anything newer may belong to a place or upload created after the reads above
        cutoff = time.time() - self.file_age_minutes * 60

        for entry in sorted(self.files.places_root.iterdir()):
            if not entry.is_dir() or not entry.name.isdigit():
                continue
            place_id = int(entry.name)

            if place_id not in place_ids:
                if not self._older_than(entry, cutoff):
                    continue
                logger.info("%sDeleting directory of deleted place %s", mode, place_id)
                if self._remove(entry, stats):
                    stats.orphan_directories += 1
                continue

            expected = self._expected_names(names_by_place.get(place_id, set()))
            for path in sorted(entry.iterdir()):
                if path.name.startswith(".") or path.name in expected or not path.is_file():
                    continue
                if not self._older_than(path, cutoff):
                    continue
                logger.info("%sDeleting orphan file %s of place %s", mode, path.name, place_id)
                if self._remove(path, stats):
                    stats.orphan_files += 1

        logger.info(
            "%sOrphan cleanup complete: %d files, %d directories",
            mode,
            stats.orphan_files,
            stats.orphan_directories,
        )
        if stats.errors:
            logger.warning("Orphan cleanup hit %d errors", len(stats.errors))
        return stats

    async def run_periodically(
        self, session_factory: async_sessionmaker, interval_hours: float, dry_run: bool = False
    ) -> None:
        """Sweep forever; cancelled by the lifespan at shutdown."""
        while True:
            await asyncio.sleep(interval_hours * 3600)
            try:
                async with session_factory() as db:
                    await self.cleanup_orphans(db, dry_run=dry_run)
            except Exception as e:
                # Next run retries; the task itself must survive
                logger.error("Scheduled orphan cleanup failed: %s", str(e), exc_info=True)


# ── Singleton Instance ────────────────────────────────────────────────────
storage_maintenance = StorageMaintenance()
