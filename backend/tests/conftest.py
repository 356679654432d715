"""
Exposure Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Each test gets its own SQLite database (aiosqlite) and storage root
       under tmp_path. Services are built with explicit collaborators, so no
       test depends on the module-level singletons.

Fixture Hierarchy:
    engine → session_factory → db
    storage_root → files
    guard, scanner, thumbnails (MagicMock) → photos → places
    auth: AuthenticationService with a fast hasher
    make_image / make_upload: Pillow-generated image bytes
"""

import io
import os
import tempfile
from unittest.mock import MagicMock

# Must run before any app import: settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="exposure_test_")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["ADMIN_USERS"] = ""

import pytest
import pytest_asyncio
from argon2 import PasswordHasher
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import app.models  # noqa: F401
from app.database import Base, build_engine
from app.models.place import Place
from app.services.auth_service import AuthenticationService, LoginRateLimiter
from app.services.concurrency import ConcurrencyGuard
from app.services.file_service import FileService, UploadedFile
from app.services.malware_scanner import PassthroughScanner
from app.services.photo_service import PhotoService
from app.services.place_service import PlaceService
from app.services.slug_generator import SlugGenerator
from app.services.thumbnail_service import ThumbnailQueue


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh file-backed SQLite database per test (shared by all sessions)."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ══════════════════════════════════════════════════════════════════════════
# Storage & Services
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    root.mkdir()
    return str(root)


@pytest.fixture
def files(storage_root):
    return FileService(storage_root=storage_root)


@pytest.fixture
def guard():
    return ConcurrencyGuard()


@pytest.fixture
def scanner():
    return PassthroughScanner()


@pytest.fixture
def thumbnails():
    """Stands in for the background queue; tests assert on enqueue calls."""
    return MagicMock(spec=ThumbnailQueue)


@pytest.fixture
def photos(guard, files, scanner, thumbnails):
    return PhotoService(
        guard=guard,
        files=files,
        scanner=scanner,
        thumbnails=thumbnails,
        slugs=SlugGenerator(),
    )


@pytest.fixture
def places(photos):
    return PlaceService(photos=photos, slugs=SlugGenerator())


@pytest.fixture
def auth():
    """Argon2 tuned down so each hash takes milliseconds."""
    return AuthenticationService(
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1),
        limiter=LoginRateLimiter(max_attempts=5, window_seconds=60, lockout_seconds=300),
        issuer="Exposure",
    )


# ══════════════════════════════════════════════════════════════════════════
# Sample Data
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def make_image():
    """
    Build real image bytes with Pillow.

    Usage:
        content = make_image("PNG", (40, 30))
    """

    def _make(image_format: str = "JPEG", size=(64, 48), color=(200, 120, 40)) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", size, color).save(buffer, format=image_format)
        return buffer.getvalue()

    return _make


@pytest.fixture
def make_upload(make_image):
    def _make(filename: str = "beach.jpg", image_format: str = "JPEG", **kwargs) -> UploadedFile:
        content_type = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}
        return UploadedFile(
            filename=filename,
            content=make_image(image_format, **kwargs),
            content_type=content_type.get(image_format),
        )

    return _make


@pytest_asyncio.fixture
async def place_id(db):
    """Id of a place row inserted directly, without going through PlaceService."""
    row = Place(
        slug="abcdefgh23",
        country_slug="portugal",
        location_slug="lisbon",
        name_slug="alfama",
        name="Alfama",
        location="Lisbon",
        country="Portugal",
        start_date="2024-06-03",
        end_date="2024-06-10",
    )
    db.add(row)
    await db.commit()
    return row.id
