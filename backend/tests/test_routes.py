"""
Exposure Backend — API Route Tests
====================================

What:  End-to-end tests through the ASGI app (no server, no network).
How:   httpx.AsyncClient over ASGITransport. The database session and every
       service are swapped through app.dependency_overrides so each test
       runs against its own SQLite file and storage root.

What we test:
    ✅ Health and public listings, error body shape
    ✅ Admin routes require a session; login, logout, lockout
    ✅ Place and photo management round trip over HTTP
    ✅ Validation failures map to 400, unknown resources to 404
    ✅ TOTP enrollment endpoints
    ✅ Upload size bound while parsing, storage cleanup endpoint
"""

import io
import os

import pyotp
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.datastructures import UploadFile

from app.config import settings
from app.database import get_db_session
from app.dependencies import (
    get_auth_service,
    get_file_service,
    get_photo_service,
    get_place_service,
    get_storage_maintenance,
    get_thumbnail_queue,
    read_uploads,
)
from app.main import create_app
from app.services.storage_maintenance import StorageMaintenance

PASSWORD = "admin password"
PLACE = {
    "name": "Alfama",
    "location": "Lisbon",
    "country": "Portugal",
    "start_date": "2024-06-03",
    "end_date": "2024-06-10",
}


@pytest_asyncio.fixture
async def client(session_factory, places, photos, files, auth, thumbnails):
    app = create_app()

    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_db
    app.dependency_overrides[get_place_service] = lambda: places
    app.dependency_overrides[get_photo_service] = lambda: photos
    app.dependency_overrides[get_file_service] = lambda: files
    app.dependency_overrides[get_auth_service] = lambda: auth
    app.dependency_overrides[get_thumbnail_queue] = lambda: thumbnails
    app.dependency_overrides[get_storage_maintenance] = lambda: StorageMaintenance(files=files)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def admin(client, db, auth):
    """The client, logged in as an administrator."""
    await auth.create_admin_user(db, "admin", PASSWORD)
    response = await client.post(
        "/api/admin/login", json={"username": "admin", "password": PASSWORD}
    )
    assert response.status_code == 200
    return client


async def create_place(client, **overrides):
    response = await client.post("/api/admin/places", json={**PLACE, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


async def upload(client, place_id, make_image, count=2):
    files = [
        ("files", (f"photo{i}.jpg", make_image("JPEG", size=(20 + i, 20)), "image/jpeg"))
        for i in range(count)
    ]
    return await client.post(f"/api/admin/places/{place_id}/photos", files=files)


class TestPublic:
    """Routes that need no session."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"

    @pytest.mark.asyncio
    async def test_empty_listing(self, client):
        response = await client.get("/api/places")
        assert response.status_code == 200
        assert response.json() == {"places": [], "total_favorites": 0}
        assert response.headers["Cache-Control"] == "public, max-age=60"

    @pytest.mark.asyncio
    async def test_unknown_slug_error_shape(self, client):
        response = await client.get("/api/places/nosuchslug")
        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "not_found"
        assert body["request_id"] == response.headers["X-Request-ID"]
        assert "Traceback" not in response.text

    @pytest.mark.asyncio
    async def test_client_request_id_is_echoed(self, client):
        response = await client.get("/api/places", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"

    @pytest.mark.asyncio
    async def test_file_name_traversal_rejected(self, client):
        response = await client.get("/api/files/places/1/.hidden")
        assert response.status_code == 400


class TestSession:
    """Login, logout and lockout."""

    @pytest.mark.asyncio
    async def test_admin_routes_require_login(self, client):
        response = await client.post("/api/admin/places", json=PLACE)
        assert response.status_code == 401
        assert response.json()["error"] == "authentication_error"

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, db, auth):
        await auth.create_admin_user(db, "admin", PASSWORD)
        response = await client.post(
            "/api/admin/login", json={"username": "admin", "password": "not the password"}
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"

    @pytest.mark.asyncio
    async def test_logout_ends_session(self, admin):
        assert (await admin.post("/api/admin/logout")).status_code == 204
        response = await admin.post("/api/admin/places", json=PLACE)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_lockout_returns_429(self, client, db, auth):
        await auth.create_admin_user(db, "admin", PASSWORD)
        body = {"username": "admin", "password": "not the password"}
        for _ in range(5):
            assert (await client.post("/api/admin/login", json=body)).status_code == 401

        response = await client.post(
            "/api/admin/login", json={"username": "admin", "password": PASSWORD}
        )
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestPlaceManagement:
    """Admin place endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_read_back(self, admin):
        created = await create_place(admin)
        assert created["path"] == "portugal/lisbon/alfama"

        by_slug = (await admin.get(f"/api/places/{created['slug']}")).json()
        by_path = (await admin.get("/api/places/portugal/lisbon/alfama")).json()
        assert by_slug["id"] == by_path["id"] == created["id"]
        assert by_slug["trip_dates"] == "03-10 Jun, 2024"

    @pytest.mark.asyncio
    async def test_invalid_form_lists_every_error(self, admin):
        response = await admin.post(
            "/api/admin/places", json={**PLACE, "name": "", "start_date": "tomorrow"}
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert len(body["details"]["errors"]) == 2

    @pytest.mark.asyncio
    async def test_update(self, admin):
        created = await create_place(admin)
        response = await admin.put(
            f"/api/admin/places/{created['id']}", json={**PLACE, "name": "Alfama Old Town"}
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Alfama Old Town"
        assert response.json()["slug"] == created["slug"]

    @pytest.mark.asyncio
    async def test_reorder_and_delete(self, admin):
        first = await create_place(admin)
        second = await create_place(admin, name="Belém")

        response = await admin.post(
            "/api/admin/places/reorder", json={"place_ids": [second["id"], first["id"]]}
        )
        assert response.status_code == 204
        listing = (await admin.get("/api/places")).json()["places"]
        assert [p["id"] for p in listing] == [second["id"], first["id"]]

        assert (await admin.delete(f"/api/admin/places/{first['id']}")).status_code == 204
        assert (await admin.get(f"/api/places/{first['slug']}")).status_code == 404
        assert (await admin.delete(f"/api/admin/places/{first['id']}")).status_code == 404


class TestPhotoManagement:
    """Admin photo endpoints."""

    @pytest.mark.asyncio
    async def test_upload_favorite_delete(self, admin, make_image, thumbnails):
        place = await create_place(admin)

        response = await upload(admin, place["id"], make_image, count=3)
        assert response.status_code == 201
        assert response.json() == {"uploaded": 3, "message": "Uploaded 3 photos"}
        assert thumbnails.enqueue.call_count == 3

        response = await admin.post(
            f"/api/admin/places/{place['id']}/photos/3/favorite", json={"is_favorite": True}
        )
        assert response.status_code == 204
        assert (await admin.delete(f"/api/admin/places/{place['id']}/photos/1")).status_code == 204

        detail = (await admin.get(f"/api/places/{place['slug']}")).json()
        assert [p["photo_num"] for p in detail["photos"]] == [1, 2]
        assert detail["photos"][1]["is_favorite"]
        assert detail["cover_photo"]["photo_num"] == 2

        image = await admin.get(detail["photos"][0]["url"])
        assert image.status_code == 200
        assert "immutable" in image.headers["Cache-Control"]

    @pytest.mark.asyncio
    async def test_reorder_photos(self, admin, make_image):
        place = await create_place(admin)
        await upload(admin, place["id"], make_image, count=3)
        before = (await admin.get(f"/api/places/{place['slug']}")).json()["photos"]

        response = await admin.post(
            f"/api/admin/places/{place['id']}/photos/reorder", json={"photo_order": [3, 1, 2]}
        )
        assert response.status_code == 204
        after = (await admin.get(f"/api/places/{place['slug']}")).json()["photos"]
        assert [p["id"] for p in after] == [before[2]["id"], before[0]["id"], before[1]["id"]]

        response = await admin.post(
            f"/api/admin/places/{place['id']}/photos/reorder", json={"photo_order": [1, 1, 2]}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_rejected_file_stores_nothing(self, admin, make_image):
        place = await create_place(admin)
        files = [
            ("files", ("ok.jpg", make_image("JPEG"), "image/jpeg")),
            ("files", ("notes.pdf", b"%PDF-1.4", "application/pdf")),
        ]
        response = await admin.post(f"/api/admin/places/{place['id']}/photos", files=files)
        assert response.status_code == 400
        assert response.json()["details"]["errors"][0].startswith("File 2 (notes.pdf)")
        detail = (await admin.get(f"/api/places/{place['slug']}")).json()
        assert detail["photos"] == []

    @pytest.mark.asyncio
    async def test_unknown_photo(self, admin):
        place = await create_place(admin)
        response = await admin.delete(f"/api/admin/places/{place['id']}/photos/7")
        assert response.status_code == 404
        response = await admin.post(
            f"/api/admin/places/{place['id']}/photos/7/favorite", json={"is_favorite": True}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_oversized_upload_is_read_only_past_limit(self, files):
        limit = settings.max_file_size
        upload = UploadFile(file=io.BytesIO(b"\x00" * (limit + 4096)), filename="big.jpg")

        (parsed,) = await read_uploads(files=[upload], storage=files)

        assert len(parsed.content) == limit + 1
        with pytest.raises(ValueError, match="exceeds maximum"):
            files.validate_file(parsed)

    @pytest.mark.asyncio
    async def test_storage_cleanup_defaults_to_dry_run(self, admin, files):
        stray = files.places_root / "9001"
        stray.mkdir()
        os.utime(stray, (0, 0))

        response = await admin.post("/api/admin/storage/cleanup")
        assert response.json() == {
            "dry_run": True,
            "orphan_files": 0,
            "orphan_directories": 1,
            "errors": 0,
        }
        assert stray.exists()

        response = await admin.post("/api/admin/storage/cleanup?dry_run=false")
        assert response.json()["orphan_directories"] == 1
        assert not stray.exists()

    @pytest.mark.asyncio
    async def test_retry_thumbnails(self, admin, thumbnails):
        thumbnails.retry_failed.return_value = 2
        response = await admin.post("/api/admin/thumbnails/retry?include_stale=true")
        assert response.json() == {"queued": 2}
        assert thumbnails.retry_failed.await_args.kwargs == {"include_stale": True}


class TestTotpRoutes:
    """Two-factor enrollment over HTTP."""

    @pytest.mark.asyncio
    async def test_setup_verify_then_login_needs_code(self, admin):
        setup = (await admin.post("/api/admin/totp/setup")).json()
        code = pyotp.TOTP(setup["secret"]).now()

        response = await admin.post("/api/admin/totp/verify", json={"code": code})
        assert response.json()["totp_enabled"] is True

        await admin.post("/api/admin/logout")
        response = await admin.post(
            "/api/admin/login", json={"username": "admin", "password": PASSWORD}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_verify_wrong_shape_is_422(self, admin):
        await admin.post("/api/admin/totp/setup")
        response = await admin.post("/api/admin/totp/verify", json={"code": "12ab"})
        assert response.status_code == 422
