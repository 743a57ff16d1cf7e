"""
Account tests: registration, login, profile, password reset, image
upload and the admin user-management endpoints.
"""
import io
from urllib.parse import parse_qs, urlparse

import pytest
from PIL import Image

from blog_api.errors import ValidationFailed
from blog_api.config import settings
from blog_api.services import image_service
from conftest import bearer, register


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_returns_token_and_role(async_client):
    member = await register(async_client, "Mia Member", "Mia@Example.com")
    assert member["role"] == "Member"
    assert member["email"] == "mia@example.com"
    assert member["token"]
    assert "password_hash" not in member

    admin = await register(async_client, "Ada Admin", "ada@example.com", admin=True)
    assert admin["role"] == "Admin"


@pytest.mark.asyncio
async def test_wrong_admin_token_registers_member(async_client):
    resp = await async_client.post(
        "/api/v1/auth/register",
        json={"name": "Eve", "email": "eve@example.com", "password": "Secret123", "admin_access_token": "guess"},
    )
    assert resp.status_code == 201
    assert resp.json()["role"] == "Member"


@pytest.mark.asyncio
async def test_register_rejects_duplicates_and_weak_input(async_client, member):
    resp = await async_client.post(
        "/api/v1/auth/register", json={"name": "Mia Again", "email": "member@example.com", "password": "Secret123"}
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["message"] == "User already exists"

    resp = await async_client.post(
        "/api/v1/auth/register", json={"name": "R2D2", "email": "r2@example.com", "password": "secret"}
    )
    assert resp.status_code == 422
    fields = {d["field"] for d in resp.json()["error"]["details"]}
    assert fields == {"name", "password"}


@pytest.mark.asyncio
async def test_login(async_client, member):
    resp = await async_client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Secret123"})
    assert resp.status_code == 200
    assert resp.json()["id"] == member["id"]

    resp = await async_client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Wrong123"})
    assert resp.status_code == 401
    assert resp.json()["error"]["kind"] == "authentication_error"


@pytest.mark.asyncio
async def test_bad_token_is_rejected(async_client):
    resp = await async_client.get("/api/v1/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Token failed"


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_profile_read_and_update(async_client, member_headers):
    resp = await async_client.get("/api/v1/auth/profile", headers=member_headers)
    assert resp.json()["name"] == "Mia Member"

    resp = await async_client.put(
        "/api/v1/auth/profile", json={"bio": "Writes about databases"}, headers=member_headers
    )
    assert resp.status_code == 200
    assert resp.json()["bio"] == "Writes about databases"
    assert resp.json()["name"] == "Mia Member"


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_password_reset_flow(async_client, member):
    resp = await async_client.post("/api/v1/auth/forgot-password", json={"email": "member@example.com"})
    assert resp.status_code == 200
    token = parse_qs(urlparse(resp.json()["reset_url"]).query)["token"][0]

    resp = await async_client.post(f"/api/v1/auth/reset-password/{token}", json={"password": "Brandnew1"})
    assert resp.status_code == 200

    resp = await async_client.post(f"/api/v1/auth/reset-password/{token}", json={"password": "Another1"})
    assert resp.status_code == 400

    resp = await async_client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "Brandnew1"})
    assert resp.status_code == 200

    inbox = (await async_client.get("/api/v1/notifications", headers=bearer(member))).json()
    assert [n["type"] for n in inbox["notifications"]] == ["system"]


@pytest.mark.asyncio
async def test_forgot_password_unknown_email(async_client):
    resp = await async_client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Image upload
# ---------------------------------------------------------------------------

def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), (200, 30, 30, 255)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.asyncio
async def test_upload_image_is_resized_and_reencoded(async_client, member_headers):
    files = {"image": ("wide.png", _png(2400, 600), "image/png")}
    resp = await async_client.post("/api/v1/auth/upload-image", files=files, headers=member_headers)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert (body["width"], body["height"]) == (settings.MAX_IMAGE_WIDTH, 300)
    assert body["filename"].endswith(".jpg")
    assert body["image_url"].startswith("http://test/uploads/optimized/")

    served = await async_client.get(body["path"])
    assert served.status_code == 200
    assert served.content[:2] == b"\xff\xd8"


@pytest.mark.asyncio
async def test_upload_rejects_non_images(async_client, member_headers):
    files = {"image": ("notes.txt", b"hello", "text/plain")}
    resp = await async_client.post("/api/v1/auth/upload-image", files=files, headers=member_headers)
    assert resp.status_code == 400

    files = {"image": ("fake.png", b"not really a png", "image/png")}
    resp = await async_client.post("/api/v1/auth/upload-image", files=files, headers=member_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_optimize_image_limits(tmp_path):
    local = settings.model_copy(update={"UPLOAD_DIR": str(tmp_path), "MAX_UPLOAD_BYTES": 10})
    with pytest.raises(ValidationFailed):
        await image_service.optimize_image(b"", "empty.png", "image/png", local)
    with pytest.raises(ValidationFailed):
        await image_service.optimize_image(_png(4, 4), "big.png", "image/png", local)


@pytest.mark.asyncio
async def test_small_image_keeps_dimensions(tmp_path):
    local = settings.model_copy(update={"UPLOAD_DIR": str(tmp_path)})
    result = await image_service.optimize_image(_png(40, 20), "small.png", "image/png", local)
    assert (result["width"], result["height"]) == (40, 20)
    assert (tmp_path / "optimized" / result["filename"]).exists()


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_user_management(async_client, admin, admin_headers, member, member_headers):
    assert (await async_client.get("/api/v1/users", headers=member_headers)).status_code == 403

    listing = (await async_client.get("/api/v1/users", params={"search": "mia"}, headers=admin_headers)).json()
    assert [u["email"] for u in listing["users"]] == ["member@example.com"]
    assert listing["total"] == 1

    resp = await async_client.put(
        f"/api/v1/users/{member['id']}", json={"email": "admin@example.com"}, headers=admin_headers
    )
    assert resp.status_code == 409

    resp = await async_client.put(f"/api/v1/users/{member['id']}", json={"role": "Admin"}, headers=admin_headers)
    assert resp.json()["role"] == "Admin"
    inbox = (await async_client.get("/api/v1/notifications", headers=member_headers)).json()
    assert inbox["notifications"][0]["type"] == "admin_action"

    resp = await async_client.delete(f"/api/v1/users/{admin['id']}", headers=admin_headers)
    assert resp.status_code == 400

    resp = await async_client.delete(f"/api/v1/users/{member['id']}", headers=admin_headers)
    assert resp.status_code == 200
    assert (await async_client.get(f"/api/v1/users/{member['id']}", headers=admin_headers)).status_code == 404


@pytest.mark.asyncio
async def test_deleting_user_releases_their_post_tags(async_client, admin_headers):
    writer = await register(async_client, "Wes Writer", "wes@example.com", admin=True)
    resp = await async_client.post(
        "/api/v1/posts", json={"title": "Mine", "content": "Body", "tags": ["owned"]}, headers=bearer(writer)
    )
    assert resp.status_code == 201

    resp = await async_client.delete(f"/api/v1/users/{writer['id']}", headers=admin_headers)
    assert resp.status_code == 200

    tags = (await async_client.get("/api/v1/tags")).json()["tags"]
    assert [(t["name"], t["post_count"]) for t in tags] == [("owned", 0)]
