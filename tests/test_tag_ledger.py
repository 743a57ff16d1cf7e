"""
Tag ledger tests: usage counts following post membership, savepoint
isolation per name, and the administrative delete/merge/recount paths.
"""
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from blog_api.errors import Conflict, NotFound, ValidationFailed
from blog_api.models import Post, Tag, User
from blog_api.schemas import PostCreate, PostUpdate, TagCreate
from blog_api.services import post_service, tag_ledger


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _author(db: AsyncSession) -> User:
    user = User(name="Tag Author", email="tags@example.com", password_hash="x", role="Admin")
    db.add(user)
    await db.flush()
    return user


async def _counts(db: AsyncSession) -> dict[str, int]:
    rows = await db.execute(select(Tag.name, Tag.post_count))
    return dict(rows.all())


async def _create(db, cache, realtime, author, title, tags, **extra) -> dict:
    return await post_service.create_post(
        db, cache, realtime, author, PostCreate(title=title, content="Body", tags=tags, **extra)
    )


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_normalize_tag_name():
    assert tag_ledger.normalize_tag_name("  Machine   Learning ") == "machine-learning"
    assert tag_ledger.normalize_tag_name("Python") == "python"


def test_normalize_tag_list_keeps_first_occurrence_order():
    assert tag_ledger.normalize_tag_list(["Go", "rust", "go", " ", "Rust"]) == ["go", "rust"]


# ---------------------------------------------------------------------------
# Delta application
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_post_creates_and_counts_tags(db_session, cache, realtime):
    author = await _author(db_session)
    await _create(db_session, cache, realtime, author, "First", ["Python", "web"])
    await _create(db_session, cache, realtime, author, "Second", ["python"])

    counts = await _counts(db_session)
    assert counts == {"python": 2, "web": 1}
    tag = await tag_ledger.get_tag(db_session, "python")
    assert tag.display_name == "Python"


@pytest.mark.asyncio
async def test_counts_match_membership_after_mixed_writes(db_session, cache, realtime):
    """After any sequence of writes, post_count equals the number of posts carrying the tag."""
    author = await _author(db_session)
    a = await _create(db_session, cache, realtime, author, "A", ["x", "y"])
    b = await _create(db_session, cache, realtime, author, "B", ["y", "z"])
    await post_service.update_post(db_session, cache, realtime, author, a["id"], PostUpdate(tags=["z"]))
    await post_service.delete_post(db_session, cache, author, b["id"])
    await _create(db_session, cache, realtime, author, "C", ["x", "z"])

    counts = await _counts(db_session)
    for name, count in counts.items():
        assert count == await tag_ledger.count_posts_with_tag(db_session, name)
    assert counts == {"x": 1, "y": 0, "z": 2}


@pytest.mark.asyncio
async def test_zero_count_tags_are_kept(db_session, cache, realtime):
    author = await _author(db_session)
    post = await _create(db_session, cache, realtime, author, "Only", ["lonely"])
    await post_service.delete_post(db_session, cache, author, post["id"])

    tag = await tag_ledger.get_tag(db_session, "lonely")
    assert tag is not None
    assert tag.post_count == 0


@pytest.mark.asyncio
async def test_decrement_is_floored_at_zero(db_session):
    await tag_ledger.apply_tag_delta(db_session, added=["solo"], removed=())
    await tag_ledger.apply_tag_delta(db_session, added=(), removed=["solo", "solo-ghost"])
    await tag_ledger.apply_tag_delta(db_session, added=(), removed=["solo"])

    counts = await _counts(db_session)
    assert counts == {"solo": 0}


@pytest.mark.asyncio
async def test_failing_name_does_not_block_siblings(db_session, monkeypatch):
    """A name whose update fails is reported while the rest of the delta applies."""
    real_increment = tag_ledger._increment

    async def flaky_increment(db, name):
        if name == "broken":
            raise RuntimeError("simulated write failure")
        await real_increment(db, name)

    monkeypatch.setattr(tag_ledger, "_increment", flaky_increment)
    failed = await tag_ledger.apply_tag_delta(db_session, added=["ok", "broken", "fine"], removed=())

    assert failed == ["broken"]
    assert await _counts(db_session) == {"fine": 1, "ok": 1}


# ---------------------------------------------------------------------------
# Administrative operations
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_tag_in_use_is_refused(db_session, cache, realtime):
    author = await _author(db_session)
    await _create(db_session, cache, realtime, author, "Uses tag", ["busy"])

    with pytest.raises(Conflict) as exc_info:
        await tag_ledger.delete_tag(db_session, "busy")
    assert exc_info.value.details == {"post_count": 1}


@pytest.mark.asyncio
async def test_delete_tag_uses_live_membership_not_counter(db_session, cache, realtime):
    author = await _author(db_session)
    await _create(db_session, cache, realtime, author, "Drifted", ["drift"])
    tag = await tag_ledger.get_tag(db_session, "drift")
    tag.post_count = 0
    await db_session.flush()

    with pytest.raises(Conflict):
        await tag_ledger.delete_tag(db_session, "drift")


@pytest.mark.asyncio
async def test_delete_unused_and_missing_tag(db_session):
    await tag_ledger.create_tag(db_session, TagCreate(name="Unused"))
    await tag_ledger.delete_tag(db_session, "unused")
    assert await tag_ledger.get_tag(db_session, "unused") is None

    with pytest.raises(NotFound):
        await tag_ledger.delete_tag(db_session, "unused")


@pytest.mark.asyncio
async def test_merge_rewrites_posts_without_duplicates(db_session, cache, realtime):
    author = await _author(db_session)
    p1 = await _create(db_session, cache, realtime, author, "One", ["js", "web"])
    p2 = await _create(db_session, cache, realtime, author, "Two", ["javascript", "js"])
    await _create(db_session, cache, realtime, author, "Three", ["python"])

    result = await tag_ledger.merge_tags(db_session, ["js"], "javascript")

    assert result["merged"] == ["js"]
    assert result["updated_posts"] == 2
    assert result["target"]["post_count"] == 2
    assert await tag_ledger.get_tag(db_session, "js") is None

    post1 = await db_session.get(Post, p1["id"])
    post2 = await db_session.get(Post, p2["id"])
    assert post1.tags == ["javascript", "web"]
    assert post2.tags == ["javascript"]


@pytest.mark.asyncio
async def test_merge_creates_missing_target_and_is_rerunnable(db_session, cache, realtime):
    author = await _author(db_session)
    await _create(db_session, cache, realtime, author, "Old name", ["ml"])

    first = await tag_ledger.merge_tags(db_session, ["ml"], "Machine Learning")
    second = await tag_ledger.merge_tags(db_session, ["ml"], "Machine Learning")

    assert first["target"]["name"] == "machine-learning"
    assert first["target"]["post_count"] == 1
    assert second["updated_posts"] == 0
    assert second["target"]["post_count"] == 1


@pytest.mark.asyncio
async def test_merge_requires_target(db_session):
    with pytest.raises(ValidationFailed):
        await tag_ledger.merge_tags(db_session, ["a"], "   ")


@pytest.mark.asyncio
async def test_recount_repairs_drift(db_session, cache, realtime):
    author = await _author(db_session)
    await _create(db_session, cache, realtime, author, "Counted", ["alpha", "beta"])
    alpha = await tag_ledger.get_tag(db_session, "alpha")
    alpha.post_count = 7
    beta = await tag_ledger.get_tag(db_session, "beta")
    await db_session.delete(beta)
    await db_session.flush()

    result = await tag_ledger.recount_tags(db_session)

    assert result["corrected"] == 2
    assert await _counts(db_session) == {"alpha": 1, "beta": 1}


@pytest.mark.asyncio
async def test_create_tag_conflict(db_session):
    created = await tag_ledger.create_tag(db_session, TagCreate(name="Rust Lang", category="Technology"))
    assert created["name"] == "rust-lang"
    assert created["display_name"] == "Rust Lang"

    with pytest.raises(Conflict):
        await tag_ledger.create_tag(db_session, TagCreate(name="rust lang"))


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tag_admin_endpoints_require_admin(async_client, member_headers):
    resp = await async_client.post("/api/v1/tags", json={"name": "nope"}, headers=member_headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["kind"] == "authorization_error"


@pytest.mark.asyncio
async def test_tag_listing_and_details(async_client, admin_headers):
    for title, tags in (("Alpha post", ["python", "web"]), ("Beta post", ["python"])):
        resp = await async_client.post(
            "/api/v1/posts", json={"title": title, "content": "Body", "tags": tags}, headers=admin_headers
        )
        assert resp.status_code == 201

    resp = await async_client.get("/api/v1/tags/popular")
    assert resp.status_code == 200
    assert [t["name"] for t in resp.json()["tags"]] == ["python", "web"]

    resp = await async_client.get("/api/v1/tags/python")
    assert resp.status_code == 200
    body = resp.json()
    assert body["tag"]["name"] == "python"
    assert len(body["posts"]) == 2

    resp = await async_client.delete("/api/v1/tags/python", headers=admin_headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_tag_suggestions_update_and_stats(async_client, admin_headers):
    for title, tags in (("Gamma post", ["python", "pytest"]), ("Delta post", ["python"])):
        await async_client.post(
            "/api/v1/posts", json={"title": title, "content": "Body", "tags": tags}, headers=admin_headers
        )

    suggestions = (await async_client.get("/api/v1/tags/suggestions", params={"q": "py"})).json()["suggestions"]
    assert [s["name"] for s in suggestions] == ["python", "pytest"]

    resp = await async_client.put(
        "/api/v1/tags/pytest", json={"display_name": "PyTest", "is_active": False}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert resp.json()["display_name"] == "PyTest"

    listed = (await async_client.get("/api/v1/tags")).json()
    assert [t["name"] for t in listed["tags"]] == ["python"]

    stats = (await async_client.get("/api/v1/tags/stats")).json()
    assert stats["total_tags"] == 2
    assert stats["active_tags"] == 1
    assert stats["total_tag_usages"] == 3
    assert stats["avg_tags_per_post"] == 1.5

    resp = await async_client.put("/api/v1/tags/missing", json={"display_name": "X"}, headers=admin_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_tag_update_ignores_null_for_required_fields(async_client, admin_headers):
    await async_client.post(
        "/api/v1/tags",
        json={"name": "python", "display_name": "Python", "description": "Snakes"},
        headers=admin_headers,
    )

    resp = await async_client.put(
        "/api/v1/tags/python",
        json={"display_name": None, "is_active": None, "color": None, "description": None},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["display_name"] == "Python"
    assert body["is_active"] is True
    assert body["color"] == "#3B82F6"
    assert body["description"] is None
