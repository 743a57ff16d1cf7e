"""
Search and dashboard tests: filters, visibility rules, typeahead helpers,
featured content and the admin summary.
"""
import pytest
from httpx import AsyncClient


async def _seed(client: AsyncClient, admin_headers: dict, member_headers: dict) -> dict:
    posts = {}
    for title, content, tags, extra in (
        ("Async Python patterns", "Event loops and tasks", ["python", "async"], {}),
        ("Postgres indexing", "B-tree and GIN indexes", ["databases"], {}),
        ("Python packaging draft", "Wheels", ["python"], {"is_draft": True}),
        ("Python by a robot", "Generated text", ["python"], {"generated_by_ai": True}),
    ):
        resp = await client.post(
            "/api/v1/posts", json={"title": title, "content": content, "tags": tags, **extra}, headers=admin_headers
        )
        assert resp.status_code == 201
        posts[title] = resp.json()
    await client.post(
        f"/api/v1/comments/{posts['Postgres indexing']['id']}",
        json={"content": "Python drivers handle this well"},
        headers=member_headers,
    )
    return posts


@pytest.mark.asyncio
async def test_search_hides_drafts_and_unreviewed_posts(async_client, admin_headers, member_headers):
    await _seed(async_client, admin_headers, member_headers)

    resp = await async_client.get("/api/v1/search", params={"q": "python"})
    body = resp.json()
    assert [p["title"] for p in body["posts"]["data"]] == ["Async Python patterns"]
    assert body["posts"]["total"] == 1
    assert body["metadata"]["query"] == "python"
    assert "users" not in body


@pytest.mark.asyncio
async def test_search_filters(async_client, admin_headers, member_headers):
    await _seed(async_client, admin_headers, member_headers)

    resp = await async_client.get("/api/v1/search", params={"tags": "databases,ASYNC", "sort_by": "date"})
    titles = [p["title"] for p in resp.json()["posts"]["data"]]
    assert titles == ["Postgres indexing", "Async Python patterns"]

    resp = await async_client.get("/api/v1/search", params={"author": "ada"})
    assert resp.json()["posts"]["total"] == 2

    resp = await async_client.get("/api/v1/search", params={"author": "nobody"})
    assert resp.json()["posts"]["total"] == 0


@pytest.mark.asyncio
async def test_search_all_types(async_client, admin_headers, member_headers):
    await _seed(async_client, admin_headers, member_headers)

    public = (await async_client.get("/api/v1/search", params={"q": "python", "type": "all"})).json()
    assert public["comments"]["total"] == 1
    assert "users" not in public

    admin_view = (
        await async_client.get("/api/v1/search", params={"q": "mia", "type": "all"}, headers=admin_headers)
    ).json()
    assert [u["email"] for u in admin_view["users"]["data"]] == ["member@example.com"]


@pytest.mark.asyncio
async def test_suggestions_and_autocomplete(async_client, admin_headers, member_headers):
    await _seed(async_client, admin_headers, member_headers)

    assert (await async_client.get("/api/v1/search/suggestions", params={"q": "p"})).json() == {"suggestions": []}

    suggestions = (await async_client.get("/api/v1/search/suggestions", params={"q": "pyth"})).json()["suggestions"]
    assert {"type": "title", "value": "Async Python patterns"} in suggestions
    assert {"type": "tag", "value": "python"} in suggestions

    completions = (await async_client.get("/api/v1/search/autocomplete", params={"q": "post"})).json()["completions"]
    assert completions[0]["text"] == "Postgres indexing"


@pytest.mark.asyncio
async def test_popular_and_featured(async_client, admin_headers, member_headers):
    posts = await _seed(async_client, admin_headers, member_headers)
    await async_client.post(f"/api/v1/posts/{posts['Postgres indexing']['id']}/view")

    popular = (await async_client.get("/api/v1/search/popular")).json()["popular_searches"]
    assert {p["term"] for p in popular} == {"python", "async", "databases"}

    featured = (await async_client.get("/api/v1/search/featured")).json()
    assert featured["most_viewed"][0]["title"] == "Postgres indexing"
    assert len(featured["recent"]) == 2


@pytest.mark.asyncio
async def test_dashboard_summary(async_client, admin_headers, member_headers):
    await _seed(async_client, admin_headers, member_headers)

    assert (await async_client.get("/api/v1/dashboard-summary", headers=member_headers)).status_code == 403

    resp = await async_client.get("/api/v1/dashboard-summary", headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["stats"]["total_posts"] == 4
    assert body["stats"]["drafts"] == 1
    assert body["stats"]["needs_review"] == 1
    assert body["stats"]["total_comments"] == 1
    assert body["stats"]["total_users"] == 2
    assert body["top_tags"][0] == {"tag": "python", "display_name": "Python", "count": 3}
    assert body["recent_comments"][0]["content"] == "Python drivers handle this well"
    assert body["cache"]["backend"] == "memory"
