"""
Notification tests: inbox paging and read state, ownership checks, and
delivery to the recipient's room only after the write commits.
"""
import pytest

from blog_api.database import commit_and_run_hooks
from blog_api.models import User
from blog_api.realtime import ConnectionManager, user_room
from blog_api.services import notification_service


class RecordingSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


async def _users(db):
    alice = User(name="Alice", email="alice@example.com", password_hash="x")
    bob = User(name="Bob", email="bob@example.com", password_hash="x")
    db.add_all([alice, bob])
    await db.flush()
    return alice, bob


@pytest.mark.asyncio
async def test_notification_is_delivered_only_after_commit(db_session):
    alice, bob = await _users(db_session)
    realtime = ConnectionManager()
    socket = RecordingSocket()
    realtime.join(user_room(alice.id), socket)

    await notification_service.create_notification(
        db_session, realtime, recipient_id=alice.id, sender=bob, type="system", title="Hi", message="Hello"
    )
    assert socket.sent == []

    await commit_and_run_hooks(db_session)
    assert len(socket.sent) == 1
    assert socket.sent[0]["event"] == "notification"
    assert socket.sent[0]["data"]["sender"]["name"] == "Bob"


@pytest.mark.asyncio
async def test_failed_commit_never_delivers(db_session, monkeypatch):
    alice, _ = await _users(db_session)
    alice_id = alice.id
    await commit_and_run_hooks(db_session)
    realtime = ConnectionManager()
    socket = RecordingSocket()
    realtime.join(user_room(alice_id), socket)

    await notification_service.create_notification(
        db_session, realtime, recipient_id=alice_id, type="system", title="Hi", message="Hello"
    )

    async def failing_commit():
        raise RuntimeError("commit failed")

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        await commit_and_run_hooks(db_session)
    await db_session.rollback()
    monkeypatch.undo()

    await commit_and_run_hooks(db_session)
    assert socket.sent == []
    assert await notification_service.unread_count(db_session, alice_id) == 0


@pytest.mark.asyncio
async def test_failing_socket_is_dropped_without_error(db_session):
    alice, _ = await _users(db_session)
    realtime = ConnectionManager()
    realtime.join(user_room(alice.id), RecordingSocket(fail=True))

    await notification_service.create_notification(
        db_session, realtime, recipient_id=alice.id, type="system", title="Hi", message="Hello"
    )
    await commit_and_run_hooks(db_session)

    assert realtime.room_size(user_room(alice.id)) == 0
    assert await notification_service.unread_count(db_session, alice.id) == 1


@pytest.mark.asyncio
async def test_self_like_is_not_notified(db_session):
    alice, bob = await _users(db_session)

    class FakePost:
        id = 1
        title = "Post"
        slug = "post"
        author_id = alice.id

    realtime = ConnectionManager()
    assert await notification_service.notify_post_like(db_session, realtime, post=FakePost, liker=alice) is None
    note = await notification_service.notify_post_like(db_session, realtime, post=FakePost, liker=bob)
    assert note.type == "like"
    assert note.extra == {"post_slug": "post"}


@pytest.mark.asyncio
async def test_inbox_paging_and_read_state(async_client, member, member_headers, db_session):
    for i in range(3):
        await notification_service.notify_system(
            db_session, ConnectionManager(), user_id=member["id"], title=f"N{i}", message="m"
        )
    await db_session.commit()

    resp = await async_client.get("/api/v1/notifications", params={"limit": 2}, headers=member_headers)
    body = resp.json()
    assert [n["title"] for n in body["notifications"]] == ["N2", "N1"]
    assert body["pagination"]["total_pages"] == 2
    assert body["unread_count"] == 3

    first_id = body["notifications"][0]["id"]
    resp = await async_client.patch(f"/api/v1/notifications/{first_id}/read", headers=member_headers)
    assert resp.status_code == 200
    count = (await async_client.get("/api/v1/notifications/unread-count", headers=member_headers)).json()
    assert count == {"unread_count": 2}

    resp = await async_client.patch("/api/v1/notifications/mark-all-read", headers=member_headers)
    assert resp.json()["updated"] == 2

    resp = await async_client.delete(f"/api/v1/notifications/{first_id}", headers=member_headers)
    assert resp.status_code == 200
    assert (await async_client.delete(f"/api/v1/notifications/{first_id}", headers=member_headers)).status_code == 404


@pytest.mark.asyncio
async def test_other_users_notifications_are_invisible(async_client, member, admin_headers, db_session):
    note = await notification_service.notify_system(
        db_session, ConnectionManager(), user_id=member["id"], title="Private", message="m"
    )
    await db_session.commit()

    resp = await async_client.patch(f"/api/v1/notifications/{note.id}/read", headers=admin_headers)
    assert resp.status_code == 404
    resp = await async_client.delete(f"/api/v1/notifications/{note.id}", headers=admin_headers)
    assert resp.status_code == 404
