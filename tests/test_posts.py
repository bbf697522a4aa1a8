from sqlalchemy.exc import SQLAlchemyError

import models
import services
from tests.conftest import create_post, login, session_scope


def test_create_post_starts_without_likes(client, broadcaster):
    resp = client.post("/posts", json={"message": "hello", "username": "alice", "nickname": "Al"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    post = body["data"]
    assert post["message"] == "hello"
    assert post["username"] == "alice"
    assert post["nickname"] == "Al"
    assert post["likes"] == []
    assert "createdAt" in post
    assert broadcaster.events == [("new_post", post)]


def test_create_post_rejects_empty_message(client, broadcaster):
    for message in ("", "   "):
        resp = client.post("/posts", json={"message": message, "username": "alice", "nickname": "Al"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Message is required"}
    assert client.get("/posts").json()["data"] == []
    assert broadcaster.events == []


def test_like_toggles_on_and_off(client, broadcaster):
    post = create_post(client)

    first = client.post(f"/posts/{post['id']}/like", json={"likerId": "bob"})
    assert first.status_code == 200
    assert first.json()["data"]["likes"] == ["bob"]

    second = client.post(f"/posts/{post['id']}/like", json={"likerId": "bob"})
    assert second.json()["data"]["likes"] == []

    updates = broadcaster.of_kind("update_post")
    assert [u["likes"] for u in updates] == [["bob"], []]
    assert all(u["id"] == post["id"] and u["message"] == "hello" for u in updates)


def test_likes_keep_order_and_double_toggle_restores_set(client):
    post = create_post(client)
    for liker in ("bob", "anonymous_1", "carol"):
        client.post(f"/posts/{post['id']}/like", json={"likerId": liker})

    client.post(f"/posts/{post['id']}/like", json={"likerId": "anonymous_1"})
    resp = client.post(f"/posts/{post['id']}/like", json={"likerId": "anonymous_1"})

    assert sorted(resp.json()["data"]["likes"]) == ["anonymous_1", "bob", "carol"]
    assert resp.json()["data"]["likes"][:1] == ["bob"]


def test_like_unknown_post_is_not_found(client, broadcaster):
    resp = client.post("/posts/999/like", json={"likerId": "bob"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Post not found"
    assert broadcaster.events == []


def test_like_requires_liker_id(client):
    post = create_post(client)
    resp = client.post(f"/posts/{post['id']}/like", json={})
    assert resp.status_code == 400


def test_list_posts_newest_first(client):
    first = create_post(client, message="first")
    second = create_post(client, message="second")

    data = client.get("/posts").json()["data"]

    assert [p["id"] for p in data] == [second["id"], first["id"]]


def test_delete_by_stranger_is_forbidden_and_post_survives(client, broadcaster):
    post = create_post(client)
    login(client, "mallory", "M")

    resp = client.request("DELETE", f"/posts/{post['id']}", json={"username": "mallory"})

    assert resp.status_code == 403
    assert [p["id"] for p in client.get("/posts").json()["data"]] == [post["id"]]
    assert broadcaster.of_kind("delete_post") == []


def test_delete_without_requester_is_forbidden(client):
    post = create_post(client)
    resp = client.request("DELETE", f"/posts/{post['id']}", json={})
    assert resp.status_code == 403


def test_author_can_delete(client, broadcaster):
    post = create_post(client)

    resp = client.request("DELETE", f"/posts/{post['id']}", json={"username": "alice"})

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert client.get("/posts").json()["data"] == []
    assert broadcaster.of_kind("delete_post") == [{"id": post["id"]}]


def test_admin_can_delete_any_post(client, admin, broadcaster):
    post = create_post(client)
    client.post(f"/posts/{post['id']}/like", json={"likerId": "bob"})

    resp = client.request("DELETE", f"/posts/{post['id']}", json={"username": admin.username})

    assert resp.status_code == 200
    assert broadcaster.of_kind("delete_post") == [{"id": post["id"]}]
    with session_scope() as db:
        assert db.query(models.PostLike).count() == 0


def test_delete_unknown_post_is_not_found(client):
    resp = client.request("DELETE", "/posts/12345", json={"username": "alice"})
    assert resp.status_code == 404


def test_liker_nicknames(client):
    login(client, "alice", "Al")

    resp = client.post("/posts/nicknames", json={"userIds": ["alice", "anonymous_abc", "ghost"]})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "nicknames": {"alice": "Al", "anonymous_abc": "Anonymous"}}


def test_liker_nicknames_follow_current_nickname(client):
    user = login(client, "alice", "Al")
    client.put("/users/alice", json={"nickname": "Alice"},
               headers={"Authorization": f"Bearer {user['token']}"})

    resp = client.post("/posts/nicknames", json={"userIds": ["alice"]})

    assert resp.json()["nicknames"] == {"alice": "Alice"}


def test_database_failure_becomes_generic_server_error(client, monkeypatch):
    post = create_post(client)

    def broken(db, post_id):
        raise SQLAlchemyError("disk on fire at /var/lib/db")

    monkeypatch.setattr(services, "get_post_by_id", broken)
    resp = client.post(f"/posts/{post['id']}/like", json={"likerId": "bob"})

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Server error"}


def test_toggle_like_service_never_duplicates(db):
    post = services.create_post(db, "hello", "alice", "Al")

    services.toggle_like(db, post.id, "bob")
    services.toggle_like(db, post.id, "carol")
    services.toggle_like(db, post.id, "bob")
    post = services.toggle_like(db, post.id, "bob")

    assert post.likes == ["carol", "bob"]
    assert db.query(models.PostLike).filter(models.PostLike.liker_id == "bob").count() == 1
