"""Integration tests exercising API endpoints via FastAPI's TestClient."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from app.models import Conversation, Message


def register_user(
    client: TestClient,
    login: str,
    password: str = "password123",
    display_name: str = "Test",
) -> dict[str, Any]:
    response = client.post(
        "/api/auth/register",
        json={"login": login, "password": password, "display_name": display_name},
    )
    assert response.status_code == 201, response.text
    return response.json()


def login_user(client: TestClient, login: str, password: str = "password123") -> str:
    response = client.post(
        "/api/auth/login",
        json={"login": login, "password": password},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    return body["access_token"]


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def people(client: TestClient) -> dict[str, dict[str, Any]]:
    people = {}
    for login, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
        user = register_user(client, login, display_name=name)
        user["headers"] = auth_headers(login_user(client, login))
        people[login] = user
    return people


def _direct(client: TestClient, owner: dict[str, Any], other: dict[str, Any]):
    return client.post("/api/chats", json={"participant_ids": [other["id"]]}, headers=owner["headers"])


def _post(client: TestClient, author: dict[str, Any], conversation_id: int, content: str) -> dict[str, Any]:
    response = client.post(
        f"/api/chats/{conversation_id}/messages", json={"content": content}, headers=author["headers"]
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_register_and_login_flow(client: TestClient):
    """End-to-end flow for registering and logging in a user."""

    payload = {"login": "alice", "password": "wonderland", "display_name": "Alice"}
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201
    data = response.json()
    assert data["login"] == "alice"
    assert data["is_online"] is False

    login_response = client.post(
        "/api/auth/login", json={"login": "alice", "password": "wonderland"}
    )
    assert login_response.status_code == 200
    token_data = login_response.json()
    assert token_data["token_type"] == "bearer"
    assert isinstance(token_data["access_token"], str)

    me = client.get("/api/users/me", headers=auth_headers(token_data["access_token"]))
    assert me.status_code == 200
    assert me.json()["display_name"] == "Alice"


def test_requests_without_token_are_rejected(client: TestClient):
    assert client.get("/api/chats").status_code == 401
    assert client.get("/api/chats", headers=auth_headers("garbage")).status_code == 401


def test_user_search_and_profile(client: TestClient, people):
    alice = people["alice"]

    found = client.get("/api/users/search", params={"q": "BO"}, headers=alice["headers"])
    assert [u["login"] for u in found.json()] == ["bob"]

    renamed = client.patch("/api/users/me", json={"display_name": "Alice L."}, headers=alice["headers"])
    assert renamed.json()["display_name"] == "Alice L."

    assert client.get(f"/api/users/{people['bob']['id']}", headers=alice["headers"]).json()["login"] == "bob"
    assert client.get("/api/users/9999", headers=alice["headers"]).status_code == 404


def test_direct_conversation_is_created_once(client: TestClient, people, session_factory):
    alice, bob = people["alice"], people["bob"]

    first = _direct(client, alice, bob)
    assert first.status_code == 201, first.text
    again = _direct(client, alice, bob)
    reverse = _direct(client, bob, alice)

    assert again.status_code == 200
    assert reverse.status_code == 200
    assert first.json()["id"] == again.json()["id"] == reverse.json()["id"]
    assert first.json()["kind"] == "direct"
    assert sorted(p["user"]["login"] for p in first.json()["participants"]) == ["alice", "bob"]
    with session_factory() as session:
        assert session.execute(select(func.count(Conversation.id))).scalar_one() == 1


def test_conversation_create_validation(client: TestClient, people):
    alice = people["alice"]

    assert client.post("/api/chats", json={"participant_ids": [alice["id"]]}, headers=alice["headers"]).status_code == 400
    assert client.post("/api/chats", json={"participant_ids": [9999]}, headers=alice["headers"]).status_code == 400
    assert (
        client.post(
            "/api/chats",
            json={"participant_ids": [people["bob"]["id"]], "is_group": True},
            headers=alice["headers"],
        ).status_code
        == 422
    )


def test_messages_unread_and_read_flow(client: TestClient, people):
    alice, bob = people["alice"], people["bob"]
    conversation_id = _direct(client, alice, bob).json()["id"]

    first = _post(client, alice, conversation_id, "hello")
    second = _post(client, alice, conversation_id, "are you there?")
    assert first["sender"]["login"] == "alice"

    listing = client.get("/api/chats", headers=bob["headers"]).json()
    assert listing[0]["id"] == conversation_id
    assert listing[0]["unread_count"] == 2
    assert listing[0]["last_message"]["content"] == "are you there?"

    read = client.put(
        f"/api/chats/{conversation_id}/read", json={"message_id": first["id"]}, headers=bob["headers"]
    )
    assert read.status_code == 200, read.text
    assert read.json() == {
        "conversation_id": conversation_id,
        "message_ids": [first["id"], second["id"]],
        "unread_count": 0,
    }

    again = client.put(f"/api/chats/{conversation_id}/read", headers=bob["headers"])
    assert again.json() == {"conversation_id": conversation_id, "message_ids": [], "unread_count": 0}

    history = client.get(f"/api/chats/{conversation_id}/messages", headers=bob["headers"]).json()
    assert [m["content"] for m in history] == ["are you there?", "hello"]
    assert all(bob["id"] in [r["user_id"] for r in m["read_by"]] for m in history)

    conversation = client.get(f"/api/chats/{conversation_id}", headers=bob["headers"]).json()
    assert conversation["unread_count"] == 0


def test_history_pagination_and_search(client: TestClient, people):
    alice, bob = people["alice"], people["bob"]
    conversation_id = _direct(client, alice, bob).json()["id"]
    ids = [_post(client, alice, conversation_id, f"note {n}")["id"] for n in range(5)]

    page = client.get(
        f"/api/chats/{conversation_id}/messages", params={"limit": 2}, headers=bob["headers"]
    ).json()
    assert [m["id"] for m in page] == [ids[4], ids[3]]

    older = client.get(
        f"/api/chats/{conversation_id}/messages",
        params={"limit": 2, "before": ids[3]},
        headers=bob["headers"],
    ).json()
    assert [m["id"] for m in older] == [ids[2], ids[1]]

    found = client.get(
        f"/api/chats/{conversation_id}/messages/search", params={"q": "NOTE 3"}, headers=bob["headers"]
    ).json()
    assert [m["id"] for m in found] == [ids[3]]


def test_outsiders_cannot_read_or_write(client: TestClient, people, session_factory):
    alice, bob, carol = people["alice"], people["bob"], people["carol"]
    conversation_id = _direct(client, alice, bob).json()["id"]

    forbidden = client.get(f"/api/chats/{conversation_id}", headers=carol["headers"])
    missing = client.get("/api/chats/9999", headers=carol["headers"])
    assert forbidden.status_code == missing.status_code == 403
    assert forbidden.json() == missing.json()

    write = client.post(
        f"/api/chats/{conversation_id}/messages", json={"content": "hi"}, headers=carol["headers"]
    )
    assert write.status_code == 403
    assert client.get(f"/api/chats/{conversation_id}/messages", headers=carol["headers"]).status_code == 403
    with session_factory() as session:
        assert session.execute(select(func.count(Message.id))).scalar_one() == 0


def test_edit_and_delete_are_sender_only(client: TestClient, people):
    alice, bob = people["alice"], people["bob"]
    conversation_id = _direct(client, alice, bob).json()["id"]
    message = _post(client, alice, conversation_id, "draft")
    url = f"/api/chats/{conversation_id}/messages/{message['id']}"

    assert client.patch(url, json={"content": "hijacked"}, headers=bob["headers"]).status_code == 403
    edited = client.patch(url, json={"content": "final"}, headers=alice["headers"])
    assert edited.status_code == 200
    assert edited.json()["content"] == "final"
    assert edited.json()["is_edited"] is True

    assert client.delete(url, headers=bob["headers"]).status_code == 403
    assert client.delete(url, headers=alice["headers"]).status_code == 204
    assert client.delete(url, headers=alice["headers"]).status_code == 404
    assert client.get(f"/api/chats/{conversation_id}/messages", headers=bob["headers"]).json() == []


def test_group_leave(client: TestClient, people):
    alice, bob, carol = people["alice"], people["bob"], people["carol"]
    created = client.post(
        "/api/chats",
        json={"participant_ids": [bob["id"], carol["id"]], "is_group": True, "title": " Weekend "},
        headers=alice["headers"],
    )
    assert created.status_code == 201, created.text
    group = created.json()
    assert group["kind"] == "group"
    assert group["title"] == "Weekend"
    assert len(group["participants"]) == 3

    assert client.post(f"/api/chats/{group['id']}/leave", headers=carol["headers"]).status_code == 204
    assert client.get(f"/api/chats/{group['id']}", headers=carol["headers"]).status_code == 403
    remaining = client.get(f"/api/chats/{group['id']}", headers=alice["headers"]).json()
    assert sorted(p["user"]["login"] for p in remaining["participants"]) == ["alice", "bob"]

    direct_id = _direct(client, alice, bob).json()["id"]
    assert client.post(f"/api/chats/{direct_id}/leave", headers=alice["headers"]).status_code == 400


def test_change_password(client: TestClient, people):
    alice = people["alice"]

    wrong = client.put(
        "/api/users/password",
        json={"current_password": "not-my-password", "new_password": "brand-new-pass"},
        headers=alice["headers"],
    )
    assert wrong.status_code == 400
    short = client.put(
        "/api/users/password",
        json={"current_password": "password123", "new_password": "short"},
        headers=alice["headers"],
    )
    assert short.status_code == 422

    changed = client.put(
        "/api/users/password",
        json={"current_password": "password123", "new_password": "brand-new-pass"},
        headers=alice["headers"],
    )
    assert changed.status_code == 204

    old_login = client.post("/api/auth/login", json={"login": "alice", "password": "password123"})
    assert old_login.status_code == 401
    assert login_user(client, "alice", "brand-new-pass")
