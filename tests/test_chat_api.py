import pytest
from starlette.websockets import WebSocketDisconnect


@pytest.fixture
def chat_setup(client, register, post_item):
    alice, bob = register("Alice"), register("Bob")
    item = post_item(alice)["item"]
    r = client.post("/api/chat/start", json={"itemId": item["id"], "message": "Is this mine?"}, headers=bob["headers"])
    assert r.status_code == 200, r.text
    return alice, bob, item, r.json()["chat"]


def send(client, chat_id, user, content="hello", **extra):
    body = dict({"content": content}, **extra)
    return client.post(f"/api/chat/{chat_id}/messages", json=body, headers=user["headers"])


def unread_total(client, user):
    return client.get("/api/chat/unread-count", headers=user["headers"]).json()["unreadCount"]


def test_start_chat_sends_first_message(client, chat_setup):
    alice, bob, item, chat = chat_setup

    assert sorted(chat["participants"]) == sorted([alice["id"], bob["id"]])
    assert chat["itemId"] == item["id"]
    assert chat["unreadCount"] == 0
    assert chat["lastMessage"]["content"] == "Is this mine?"
    assert {p["name"] for p in chat["participantProfiles"]} == {"Alice", "Bob"}

    listed = client.get("/api/chat", headers=alice["headers"]).json()
    assert len(listed) == 1
    assert listed[0]["id"] == chat["id"]
    assert listed[0]["unreadCount"] == 1
    assert listed[0]["item"]["title"] == item["title"]


def test_starting_again_reuses_chat_without_repeating_message(client, chat_setup):
    alice, bob, item, chat = chat_setup

    r = client.post("/api/chat/start", json={"itemId": item["id"], "message": "Is this mine?"}, headers=bob["headers"])
    assert r.json()["chat"]["id"] == chat["id"]

    messages = client.get(f"/api/chat/{chat['id']}/messages", headers=bob["headers"]).json()["messages"]
    assert [m["content"] for m in messages] == ["Is this mine?"]


def test_cannot_start_chat_about_own_item(client, register, post_item):
    alice = register("Alice")
    item = post_item(alice)["item"]

    r = client.post("/api/chat/start", json={"itemId": item["id"]}, headers=alice["headers"])
    assert r.status_code == 400
    assert r.json() == {"message": "Cannot start chat with yourself"}


def test_listing_messages_is_oldest_first_and_marks_read(client, chat_setup):
    alice, bob, _, chat = chat_setup
    for text in ("second", "third"):
        assert send(client, chat["id"], bob, text).status_code == 201

    assert unread_total(client, alice) == 3
    assert unread_total(client, bob) == 0

    body = client.get(f"/api/chat/{chat['id']}/messages", headers=alice["headers"]).json()
    assert [m["content"] for m in body["messages"]] == ["Is this mine?", "second", "third"]
    assert all(alice["id"] in [r["userId"] for r in m["readBy"]] for m in body["messages"])
    assert body["pagination"]["totalMessages"] == 3

    assert unread_total(client, alice) == 0
    assert client.get(f"/api/chat/{chat['id']}", headers=alice["headers"]).json()["unreadCount"] == 0


def test_message_pages_hold_the_newest_messages(client, chat_setup):
    _, bob, _, chat = chat_setup
    for text in ("two", "three"):
        send(client, chat["id"], bob, text)

    body = client.get(f"/api/chat/{chat['id']}/messages", params={"limit": 2}, headers=bob["headers"]).json()
    assert [m["content"] for m in body["messages"]] == ["two", "three"]
    assert body["pagination"]["hasNext"] is True

    older = client.get(f"/api/chat/{chat['id']}/messages", params={"limit": 2, "page": 2}, headers=bob["headers"]).json()
    assert [m["content"] for m in older["messages"]] == ["Is this mine?"]


def test_mark_read_clears_unread(client, chat_setup):
    alice, bob, _, chat = chat_setup
    send(client, chat["id"], bob, "ping")

    r = client.put(f"/api/chat/{chat['id']}/read", headers=alice["headers"])
    assert r.status_code == 200
    assert unread_total(client, alice) == 0

    send(client, chat["id"], alice, "pong")
    assert unread_total(client, bob) == 1


def test_typed_messages(client, chat_setup):
    _, bob, _, chat = chat_setup

    r = send(client, chat["id"], bob, "photo", messageType="image")
    assert r.status_code == 400

    r = send(client, chat["id"], bob, "photo", messageType="image", imageUrl="/uploads/a.png")
    assert r.status_code == 201
    assert r.json()["imageUrl"] == "/uploads/a.png"

    r = send(client, chat["id"], bob, "meet here", messageType="location",
             location={"lat": 40.71, "lng": -74.0, "address": "Main St"})
    assert r.status_code == 201
    assert r.json()["location"]["address"] == "Main St"

    r = send(client, chat["id"], bob, "hi")
    assert r.json()["messageType"] == "text"

    assert send(client, chat["id"], bob, "").status_code == 400


def test_only_participants_use_a_chat(client, register, chat_setup):
    _, _, _, chat = chat_setup
    carol = register("Carol")

    assert client.get(f"/api/chat/{chat['id']}", headers=carol["headers"]).status_code == 403
    assert client.get(f"/api/chat/{chat['id']}/messages", headers=carol["headers"]).status_code == 403
    r = send(client, chat["id"], carol, "let me in")
    assert r.status_code == 403
    assert r.json() == {"message": "Not authorized to send messages in this chat"}


def test_archived_chat_leaves_list_but_stays_readable(client, chat_setup):
    alice, _, _, chat = chat_setup

    assert client.delete(f"/api/chat/{chat['id']}", headers=alice["headers"]).status_code == 200
    assert client.get("/api/chat", headers=alice["headers"]).json() == []

    r = client.get(f"/api/chat/{chat['id']}", headers=alice["headers"])
    assert r.status_code == 200
    assert r.json()["isActive"] is False


def test_only_sender_edits_message(client, chat_setup):
    alice, bob, _, chat = chat_setup
    message = send(client, chat["id"], bob, "tpyo").json()

    r = client.put(f"/api/chat/{chat['id']}/messages/{message['id']}", json={"content": "typo"}, headers=alice["headers"])
    assert r.status_code == 403

    r = client.put(f"/api/chat/{chat['id']}/messages/{message['id']}", json={"content": "typo"}, headers=bob["headers"])
    assert r.status_code == 200
    assert r.json()["content"] == "typo"
    assert r.json()["edited"] is True


def test_socket_receives_new_messages(client, chat_setup):
    alice, bob, _, chat = chat_setup

    with client.websocket_connect(f"/ws/chat/{chat['id']}?token={alice['token']}") as ws:
        assert ws.receive_json() == {"event": "joined", "data": {"chatId": chat["id"]}}
        sent = send(client, chat["id"], bob, "are you there?").json()

        event = ws.receive_json()
        assert event["event"] == "receive-message"
        assert event["data"]["chatId"] == chat["id"]
        assert event["data"]["message"]["id"] == sent["id"]
        assert event["data"]["message"]["content"] == "are you there?"


def test_socket_rejects_bad_token_and_outsiders(client, register, chat_setup):
    _, _, _, chat = chat_setup
    carol = register("Carol")

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token=bogus") as ws:
            ws.receive_json()

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{chat['id']}?token={carol['token']}") as ws:
            ws.receive_json()


def test_only_participants_archive(client, register, chat_setup):
    alice, _, _, chat = chat_setup
    carol = register("Carol")

    r = client.delete(f"/api/chat/{chat['id']}", headers=carol["headers"])
    assert r.status_code == 403
    assert r.json() == {"message": "Not authorized to delete this chat"}
    assert client.get(f"/api/chat/{chat['id']}", headers=alice["headers"]).json()["isActive"] is True
