import pytest
from bson import ObjectId
from fastapi import HTTPException

import services
from repositories import PUBLIC_USER_FIELDS, SUMMARY_USER_FIELDS


def test_find_or_create_is_order_independent(repos, make_user, make_item):
    alice, bob = make_user("Alice"), make_user("Bob")
    item_id = str(make_item(alice)["_id"])

    first, created = repos.chats.find_or_create(alice, bob, item_id)
    second, created_again = repos.chats.find_or_create(bob, alice, item_id)

    assert created is True
    assert created_again is False
    assert first["_id"] == second["_id"]
    assert first["participants"] == sorted([alice, bob])
    assert repos.chats.collection.count_documents({}) == 1


def test_find_or_create_separates_items_and_pairs(repos, make_user, make_item):
    alice, bob, carol = make_user("Alice"), make_user("Bob"), make_user("Carol")
    item = str(make_item(alice)["_id"])
    other_item = str(make_item(alice, title="Wallet")["_id"])

    a, _ = repos.chats.find_or_create(alice, bob, item)
    b, _ = repos.chats.find_or_create(alice, carol, item)
    c, _ = repos.chats.find_or_create(alice, bob, other_item)

    assert len({a["_id"], b["_id"], c["_id"]}) == 3


def test_find_or_create_recovers_from_concurrent_insert(repos, make_user, make_item, monkeypatch):
    alice, bob = make_user("Alice"), make_user("Bob")
    item_id = str(make_item(alice)["_id"])
    winner, _ = repos.chats.find_or_create(alice, bob, item_id)

    real_find = repos.chats.find_between
    calls = []

    def stale_then_real(participants, item):
        calls.append(item)
        return None if len(calls) == 1 else real_find(participants, item)

    monkeypatch.setattr(repos.chats, "find_between", stale_then_real)
    chat, created = repos.chats.find_or_create(bob, alice, item_id)

    assert created is False
    assert chat["_id"] == winner["_id"]
    assert len(calls) == 2


def test_send_message_bumps_only_other_participants(repos, make_user, make_item):
    alice, bob = make_user("Alice"), make_user("Bob")
    chat, _ = repos.chats.find_or_create(alice, bob, str(make_item(alice)["_id"]))
    chat_id = str(chat["_id"])

    before_bob = repos.messages.unread_count(chat_id, bob)
    before_alice = repos.messages.unread_count(chat_id, alice)
    services.send_message(repos, chat_id, alice, {"messageType": "text", "content": "Found it?"})

    assert repos.messages.unread_count(chat_id, bob) == before_bob + 1
    assert repos.messages.unread_count(chat_id, alice) == before_alice
    refreshed = repos.chats.get(chat_id)
    assert refreshed["lastMessage"]["content"] == "Found it?"
    assert refreshed["lastMessage"]["sender"] == alice


def test_cached_and_derived_unread_counts_agree(repos, make_user, make_item):
    alice, bob = make_user("Alice"), make_user("Bob")
    chat, _ = repos.chats.find_or_create(alice, bob, str(make_item(alice)["_id"]))
    chat_id = str(chat["_id"])

    def assert_agree():
        for user in (alice, bob):
            assert repos.chats.cached_unread(chat_id, user) == repos.messages.unread_count(chat_id, user)

    for sender, text in [(alice, "hi"), (alice, "still there?"), (bob, "yes")]:
        services.send_message(repos, chat_id, sender, {"messageType": "text", "content": text})
        assert_agree()

    assert repos.messages.unread_count(chat_id, bob) == 2
    services.list_messages(repos, chat_id, bob, page=1, limit=1)
    assert_agree()
    assert repos.messages.unread_count(chat_id, bob) == 0

    services.send_message(repos, chat_id, bob, {"messageType": "text", "content": "call me"})
    services.mark_chat_read(repos, chat_id, alice)
    assert_agree()
    assert repos.messages.unread_count(chat_id, alice) == 0


def test_read_receipts_are_unique_per_user(repos, make_user, make_item):
    alice, bob = make_user("Alice"), make_user("Bob")
    chat, _ = repos.chats.find_or_create(alice, bob, str(make_item(alice)["_id"]))
    message = services.send_message(repos, str(chat["_id"]), alice, {"messageType": "text", "content": "hello"})

    assert repos.messages.mark_read(message, bob) is True
    assert repos.messages.mark_read(repos.messages.get(message["_id"]), bob) is False
    assert repos.messages.mark_read(message, alice) is False

    stored = repos.messages.get(message["_id"])
    assert [r["userId"] for r in stored["readBy"]] == [bob]
    assert stored["isRead"] is True
    assert stored["readAt"] is not None


def test_non_participant_cannot_send(repos, make_user, make_item):
    alice, bob, mallory = make_user("Alice"), make_user("Bob"), make_user("Mallory")
    chat, _ = repos.chats.find_or_create(alice, bob, str(make_item(alice)["_id"]))

    with pytest.raises(HTTPException) as exc:
        services.send_message(repos, str(chat["_id"]), mallory, {"messageType": "text", "content": "hey"})
    assert exc.value.status_code == 403


def test_add_points_levels_up_with_one_badge_per_crossing(repos, make_user):
    alice = make_user("Alice")

    user = repos.users.add_points(alice, 95)
    assert (user["points"], user["level"], user["badges"]) == (95, 1, [])

    user = repos.users.add_points(alice, 10)
    assert user["level"] == 2
    assert [b["name"] for b in user["badges"]] == ["Level 2"]

    user = repos.users.add_points(alice, 5)
    assert [b["name"] for b in user["badges"]] == ["Level 2"]

    user = repos.users.add_points(alice, 200)
    assert user["points"] == 310
    assert user["level"] == 4
    assert [b["name"] for b in user["badges"]] == ["Level 2", "Level 4"]


def test_add_points_rejects_negative(repos, make_user):
    with pytest.raises(ValueError):
        repos.users.add_points(make_user("Alice"), -5)


def test_badges_are_unique_by_name(repos, make_user):
    alice = make_user("Alice")
    assert repos.users.add_badge(alice, "Good Samaritan", "Returned an item") is True
    assert repos.users.add_badge(alice, "Good Samaritan", "Again") is False
    assert len(repos.users.get(alice)["badges"]) == 1


def test_potential_matches_are_deduplicated(repos, make_user, make_item):
    alice, bob = make_user("Alice"), make_user("Bob")
    lost = make_item(alice, type="lost")
    found = make_item(bob, type="found")

    assert repos.items.add_potential_match(lost["_id"], str(found["_id"]), 0.7) is True
    assert repos.items.add_potential_match(lost["_id"], str(found["_id"]), 0.9) is False

    matches = repos.items.get(lost["_id"])["potentialMatches"]
    assert len(matches) == 1
    assert matches[0]["confidence"] == 0.7


def test_new_items_expire_after_thirty_days(repos, make_user, make_item):
    item = make_item(make_user("Alice"))
    assert (item["expiresAt"] - item["created_at"]).days == 30

    repos.items.collection.update_one({"_id": item["_id"]}, {"$set": {"expiresAt": item["created_at"].replace(year=2000)}})
    assert repos.items.expire_overdue() == 1
    assert repos.items.get(item["_id"])["status"] == "expired"


def test_user_projections_survive_queries(repos, make_user):
    alice, bob = make_user("Alice"), make_user("Bob")

    repos.users.add_points(alice, 10)
    repos.users.update_fields(alice, {"bio": "hi"})
    repos.users.summaries([alice, bob])

    assert PUBLIC_USER_FIELDS == {"passwordHash": 0, "passwordSalt": 0}
    assert SUMMARY_USER_FIELDS == {"name": 1, "avatar": 1}


def test_level_badge_goes_to_the_call_that_raises_the_level(repos, make_user):
    alice = make_user("Alice")
    repos.users.collection.update_one({"_id": ObjectId(alice)}, {"$set": {"level": 2}})

    user = repos.users.add_points(alice, 150)

    assert user["level"] == 2
    assert user["badges"] == []
