"""
Multi-step operations spanning several repositories.

None of these sequences is transactional: a failure between steps can leave
a denormalized field (unread counters, last message, potential matches)
stale. Every such field can be recomputed from the item and message
collections.
"""
import logging
from math import ceil
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException, UploadFile

from database import now
from matching import DEFAULT_MATCH_CONFIDENCE, matches_for
from repositories import ItemRepository, Repositories
from storage import LocalImageStore

logger = logging.getLogger(__name__)

POINTS_FOR_POST = 10
POINTS_FOR_RESOLVE = 50


def pagination(page: int, limit: int, skip: int, returned: int, total: int, total_key: str = "totalItems") -> Dict[str, Any]:
    return {
        "currentPage": page,
        "totalPages": ceil(total / limit) if limit else 0,
        total_key: total,
        "hasNext": skip + returned < total,
        "hasPrev": page > 1,
    }


def require_owner(item: Dict[str, Any], user_id: str):
    if item.get("postedBy") != user_id:
        raise HTTPException(status_code=403, detail="Not authorized")


def require_participant(chat: Dict[str, Any], user_id: str, action: str = "access"):
    if user_id not in chat.get("participants", []):
        raise HTTPException(status_code=403, detail=f"Not authorized to {action} this chat")


# ------------------ Items ------------------

def post_item(repos: Repositories, store: LocalImageStore, data: Dict[str, Any], user_id: str,
              uploads: Optional[List[UploadFile]] = None, captions: Optional[List[str]] = None) -> Tuple[Dict[str, Any], int]:
    """Persist a new item, credit the poster and seed its potential matches."""
    images = store.save_all(uploads or [], captions)
    try:
        item = repos.items.create(dict(data, images=images), posted_by=user_id)
    except Exception:
        store.delete_all(images)
        raise

    repos.users.increment(user_id, "itemsPosted")
    repos.users.add_points(user_id, POINTS_FOR_POST)

    matches = matches_for(repos.items, item)
    for match in matches:
        repos.items.add_potential_match(item["_id"], str(match["_id"]), DEFAULT_MATCH_CONFIDENCE)
    logger.info("Item %s posted by %s with %d potential matches", item["_id"], user_id, len(matches))
    return repos.items.get(item["_id"]), len(matches)


def resolve_item(repos: Repositories, item_id: str, user_id: str) -> Dict[str, Any]:
    item = repos.items.require(item_id)
    require_owner(item, user_id)
    if item.get("status") == "resolved":
        return item
    item = repos.items.mark_resolved(item["_id"], user_id)
    repos.users.increment(user_id, "itemsReturned")
    repos.users.add_points(user_id, POINTS_FOR_RESOLVE)
    logger.info("Item %s resolved by %s", item_id, user_id)
    return item


def delete_item(repos: Repositories, store: LocalImageStore, item_id: str, user_id: str):
    item = repos.items.require(item_id)
    require_owner(item, user_id)
    store.delete_all(item.get("images", []))
    repos.items.delete(item["_id"])
    logger.info("Item %s deleted by %s", item_id, user_id)


def with_match_details(repos: Repositories, item: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(item)
    poster = repos.users.summaries([item.get("postedBy", "")])
    out["poster"] = poster.get(item.get("postedBy"))
    matches = []
    for m in item.get("potentialMatches", []):
        entry = dict(m)
        matched = repos.items.get(m["itemId"]) if ObjectId.is_valid(m.get("itemId") or "") else None
        entry["item"] = ItemRepository.summary(matched)
        matches.append(entry)
    out["potentialMatches"] = matches
    return out


def with_posters(repos: Repositories, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    posters = repos.users.summaries([i.get("postedBy", "") for i in items])
    return [dict(i, poster=posters.get(i.get("postedBy"))) for i in items]


# ------------------ Chat ------------------

def start_chat(repos: Repositories, item_id: str, user_id: str, message: Optional[str] = None) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    item = repos.items.require(item_id)
    if item["postedBy"] == user_id:
        raise HTTPException(status_code=400, detail="Cannot start chat with yourself")
    chat, _ = repos.chats.find_or_create(user_id, item["postedBy"], str(item["_id"]))
    sent = None
    last = chat.get("lastMessage") or {}
    if message and last.get("content") != message:
        sent = send_message(repos, str(chat["_id"]), user_id, {"messageType": "text", "content": message})
    return repos.chats.get(chat["_id"]), sent


def send_message(repos: Repositories, chat_id: str, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    chat = repos.chats.require(chat_id)
    require_participant(chat, user_id, "send messages in")
    message = repos.messages.create(str(chat["_id"]), user_id, payload)
    repos.chats.record_message(chat, message)
    logger.debug("Message %s sent in chat %s", message["_id"], chat_id)
    return message


def list_messages(repos: Repositories, chat_id: str, user_id: str, page: int = 1, limit: int = 50) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Oldest-first page of messages; reading the chat clears the caller's unread messages."""
    chat = repos.chats.require(chat_id)
    require_participant(chat, user_id)
    skip = (page - 1) * limit
    messages, total = repos.messages.page(str(chat["_id"]), skip, limit)
    repos.messages.mark_chat_read(str(chat["_id"]), user_id)
    repos.chats.mark_read(chat["_id"], user_id)
    # re-read so the page carries the receipts just written
    messages = [repos.messages.get(m["_id"]) for m in reversed(messages)]
    return messages, pagination(page, limit, skip, len(messages), total, total_key="totalMessages")


def mark_chat_read(repos: Repositories, chat_id: str, user_id: str):
    chat = repos.chats.require(chat_id)
    require_participant(chat, user_id)
    repos.messages.mark_chat_read(str(chat["_id"]), user_id)
    repos.chats.mark_read(chat["_id"], user_id)


def archive_chat(repos: Repositories, chat_id: str, user_id: str):
    chat = repos.chats.require(chat_id)
    require_participant(chat, user_id, "delete")
    repos.chats.archive(chat["_id"])
    logger.info("Chat %s archived by %s", chat_id, user_id)


def edit_message(repos: Repositories, chat_id: str, message_id: str, user_id: str, content: str) -> Dict[str, Any]:
    chat = repos.chats.require(chat_id)
    require_participant(chat, user_id)
    message = repos.messages.get(message_id)
    if not message or message["chatId"] != str(chat["_id"]):
        raise HTTPException(status_code=404, detail="Message not found")
    if message["sender"] != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to edit this message")
    return repos.messages.edit(message["_id"], content)


def chat_overview(repos: Repositories, chat: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    out = dict(chat)
    out["unreadCount"] = repos.messages.unread_count(str(chat["_id"]), user_id)
    out["item"] = ItemRepository.summary(repos.items.get(chat["itemId"]))
    profiles = repos.users.summaries(chat.get("participants", []))
    out["participantProfiles"] = [profiles[p] for p in chat.get("participants", []) if p in profiles]
    return out


# ------------------ Notifications ------------------

def notifications_for(repos: Repositories, user_id: str) -> List[Dict[str, Any]]:
    notifications = []
    for item in repos.items.find_active({"postedBy": user_id}):
        matches = matches_for(repos.items, item)
        if matches:
            notifications.append({
                "type": "potential_match",
                "itemId": str(item["_id"]),
                "itemTitle": item.get("title"),
                "matches": with_posters(repos, matches),
                "createdAt": now(),
            })
    notifications.sort(key=lambda n: n["createdAt"], reverse=True)
    return notifications


def live_match_count(repos: Repositories, user_id: str) -> int:
    return sum(len(matches_for(repos.items, item)) for item in repos.items.find_active({"postedBy": user_id}))


def send_match_alert(repos: Repositories, user_id: str, item_id: str, matched_item_id: str, confidence: float):
    item = repos.items.get(item_id)
    matched = repos.items.get(matched_item_id)
    if not item or not matched:
        raise HTTPException(status_code=404, detail="Item not found")
    if user_id not in (item.get("postedBy"), matched.get("postedBy")):
        raise HTTPException(status_code=403, detail="Not authorized")

    repos.items.add_potential_match(item["_id"], str(matched["_id"]), confidence)
    repos.items.add_potential_match(matched["_id"], str(item["_id"]), confidence)

    for owner_id in {item["postedBy"], matched["postedBy"]}:
        owner = repos.users.get(owner_id)
        if owner and (owner.get("notificationPreferences") or {}).get("email", True):
            logger.info("Match alert for %s: items %s and %s", owner.get("email"), item_id, matched_item_id)
