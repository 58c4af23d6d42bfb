"""
Persistence for items, users, chats and messages.

Each repository owns one collection and is built around an injected pymongo
``Database``; routes obtain them through ``get_repositories``.
"""
import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import Depends, HTTPException
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, now, oid
from matching import NEARBY_RADIUS_M, nearest_first
from schemas import Badge, NotificationPreferences, PotentialMatch

logger = logging.getLogger(__name__)

ITEM_TTL = timedelta(days=30)

PRIVATE_USER_FIELDS = frozenset({"passwordHash", "passwordSalt"})
# pass copies as projections; the driver may add "_id" to them
PUBLIC_USER_FIELDS = {field: 0 for field in PRIVATE_USER_FIELDS}
SUMMARY_USER_FIELDS = {"name": 1, "avatar": 1}


class ItemRepository:
    collection_name = "item"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def ensure_indexes(self):
        self.collection.create_index([("status", ASCENDING), ("type", ASCENDING), ("category", ASCENDING)])
        self.collection.create_index([("postedBy", ASCENDING)])
        self.collection.create_index([("expiresAt", ASCENDING)])

    @staticmethod
    def key(item_id) -> ObjectId:
        return item_id if isinstance(item_id, ObjectId) else oid(item_id)

    def create(self, data: Dict[str, Any], posted_by: str) -> Dict[str, Any]:
        stamp = now()
        doc = dict(data)
        doc.update({
            "date": doc.get("date") or stamp,
            "status": "active",
            "isResolved": False,
            "resolvedAt": None,
            "resolvedBy": None,
            "views": 0,
            "potentialMatches": [],
            "postedBy": posted_by,
            "expiresAt": stamp + ITEM_TTL,
            "created_at": stamp,
        })
        item_id = create_document(self.database, self.collection_name, doc)
        return self.get(item_id)

    def get(self, item_id) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": self.key(item_id)})

    def require(self, item_id) -> Dict[str, Any]:
        item = self.get(item_id)
        if not item:
            raise HTTPException(status_code=404, detail="Item not found")
        return item

    def increment_views(self, item_id) -> Optional[Dict[str, Any]]:
        return self.collection.find_one_and_update(
            {"_id": self.key(item_id)},
            {"$inc": {"views": 1}},
            return_document=ReturnDocument.AFTER,
        )

    def update_fields(self, item_id, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields, updated_at=now())
        return self.collection.find_one_and_update(
            {"_id": self.key(item_id)},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def mark_resolved(self, item_id, resolved_by: str) -> Dict[str, Any]:
        stamp = now()
        return self.update_fields(item_id, {
            "status": "resolved",
            "isResolved": True,
            "resolvedAt": stamp,
            "resolvedBy": resolved_by,
        })

    def add_potential_match(self, item_id, match_id: str, confidence: float) -> bool:
        """Append a match unless one for ``match_id`` is already recorded."""
        item = self.require(item_id)
        entry = PotentialMatch(itemId=str(match_id), confidence=confidence, matchedAt=now())
        res = self.collection.update_one(
            {"_id": item["_id"], "potentialMatches.itemId": {"$ne": str(match_id)}},
            {"$push": {"potentialMatches": entry.model_dump()}},
        )
        return res.modified_count == 1

    def delete(self, item_id):
        self.collection.delete_one({"_id": self.key(item_id)})

    def expire_overdue(self) -> int:
        res = self.collection.update_many(
            {"status": "active", "expiresAt": {"$lt": now()}},
            {"$set": {"status": "expired", "updated_at": now()}},
        )
        if res.modified_count:
            logger.info("Expired %d stale items", res.modified_count)
        return res.modified_count

    def find_active(self, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return list(self.collection.find(dict(query or {}, status="active")))

    def find_nearby(self, coordinates: Dict[str, float], max_distance_m: float = NEARBY_RADIUS_M) -> List[Dict[str, Any]]:
        return nearest_first(self.find_active(), coordinates, max_distance_m)

    def search(self, query: Dict[str, Any], sort_field: str, sort_order: int, skip: int, limit: int,
               near: Optional[Dict[str, float]] = None, radius_m: Optional[float] = None) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of items and the total count.

        With ``near`` set the results are restricted to ``radius_m`` and
        ordered nearest first, ignoring the requested sort.
        """
        if near is not None:
            ranked = nearest_first(self.collection.find(query), near, radius_m)
            return ranked[skip:skip + limit], len(ranked)
        total = self.collection.count_documents(query)
        cursor = (
            self.collection.find(query)
            .sort([(sort_field, sort_order), ("_id", sort_order)])
            .skip(skip)
            .limit(limit)
        )
        return list(cursor), total

    def count(self, query: Dict[str, Any]) -> int:
        return self.collection.count_documents(query)

    def category_stats(self, limit: int = 5) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": {"status": "active"}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": limit},
        ]
        return [{"category": row["_id"], "count": row["count"]} for row in self.collection.aggregate(pipeline)]

    @staticmethod
    def summary(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not item:
            return None
        return {
            "id": str(item["_id"]),
            "title": item.get("title"),
            "description": item.get("description"),
            "type": item.get("type"),
            "category": item.get("category"),
            "images": item.get("images", []),
        }


class UserRepository:
    collection_name = "user"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def ensure_indexes(self):
        self.collection.create_index([("email", ASCENDING)], unique=True)
        self.collection.create_index([("points", DESCENDING)])

    def create(self, email: str, password_hash: str, password_salt: str, name: str,
               phone: Optional[str] = None, location: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        doc = {
            "email": email.lower().strip(),
            "passwordHash": password_hash,
            "passwordSalt": password_salt,
            "name": name.strip(),
            "avatar": "",
            "phone": phone,
            "location": location or {},
            "bio": "",
            "isVerified": False,
            "points": 0,
            "level": 1,
            "badges": [],
            "itemsPosted": 0,
            "itemsReturned": 0,
            "helpfulRating": 0,
            "ratingCount": 0,
            "notificationPreferences": NotificationPreferences().model_dump(),
        }
        try:
            user_id = create_document(self.database, self.collection_name, doc)
        except DuplicateKeyError:
            raise HTTPException(status_code=400, detail="User already exists")
        return self.get(user_id)

    def get(self, user_id, projection: Optional[Dict[str, int]] = None) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": oid(user_id)}, projection)

    def require(self, user_id, projection: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        user = self.get(user_id, projection)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"email": email.lower().strip()})

    def update_fields(self, user_id, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.collection.find_one_and_update(
            {"_id": oid(user_id)},
            {"$set": dict(fields, updated_at=now())},
            projection=dict(PUBLIC_USER_FIELDS),
            return_document=ReturnDocument.AFTER,
        )

    def increment(self, user_id, field: str, amount: int = 1):
        self.collection.update_one({"_id": oid(user_id)}, {"$inc": {field: amount}})

    def add_points(self, user_id, points: int) -> Optional[Dict[str, Any]]:
        """Add points and level up; a level crossing earns one "Level N" badge."""
        if points < 0:
            raise ValueError("points must not be negative")
        user = self.collection.find_one_and_update(
            {"_id": oid(user_id)},
            {"$inc": {"points": points}},
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            return None
        new_level = user["points"] // 100 + 1
        # only the call that actually raises the level awards its badge
        raised = self.collection.update_one(
            {"_id": user["_id"], "level": {"$lt": new_level}},
            {"$set": {"level": new_level}},
        )
        if raised.modified_count:
            self.add_badge(user["_id"], f"Level {new_level}", f"Reached level {new_level}!")
        return self.collection.find_one({"_id": user["_id"]}, dict(PUBLIC_USER_FIELDS))

    def add_badge(self, user_id, name: str, description: Optional[str] = None) -> bool:
        key = user_id if isinstance(user_id, ObjectId) else oid(user_id)
        badge = Badge(name=name, description=description, earnedAt=now())
        res = self.collection.update_one(
            {"_id": key, "badges.name": {"$ne": name}},
            {"$push": {"badges": badge.model_dump()}},
        )
        return res.modified_count == 1

    def rate(self, user_id, rating: float) -> float:
        user = self.require(user_id)
        count = user.get("ratingCount", 0)
        new_count = count + 1
        new_rating = (user.get("helpfulRating", 0) * count + rating) / new_count
        self.collection.update_one(
            {"_id": user["_id"]},
            {"$set": {"helpfulRating": new_rating, "ratingCount": new_count}},
        )
        return new_rating

    def leaderboard(self, since=None, limit: int = 20) -> List[Dict[str, Any]]:
        query = {"created_at": {"$gte": since}} if since is not None else {}
        fields = {"name": 1, "avatar": 1, "points": 1, "level": 1, "badges": 1, "itemsReturned": 1, "helpfulRating": 1}
        cursor = self.collection.find(query, fields).sort([("points", DESCENDING), ("itemsReturned", DESCENDING)]).limit(limit)
        return list(cursor)

    def search_by_name(self, q: str, limit: int = 10) -> List[Dict[str, Any]]:
        fields = {"name": 1, "avatar": 1, "level": 1, "points": 1, "badges": 1}
        return list(self.collection.find({"name": {"$regex": re.escape(q), "$options": "i"}}, fields).limit(limit))

    def summaries(self, user_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        keys = [ObjectId(u) for u in user_ids if ObjectId.is_valid(u)]
        out = {}
        for u in self.collection.find({"_id": {"$in": keys}}, dict(SUMMARY_USER_FIELDS)):
            out[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "avatar": u.get("avatar", "")}
        return out

    def count(self) -> int:
        return self.collection.count_documents({})


class ChatRepository:
    collection_name = "chat"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def ensure_indexes(self):
        # one chat per unordered participant pair and item
        self.collection.create_index([("participantsKey", ASCENDING), ("itemId", ASCENDING)], unique=True)
        self.collection.create_index([("participants", ASCENDING), ("lastActivity", DESCENDING)])

    @staticmethod
    def participants_key(participants: List[str]) -> str:
        return ":".join(participants)

    def get(self, chat_id) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": oid(chat_id)})

    def require(self, chat_id) -> Dict[str, Any]:
        chat = self.get(chat_id)
        if not chat:
            raise HTTPException(status_code=404, detail="Chat not found")
        return chat

    def find_between(self, participants: List[str], item_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"participantsKey": self.participants_key(participants), "itemId": item_id})

    def find_or_create(self, user_a: str, user_b: str, item_id: str) -> Tuple[Dict[str, Any], bool]:
        """Return the chat for this pair and item, creating it on first contact.

        Two first contacts can race past the lookup; the loser's insert hits
        the unique index and re-reads the winner's chat.
        """
        participants = sorted([str(user_a), str(user_b)])
        chat = self.find_between(participants, item_id)
        if chat:
            return chat, False
        stamp = now()
        doc = {
            "participants": participants,
            "participantsKey": self.participants_key(participants),
            "itemId": str(item_id),
            "lastMessage": None,
            "unreadCount": {p: 0 for p in participants},
            "isActive": True,
            "startedAt": stamp,
            "lastActivity": stamp,
        }
        try:
            chat_id = create_document(self.database, self.collection_name, doc)
        except DuplicateKeyError:
            logger.info("Chat for item %s created concurrently, re-reading", item_id)
            return self.find_between(participants, item_id), False
        logger.info("Chat %s started for item %s", chat_id, item_id)
        return self.get(chat_id), True

    def list_for_user(self, user_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"participants": user_id}
        if active_only:
            query["isActive"] = True
        return list(self.collection.find(query).sort([("lastActivity", DESCENDING)]))

    def record_message(self, chat: Dict[str, Any], message: Dict[str, Any]):
        """Mirror a new message onto the chat and bump every other participant's unread count."""
        update: Dict[str, Any] = {
            "$set": {
                "lastMessage": {
                    "content": message["content"],
                    "sender": message["sender"],
                    "timestamp": message["created_at"],
                },
                "lastActivity": message["created_at"],
            },
        }
        others = {f"unreadCount.{p}": 1 for p in chat["participants"] if p != message["sender"]}
        if others:
            update["$inc"] = others
        self.collection.update_one({"_id": chat["_id"]}, update)

    def mark_read(self, chat_id, user_id: str):
        self.collection.update_one(
            {"_id": oid(chat_id)},
            {"$set": {f"unreadCount.{user_id}": 0, "lastActivity": now()}},
        )

    def cached_unread(self, chat_id, user_id: str) -> int:
        chat = self.require(chat_id)
        return int((chat.get("unreadCount") or {}).get(user_id, 0))

    def archive(self, chat_id):
        self.collection.update_one({"_id": oid(chat_id)}, {"$set": {"isActive": False, "updated_at": now()}})


class MessageRepository:
    collection_name = "message"

    def __init__(self, database: Database):
        self.database = database
        self.collection = database[self.collection_name]

    def ensure_indexes(self):
        self.collection.create_index([("chatId", ASCENDING), ("created_at", DESCENDING)])
        self.collection.create_index([("sender", ASCENDING), ("created_at", DESCENDING)])

    def create(self, chat_id: str, sender: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(payload)
        doc.update({
            "chatId": str(chat_id),
            "sender": sender,
            "isRead": False,
            "readAt": None,
            "readBy": [],
            "edited": False,
            "editedAt": None,
        })
        message_id = create_document(self.database, self.collection_name, doc)
        return self.get(message_id)

    def get(self, message_id) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": oid(message_id)})

    def page(self, chat_id: str, skip: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        """Newest-first page of a chat's messages and the chat's message total."""
        query = {"chatId": str(chat_id)}
        total = self.collection.count_documents(query)
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip).limit(limit)
        return list(cursor), total

    def unread_for(self, chat_id: str, user_id: str) -> List[Dict[str, Any]]:
        candidates = self.collection.find({"chatId": str(chat_id), "sender": {"$ne": user_id}})
        return [m for m in candidates if not is_read_by(m, user_id)]

    def unread_count(self, chat_id: str, user_id: str) -> int:
        return len(self.unread_for(chat_id, user_id))

    def mark_read(self, message: Dict[str, Any], user_id: str) -> bool:
        """Record a read receipt for ``user_id``; returns False when one already exists."""
        if message["sender"] == user_id or is_read_by(message, user_id):
            return False
        stamp = now()
        update: Dict[str, Any] = {"$push": {"readBy": {"userId": user_id, "readAt": stamp}}}
        if not message.get("isRead"):
            update["$set"] = {"isRead": True, "readAt": stamp}
        self.collection.update_one({"_id": message["_id"]}, update)
        return True

    def mark_chat_read(self, chat_id: str, user_id: str) -> int:
        marked = 0
        for m in self.unread_for(chat_id, user_id):
            if self.mark_read(m, user_id):
                marked += 1
        return marked

    def edit(self, message_id, content: str) -> Dict[str, Any]:
        return self.collection.find_one_and_update(
            {"_id": oid(message_id)},
            {"$set": {"content": content, "edited": True, "editedAt": now(), "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )


def is_read_by(message: Dict[str, Any], user_id: str) -> bool:
    return any(r.get("userId") == user_id for r in message.get("readBy", []))


class Repositories:
    def __init__(self, database: Database):
        self.items = ItemRepository(database)
        self.users = UserRepository(database)
        self.chats = ChatRepository(database)
        self.messages = MessageRepository(database)

    def ensure_indexes(self):
        for repo in (self.items, self.users, self.chats, self.messages):
            repo.ensure_indexes()


def get_repositories(database: Database = Depends(get_db)) -> Repositories:
    return Repositories(database)
