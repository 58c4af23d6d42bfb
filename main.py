import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import WS_1008_POLICY_VIOLATION

import database
import services
from auth import AuthedUser, get_current_user, hash_password, sign_token, user_from_token, verify_password
from config import CORS_ORIGINS, LOG_LEVEL, PORT, UPLOAD_DIR, UPLOAD_URL_PREFIX
from database import now, serialize_doc
from matching import matches_for
from relay import ChatRelay, get_relay
from repositories import PRIVATE_USER_FIELDS, PUBLIC_USER_FIELDS, Repositories, get_repositories
from schemas import (
    CATEGORIES,
    ITEM_TYPES,
    EditMessageRequest,
    ItemCreate,
    ItemUpdate,
    LoginRequest,
    MatchAlertRequest,
    PasswordChange,
    PreferencesUpdate,
    ProfileUpdate,
    RateRequest,
    RegisterRequest,
    SendMessageRequest,
    StartChatRequest,
)
from storage import LocalImageStore, get_image_store

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            repos = Repositories(database.db)
            repos.ensure_indexes()
            repos.items.expire_overdue()
        except PyMongoError as e:
            logger.error("Could not prepare database on startup: %s", e)
    yield


app = FastAPI(title="Lost & Found API", description="Report, match and chat about lost and found items", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=UPLOAD_DIR, check_dir=False), name="uploads")


# ------------------ Errors ------------------

def validation_message(errors: List[Dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form")]
    msg = first.get("msg", "Invalid value")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"message": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse({"message": validation_message(exc.errors())}, status_code=400)


@app.exception_handler(PyMongoError)
async def database_error(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Server error"}, status_code=500)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Server error"}, status_code=500)


def parse_json_field(name: str, raw: Optional[str], default=None):
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in {name}")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return serialize_doc({k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS})


# ------------------ Root & Health ------------------

@app.get("/")
def read_root():
    return {"message": "Lost & Found API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"

    return response


# ------------------ Auth ------------------

@app.post("/api/auth/register", status_code=201)
def register_user(req: RegisterRequest, repos: Repositories = Depends(get_repositories)):
    if repos.users.get_by_email(req.email):
        raise HTTPException(status_code=400, detail="User already exists")
    creds = hash_password(req.password)
    location = req.location.model_dump(exclude_none=True) if req.location else None
    user = repos.users.create(req.email, creds["hash"], creds["salt"], req.name, req.phone, location)
    logger.info("Registered user %s", user["_id"])
    return {
        "message": "User registered successfully",
        "token": sign_token(str(user["_id"])),
        "user": public_user(user),
    }


@app.post("/api/auth/login")
def login(req: LoginRequest, repos: Repositories = Depends(get_repositories)):
    user = repos.users.get_by_email(req.email)
    if not user or not verify_password(req.password, user["passwordSalt"], user["passwordHash"]):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return {
        "message": "Login successful",
        "token": sign_token(str(user["_id"])),
        "user": public_user(user),
    }


@app.get("/api/auth/me")
def me(user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return public_user(repos.users.require(user.id))


@app.put("/api/auth/profile")
def update_profile(req: ProfileUpdate, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    repos.users.require(user.id)
    fields = req.model_dump(exclude_unset=True)
    if "name" in fields and not fields["name"]:
        fields.pop("name")
    if fields.get("location") is not None:
        fields["location"] = req.location.model_dump(exclude_none=True)
    updated = repos.users.update_fields(user.id, fields) if fields else repos.users.require(user.id)
    return {"message": "Profile updated successfully", "user": public_user(updated)}


@app.put("/api/auth/password")
def change_password(req: PasswordChange, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    current = repos.users.require(user.id)
    if not verify_password(req.currentPassword, current["passwordSalt"], current["passwordHash"]):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    creds = hash_password(req.newPassword)
    repos.users.update_fields(user.id, {"passwordHash": creds["hash"], "passwordSalt": creds["salt"]})
    return {"message": "Password changed successfully"}


@app.put("/api/auth/notification-preferences")
def update_preferences(req: PreferencesUpdate, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    repos.users.require(user.id)
    fields = {f"notificationPreferences.{k}": v for k, v in req.model_dump(exclude_none=True).items()}
    updated = repos.users.update_fields(user.id, fields) if fields else repos.users.require(user.id)
    return {
        "message": "Notification preferences updated successfully",
        "notificationPreferences": updated.get("notificationPreferences"),
    }


# ------------------ Items ------------------

SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "date": "date",
    "views": "views",
    "title": "title",
}


@app.post("/api/items", status_code=201)
def create_item(
    title: str = Form(...),
    description: str = Form(...),
    type: str = Form(...),
    category: str = Form(...),
    location: str = Form(...),
    date: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    reward: Optional[str] = Form(None),
    contactInfo: Optional[str] = Form(None),
    captions: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user: AuthedUser = Depends(get_current_user),
    repos: Repositories = Depends(get_repositories),
    store: LocalImageStore = Depends(get_image_store),
):
    raw = {
        "title": title,
        "description": description,
        "type": type,
        "category": category,
        "location": parse_json_field("location", location),
        "date": date or None,
        "tags": parse_json_field("tags", tags, []),
        "reward": parse_json_field("reward", reward),
        "contactInfo": parse_json_field("contactInfo", contactInfo),
    }
    try:
        item_in = ItemCreate.model_validate(raw)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=validation_message(e.errors()))
    caption_list = parse_json_field("captions", captions, [])
    if not isinstance(caption_list, list):
        raise HTTPException(status_code=400, detail="captions must be a JSON list")

    data = item_in.model_dump(exclude={"images"})
    item, match_count = services.post_item(repos, store, data, user.id, images or [], [str(c) for c in caption_list])
    return {
        "message": "Item posted successfully",
        "item": serialize_doc(item),
        "potentialMatches": match_count,
    }


@app.get("/api/items")
def list_items(
    type: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    location: Optional[str] = None,
    radius: float = Query(10000, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sortBy: str = "createdAt",
    sortOrder: str = "desc",
    repos: Repositories = Depends(get_repositories),
):
    repos.items.expire_overdue()
    query: Dict[str, Any] = {"status": "active"}
    if type in ITEM_TYPES:
        query["type"] = type
    if category:
        query["category"] = category
    terms = (search or "").split()
    if terms:
        query["$or"] = [
            {field: {"$regex": re.escape(term), "$options": "i"}}
            for term in terms
            for field in ("title", "description", "tags")
        ]
    near = None
    if location:
        coords = parse_json_field("location", location)
        try:
            near = {"lat": float(coords["lat"]), "lng": float(coords["lng"])}
        except (KeyError, TypeError, ValueError):
            raise HTTPException(status_code=400, detail="location must be a JSON object with lat and lng")

    skip = (page - 1) * limit
    sort_field = SORT_FIELDS.get(sortBy, "created_at")
    sort_order = -1 if sortOrder == "desc" else 1
    items, total = repos.items.search(query, sort_field, sort_order, skip, limit, near=near, radius_m=radius)
    return {
        "items": serialize_doc(services.with_posters(repos, items)),
        "pagination": services.pagination(page, limit, skip, len(items), total),
    }


@app.get("/api/items/categories")
def list_categories():
    return {"types": list(ITEM_TYPES), "categories": list(CATEGORIES)}


@app.get("/api/items/matches/{item_id}")
def get_item_matches(item_id: str, repos: Repositories = Depends(get_repositories)):
    item = repos.items.require(item_id)
    return serialize_doc(services.with_posters(repos, matches_for(repos.items, item)))


@app.get("/api/items/nearby/{user_id}")
def get_nearby_items(user_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    target = repos.users.require(user_id)
    coords = (target.get("location") or {}).get("coordinates")
    if not coords or coords.get("lat") is None or coords.get("lng") is None:
        raise HTTPException(status_code=400, detail="User location not available")
    return serialize_doc(services.with_posters(repos, repos.items.find_nearby(coords)))


@app.get("/api/items/{item_id}")
def get_item(item_id: str, repos: Repositories = Depends(get_repositories)):
    item = repos.items.increment_views(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return serialize_doc(services.with_match_details(repos, item))


@app.put("/api/items/{item_id}")
def update_item(item_id: str, update: ItemUpdate, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    item = repos.items.require(item_id)
    services.require_owner(item, user.id)
    fields = update.model_dump(exclude_unset=True, exclude_none=True)
    if fields:
        item = repos.items.update_fields(item["_id"], fields)
    return {"message": "Item updated successfully", "item": serialize_doc(item)}


@app.put("/api/items/{item_id}/resolve")
def resolve_item(item_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    item = services.resolve_item(repos, item_id, user.id)
    return {"message": "Item marked as resolved", "item": serialize_doc(item)}


@app.delete("/api/items/{item_id}")
def delete_item(item_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories),
                store: LocalImageStore = Depends(get_image_store)):
    services.delete_item(repos, store, item_id, user.id)
    return {"message": "Item deleted successfully"}


# ------------------ Chat ------------------

def publish_message(background_tasks: BackgroundTasks, relay: ChatRelay, message: Dict[str, Any]):
    chat_id = str(message["chatId"])
    background_tasks.add_task(relay.publish, chat_id, "receive-message", {"message": serialize_doc(message), "chatId": chat_id})


@app.get("/api/chat")
def list_chats(user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    chats = repos.chats.list_for_user(user.id)
    return serialize_doc([services.chat_overview(repos, c, user.id) for c in chats])


@app.get("/api/chat/unread-count")
def chat_unread_count(user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    total = sum(repos.messages.unread_count(str(c["_id"]), user.id) for c in repos.chats.list_for_user(user.id))
    return {"unreadCount": total}


@app.post("/api/chat/start")
def start_chat(req: StartChatRequest, background_tasks: BackgroundTasks, user: AuthedUser = Depends(get_current_user),
               repos: Repositories = Depends(get_repositories), relay: ChatRelay = Depends(get_relay)):
    chat, sent = services.start_chat(repos, req.itemId, user.id, req.message)
    if sent:
        publish_message(background_tasks, relay, sent)
    return {
        "message": "Chat started successfully",
        "chat": serialize_doc(services.chat_overview(repos, chat, user.id)),
    }


@app.get("/api/chat/{chat_id}")
def get_chat(chat_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    chat = repos.chats.require(chat_id)
    services.require_participant(chat, user.id)
    return serialize_doc(services.chat_overview(repos, chat, user.id))


@app.get("/api/chat/{chat_id}/messages")
def get_messages(chat_id: str, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200),
                 user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    messages, meta = services.list_messages(repos, chat_id, user.id, page, limit)
    return {"messages": serialize_doc(messages), "pagination": meta}


@app.post("/api/chat/{chat_id}/messages", status_code=201)
def send_message(chat_id: str, req: SendMessageRequest, background_tasks: BackgroundTasks,
                 user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories),
                 relay: ChatRelay = Depends(get_relay)):
    message = services.send_message(repos, chat_id, user.id, req.to_document())
    publish_message(background_tasks, relay, message)
    return serialize_doc(message)


@app.put("/api/chat/{chat_id}/messages/{message_id}")
def edit_message(chat_id: str, message_id: str, req: EditMessageRequest, user: AuthedUser = Depends(get_current_user),
                 repos: Repositories = Depends(get_repositories)):
    return serialize_doc(services.edit_message(repos, chat_id, message_id, user.id, req.content))


@app.put("/api/chat/{chat_id}/read")
def mark_chat_read(chat_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    services.mark_chat_read(repos, chat_id, user.id)
    return {"message": "Chat marked as read"}


@app.delete("/api/chat/{chat_id}")
def archive_chat(chat_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    services.archive_chat(repos, chat_id, user.id)
    return {"message": "Chat archived successfully"}


def socket_chat(repos: Repositories, chat_id: str, token: str) -> Dict[str, Any]:
    user = user_from_token(token)
    chat = repos.chats.require(chat_id)
    services.require_participant(chat, user.id)
    return chat


@app.websocket("/ws/chat/{chat_id}")
async def chat_socket(websocket: WebSocket, chat_id: str, token: str = "",
                      repos: Repositories = Depends(get_repositories), relay: ChatRelay = Depends(get_relay)):
    try:
        chat = await run_in_threadpool(socket_chat, repos, chat_id, token)
    except HTTPException as e:
        await websocket.close(code=WS_1008_POLICY_VIOLATION, reason=str(e.detail))
        return

    room = str(chat["_id"])
    await websocket.accept()
    relay.join(room, websocket)
    await websocket.send_json({"event": "joined", "data": {"chatId": room}})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        relay.leave(room, websocket)


# ------------------ Users ------------------

def period_start(period: str) -> Optional[datetime]:
    current = now()
    if period == "week":
        return current - timedelta(days=7)
    if period == "month":
        return datetime(current.year, current.month, 1)
    if period == "year":
        return datetime(current.year, 1, 1)
    return None


@app.get("/api/users/leaderboard")
def leaderboard(period: str = "month", limit: int = Query(20, ge=1, le=100), repos: Repositories = Depends(get_repositories)):
    return serialize_doc(repos.users.leaderboard(period_start(period), limit))


@app.get("/api/users/search")
def search_users(q: str = "", limit: int = Query(10, ge=1, le=50), repos: Repositories = Depends(get_repositories)):
    if len(q) < 2:
        raise HTTPException(status_code=400, detail="Search query must be at least 2 characters")
    return serialize_doc(repos.users.search_by_name(q, limit))


@app.get("/api/users/stats/global")
def global_stats(repos: Repositories = Depends(get_repositories)):
    total_items = repos.items.count({"status": "active"})
    total_resolved = repos.items.count({"status": "resolved"})
    return {
        "totalUsers": repos.users.count(),
        "totalItems": total_items,
        "totalResolved": total_resolved,
        "totalLost": repos.items.count({"type": "lost", "status": "active"}),
        "totalFound": repos.items.count({"type": "found", "status": "active"}),
        "categoryStats": repos.items.category_stats(),
        "successRate": round(total_resolved / total_items * 100, 1) if total_items else 0,
    }


@app.get("/api/users/{user_id}")
def get_user_profile(user_id: str, repos: Repositories = Depends(get_repositories)):
    user = repos.users.require(user_id, dict(PUBLIC_USER_FIELDS, email=0))
    recent = repos.items.search({"postedBy": user_id, "status": "active"}, "created_at", -1, 0, 10)[0]
    return {"user": serialize_doc(user), "recentItems": serialize_doc(recent)}


@app.get("/api/users/{user_id}/items")
def get_user_items(user_id: str, type: Optional[str] = None, status: Optional[str] = None,
                   page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                   repos: Repositories = Depends(get_repositories)):
    query: Dict[str, Any] = {"postedBy": user_id}
    if type:
        query["type"] = type
    if status:
        query["status"] = status
    skip = (page - 1) * limit
    items, total = repos.items.search(query, "created_at", -1, skip, limit)
    return {"items": serialize_doc(items), "pagination": services.pagination(page, limit, skip, len(items), total)}


@app.put("/api/users/{user_id}/rate")
def rate_user(user_id: str, req: RateRequest, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    if req.rating < 1 or req.rating > 5:
        raise HTTPException(status_code=400, detail="Rating must be between 1 and 5")
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot rate yourself")
    new_rating = repos.users.rate(user_id, req.rating)
    return {"message": "Rating submitted successfully", "newRating": new_rating}


# ------------------ Notifications ------------------

@app.get("/api/notifications")
def get_notifications(user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    repos.users.require(user.id)
    return serialize_doc(services.notifications_for(repos, user.id))


@app.get("/api/notifications/unread-count")
def notification_count(user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    return {"unreadCount": services.live_match_count(repos, user.id)}


@app.post("/api/notifications/match-alert")
def match_alert(req: MatchAlertRequest, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    services.send_match_alert(repos, user.id, req.itemId, req.matchedItemId, req.confidence)
    return {
        "message": "Match alert sent successfully",
        "match": {"itemId": req.itemId, "matchedItemId": req.matchedItemId, "confidence": req.confidence},
    }


@app.get("/api/notifications/matches/{item_id}")
def owner_item_matches(item_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    item = repos.items.require(item_id)
    services.require_owner(item, user.id)
    return serialize_doc(services.with_posters(repos, matches_for(repos.items, item)))


@app.put("/api/notifications/read/{item_id}")
def mark_notifications_read(item_id: str, user: AuthedUser = Depends(get_current_user), repos: Repositories = Depends(get_repositories)):
    item = repos.items.require(item_id)
    services.require_owner(item, user.id)
    return {"message": "Notifications marked as read"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
