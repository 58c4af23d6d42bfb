"""
Database Schemas for the Lost & Found API

Each Pydantic model below either validates a request body or describes a
document stored in MongoDB. Stored collections are the lowercase entity
name: "item", "chat", "message", "user".
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Discriminator, EmailStr, Field, RootModel, Tag

ITEM_TYPES = ("lost", "found")

CATEGORIES = (
    "Electronics",
    "Documents",
    "Jewelry",
    "Clothing",
    "Pets",
    "Books",
    "Sports Equipment",
    "Musical Instruments",
    "Other",
)

ItemType = Literal["lost", "found"]
Category = Literal[
    "Electronics",
    "Documents",
    "Jewelry",
    "Clothing",
    "Pets",
    "Books",
    "Sports Equipment",
    "Musical Instruments",
    "Other",
]


# ------------------ Shared ------------------

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class ItemLocation(BaseModel):
    address: Optional[str] = Field(None, description="Street address")
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    country: Optional[str] = None
    coordinates: Coordinates


class ItemImage(BaseModel):
    url: str
    storageId: Optional[str] = None
    caption: str = ""


class ContactInfo(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    preferredContact: Literal["phone", "email", "both"] = "both"


class Reward(BaseModel):
    amount: Optional[float] = Field(None, ge=0)
    currency: str = "USD"
    description: Optional[str] = None


# ------------------ Items ------------------

class ItemCreate(BaseModel):
    """
    A lost/found posting as submitted by its owner.
    Collection name: "item"
    """
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    type: ItemType
    category: Category
    location: ItemLocation
    date: Optional[datetime] = Field(None, description="When the item was lost or found")
    images: List[ItemImage] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    reward: Optional[Reward] = None
    contactInfo: Optional[ContactInfo] = None


class ItemUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    category: Optional[Category] = None
    location: Optional[ItemLocation] = None
    tags: Optional[List[str]] = None
    reward: Optional[Reward] = None
    contactInfo: Optional[ContactInfo] = None


class PotentialMatch(BaseModel):
    itemId: str
    confidence: float
    matchedAt: datetime


class MatchAlertRequest(BaseModel):
    itemId: str
    matchedItemId: str
    confidence: float = Field(..., ge=0, le=1)


# ------------------ Chat ------------------

class StartChatRequest(BaseModel):
    itemId: str
    message: Optional[str] = Field(None, max_length=1000)


class MessageLocation(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class TextMessage(BaseModel):
    messageType: Literal["text"] = "text"
    content: str = Field(..., min_length=1, max_length=1000)


class ImageMessage(BaseModel):
    messageType: Literal["image"]
    content: str = Field(..., min_length=1, max_length=1000)
    imageUrl: str
    imageCaption: Optional[str] = None


class LocationMessage(BaseModel):
    messageType: Literal["location"]
    content: str = Field(..., min_length=1, max_length=1000)
    location: MessageLocation


class SystemMessage(BaseModel):
    messageType: Literal["system"]
    content: str = Field(..., min_length=1, max_length=1000)
    systemAction: Literal["item_found", "item_returned", "chat_started", "other"] = "other"


def _message_kind(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("messageType", "text")
    return getattr(value, "messageType", "text")


MessagePayload = Annotated[
    Union[
        Annotated[TextMessage, Tag("text")],
        Annotated[ImageMessage, Tag("image")],
        Annotated[LocationMessage, Tag("location")],
        Annotated[SystemMessage, Tag("system")],
    ],
    Discriminator(_message_kind),
]


class SendMessageRequest(RootModel[MessagePayload]):
    """Message body; the payload fields allowed depend on ``messageType`` (defaults to text)."""

    def to_document(self) -> Dict[str, Any]:
        return self.root.model_dump(exclude_none=True)


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)


# ------------------ Users & Auth ------------------

class UserLocation(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class NotificationPreferences(BaseModel):
    email: bool = True
    push: bool = True
    matches: bool = True
    messages: bool = True


class Badge(BaseModel):
    name: str
    description: Optional[str] = None
    earnedAt: datetime


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    location: Optional[UserLocation] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    bio: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = None
    location: Optional[UserLocation] = None
    avatar: Optional[str] = None


class PasswordChange(BaseModel):
    currentPassword: str
    newPassword: str = Field(..., min_length=6)


class PreferencesUpdate(BaseModel):
    email: Optional[bool] = None
    push: Optional[bool] = None
    matches: Optional[bool] = None
    messages: Optional[bool] = None


class RateRequest(BaseModel):
    rating: float
