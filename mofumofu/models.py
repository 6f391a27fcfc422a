"""
Typed entities decoded from store documents.

Documents come back from the store as plain dicts (with the id under "id").
Each entity has a `from_doc` decoder that checks the fields it relies on and
raises DecodeError instead of guessing, and a `to_json` used by the API.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from mofumofu.errors import DecodeError
from mofumofu.helpers import as_datetime, iso


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ChatStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    @classmethod
    def maybe(cls, latitude, longitude):
        """Build a coordinate, or None when either part is missing, not numeric or off the globe."""
        if isinstance(latitude, bool) or isinstance(longitude, bool):
            return None
        if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
            return None
        if not (math.isfinite(latitude) and math.isfinite(longitude)):
            return None
        if abs(latitude) > 90 or abs(longitude) > 180:
            return None
        return cls(float(latitude), float(longitude))

    def to_json(self):
        return {"latitude": self.latitude, "longitude": self.longitude}


# ---------------------- field readers -----------------------
class _Reader:
    def __init__(self, kind, doc):
        if not isinstance(doc, dict):
            raise DecodeError(kind, None, "not a document")
        self.kind = kind
        self.doc = doc
        self.doc_id = doc.get("id")
        if not isinstance(self.doc_id, str) or not self.doc_id:
            raise DecodeError(kind, self.doc_id, "missing id")

    def fail(self, key, reason):
        raise DecodeError(self.kind, self.doc_id, f"field '{key}' {reason}")

    def text(self, key, required=True, default=None):
        value = self.doc.get(key)
        if value is None:
            if required:
                self.fail(key, "is required")
            return default
        if not isinstance(value, str):
            self.fail(key, "must be a string")
        return value

    def flag(self, key, default=False):
        value = self.doc.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self.fail(key, "must be a boolean")
        return value

    def number(self, key):
        value = self.doc.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.fail(key, "must be a number")
        return value

    def dt(self, key, required=False):
        value = self.doc.get(key)
        if value is None:
            if required:
                self.fail(key, "is required")
            return None
        parsed = as_datetime(value)
        if parsed is None:
            self.fail(key, "must be a timestamp")
        return parsed

    def choice(self, key, enum_cls):
        raw = self.text(key)
        try:
            return enum_cls(raw)
        except ValueError:
            self.fail(key, f"has unknown value '{raw}'")

    def mapping(self, key):
        value = self.doc.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.fail(key, "must be a mapping")
        return dict(value)


# ------------------------------------------------------------
# Entities
# ------------------------------------------------------------
@dataclass
class UserAccount:
    id: str
    email: str
    name: str = ""
    profile_image: Optional[str] = None
    comment: str = ""
    is_owner: bool = False
    push_token: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("user", doc)
        return cls(
            id=r.doc_id,
            email=r.text("email"),
            name=r.text("name", required=False, default=""),
            profile_image=r.text("profileImage", required=False),
            comment=r.text("comment", required=False, default=""),
            is_owner=r.flag("isOwner"),
            push_token=r.text("pushToken", required=False),
            created_at=r.dt("createdAt"),
        )

    def to_json(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "profileImage": self.profile_image,
            "comment": self.comment,
            "isOwner": self.is_owner,
            "createdAt": iso(self.created_at),
        }


@dataclass
class DogProfile:
    id: str
    name: str
    owner_id: str
    sex: str = "male"
    age: Optional[float] = None
    likes: str = ""
    notes: str = ""
    profile_image: Optional[str] = None
    is_walking: bool = False
    last_walking_status_update: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("dog", doc)
        dog = cls(
            id=r.doc_id,
            name=r.text("name"),
            owner_id=r.text("ownerId"),
            sex=r.text("sex", required=False, default="male"),
            age=r.number("age"),
            likes=r.text("likes", required=False, default=""),
            notes=r.text("notes", required=False, default=""),
            profile_image=r.text("profileImage", required=False),
            is_walking=r.flag("isWalking"),
            last_walking_status_update=r.dt("lastWalkingStatusUpdate"),
            latitude=r.number("latitude"),
            longitude=r.number("longitude"),
            created_at=r.dt("createdAt"),
            updated_at=r.dt("updatedAt"),
        )
        if dog.is_walking and dog.last_walking_status_update is None:
            r.fail("lastWalkingStatusUpdate", "is required while walking")
        return dog

    @property
    def coordinate(self):
        return Coordinate.maybe(self.latitude, self.longitude)

    def to_json(self):
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "sex": self.sex,
            "age": self.age,
            "likes": self.likes,
            "notes": self.notes,
            "profileImage": self.profile_image,
            "isWalking": self.is_walking,
            "lastWalkingStatusUpdate": iso(self.last_walking_status_update),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


@dataclass
class PettingRequest:
    id: str
    requester_id: str
    dog_id: str
    dog_owner_id: str
    status: RequestStatus
    message: str = ""
    applied_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    location: Optional[Coordinate] = None
    updated_at: Optional[datetime] = None
    auto_rejected: bool = False
    rejection_reason: Optional[str] = None
    dog_name: Optional[str] = None
    requester_name: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("apply", doc)
        loc = r.mapping("location")
        return cls(
            id=r.doc_id,
            requester_id=r.text("requesterId"),
            dog_id=r.text("dogId"),
            dog_owner_id=r.text("dogOwnerId"),
            status=r.choice("status", RequestStatus),
            message=r.text("message", required=False, default=""),
            applied_at=r.dt("appliedAt"),
            expires_at=r.dt("expiresAt"),
            location=Coordinate.maybe(loc.get("latitude"), loc.get("longitude")),
            updated_at=r.dt("updatedAt"),
            auto_rejected=r.flag("autoRejected"),
            rejection_reason=r.text("rejectionReason", required=False),
            dog_name=r.text("dogName", required=False),
            requester_name=r.text("requesterName", required=False),
        )

    @property
    def is_terminal(self):
        return self.status != RequestStatus.PENDING

    def to_json(self):
        return {
            "id": self.id,
            "requesterId": self.requester_id,
            "dogId": self.dog_id,
            "dogOwnerId": self.dog_owner_id,
            "status": self.status.value,
            "message": self.message,
            "appliedAt": iso(self.applied_at),
            "expiresAt": iso(self.expires_at),
            "location": self.location.to_json() if self.location else None,
            "updatedAt": iso(self.updated_at),
            "autoRejected": self.auto_rejected,
            "rejectionReason": self.rejection_reason,
            "dogName": self.dog_name,
            "requesterName": self.requester_name,
        }


@dataclass
class Match:
    id: str
    dog_id: str
    dog_owner_id: str
    petting_user_id: str
    status: MatchStatus = MatchStatus.ACTIVE
    created_at: Optional[datetime] = None
    chat_id: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("match", doc)
        return cls(
            id=r.doc_id,
            dog_id=r.text("dogId"),
            dog_owner_id=r.text("dogOwnerId"),
            petting_user_id=r.text("pettingUserId"),
            status=r.choice("status", MatchStatus),
            created_at=r.dt("createdAt"),
            chat_id=r.text("chatId", required=False),
            request_id=r.text("requestId", required=False),
        )

    def to_json(self):
        return {
            "id": self.id,
            "dogId": self.dog_id,
            "dogOwnerId": self.dog_owner_id,
            "pettingUserId": self.petting_user_id,
            "status": self.status.value,
            "createdAt": iso(self.created_at),
            "chatId": self.chat_id,
            "requestId": self.request_id,
        }


@dataclass
class ChatSession:
    id: str
    dog_id: str
    match_id: str
    dog_owner_id: str
    petting_user_id: str
    status: ChatStatus
    created_at: datetime
    expires_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    deleted_by: dict = field(default_factory=dict)
    deleted_at: dict = field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("chat", doc)
        return cls(
            id=r.doc_id,
            dog_id=r.text("dogId"),
            match_id=r.text("matchId"),
            dog_owner_id=r.text("dogOwnerId"),
            petting_user_id=r.text("pettingUserId"),
            status=r.choice("status", ChatStatus),
            created_at=r.dt("createdAt", required=True),
            expires_at=r.dt("expiresAt"),
            closed_at=r.dt("closedAt"),
            last_message=r.text("lastMessage", required=False),
            last_message_time=r.dt("lastMessageTime"),
            last_message_at=r.dt("lastMessageAt"),
            deleted_by=r.mapping("deletedBy"),
            deleted_at=r.mapping("deletedAt"),
        )

    @property
    def participants(self):
        return {self.dog_owner_id, self.petting_user_id}

    def other_participant(self, user_id):
        return self.petting_user_id if user_id == self.dog_owner_id else self.dog_owner_id

    def is_expired(self, now):
        if self.status == ChatStatus.CLOSED:
            return True
        return self.expires_at is not None and now >= self.expires_at

    def to_json(self, now=None):
        item = {
            "id": self.id,
            "dogId": self.dog_id,
            "matchId": self.match_id,
            "dogOwnerId": self.dog_owner_id,
            "pettingUserId": self.petting_user_id,
            "status": self.status.value,
            "createdAt": iso(self.created_at),
            "expiresAt": iso(self.expires_at),
            "closedAt": iso(self.closed_at),
            "lastMessage": self.last_message or "",
            "lastMessageTime": iso(self.last_message_time),
            "lastMessageAt": iso(self.last_message_at),
        }
        if now is not None:
            item["isExpired"] = self.is_expired(now)
        return item


@dataclass
class Message:
    id: str
    chat_id: str
    sender_id: str
    text: str
    created_at: Optional[datetime] = None
    read: bool = False

    @classmethod
    def from_doc(cls, doc):
        r = _Reader("message", doc)
        return cls(
            id=r.doc_id,
            chat_id=r.text("chatId"),
            sender_id=r.text("senderId"),
            text=r.text("text"),
            created_at=r.dt("createdAt"),
            read=r.flag("read"),
        )

    def to_json(self):
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "text": self.text,
            "createdAt": iso(self.created_at),
            "read": self.read,
        }


@dataclass(frozen=True)
class Identity:
    """The signed-in user a controller acts for."""
    user_id: str
    email: str = ""
    name: str = ""
