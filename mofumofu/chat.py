"""
Chat sessions between a dog owner and the user they matched with.

A chat lives for two hours from creation (expiresAt is set once and never
moved). While the chat is open on a device the controller re-checks expiry
every second and closes the session when the time is up. Closed is terminal:
messages stay readable but nothing new can be sent.
"""
import dataclasses
import logging
import threading
from datetime import datetime, timezone
from enum import Enum

from mofumofu.config import CHAT_EXPIRY_CHECK_SECONDS, CHAT_LIFETIME, MESSAGE_PAGE_SIZE
from mofumofu.errors import (
    DecodeError, Forbidden, MissingPrecondition, NotFound, RemoteWriteError,
)
from mofumofu.helpers import as_datetime, utcnow
from mofumofu.models import ChatSession, ChatStatus, DogProfile, Match, Message, UserAccount
from mofumofu.timers import SessionTimer, format_remaining, until

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ChatState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


def new_chat_document(match: Match, now):
    return {
        "dogId": match.dog_id,
        "matchId": match.id,
        "dogOwnerId": match.dog_owner_id,
        "pettingUserId": match.petting_user_id,
        "status": ChatStatus.ACTIVE.value,
        "createdAt": now,
        "expiresAt": now + CHAT_LIFETIME,
        "closedAt": None,
        "lastMessage": None,
        "lastMessageTime": None,
        "lastMessageAt": now,
    }


def decode_messages(docs):
    items = []
    for doc in docs:
        try:
            items.append(Message.from_doc(doc))
        except DecodeError as e:
            logger.warning("Skipping message: %s", e)
    return items


class ChatSessionController:
    def __init__(self, identity, store, scheduler, clock=utcnow):
        self.identity = identity
        self.store = store
        self.clock = clock
        self.session = None
        self.messages = []
        self._listeners = []
        self._message_subscriptions = {}
        self._next_subscription = 0
        self._lock = threading.Lock()
        self.monitor = SessionTimer(
            CHAT_LIFETIME, scheduler,
            interval_seconds=CHAT_EXPIRY_CHECK_SECONDS,
            clock=clock,
            on_tick=self._on_tick,
            name="chat-expiry",
        )

    @property
    def state(self):
        if self.session is None:
            return ChatState.UNINITIALIZED
        if self.session.status == ChatStatus.CLOSED:
            return ChatState.CLOSED
        return ChatState.ACTIVE

    # ---------------------- initialization ------------------
    def initialize(self, chat_id=None, match_id=None):
        if chat_id:
            session = self._resolve(chat_id)
        elif match_id:
            session = self._resolve_or_create_for_match(match_id)
        else:
            raise MissingPrecondition("The match is not complete or the chat does not exist.")

        if self.identity.user_id not in session.participants:
            raise Forbidden()

        with self._lock:
            self.session = session
        now = self.clock()
        if session.is_expired(now):
            self._expire(now)
        else:
            # the monitor counts down to expiresAt
            self.monitor.name = f"chat-expiry-{session.id}"
            self.monitor.start(session.expires_at - CHAT_LIFETIME)
        return self.snapshot()

    def _resolve(self, chat_id):
        doc = self.store.get("chats", chat_id)
        if not doc:
            raise NotFound("Chat not found.")
        if doc.get("expiresAt") is None and doc.get("createdAt") is not None:
            # chats created before expiresAt existed get it on first read
            session = ChatSession.from_doc(doc)
            expires_at = session.created_at + CHAT_LIFETIME
            try:
                self.store.update("chats", chat_id, {"expiresAt": expires_at})
            except RemoteWriteError as e:
                logger.warning("expiresAt backfill failed for chat %s: %s", chat_id, e)
            return dataclasses.replace(session, expires_at=expires_at)
        return ChatSession.from_doc(doc)

    def _resolve_or_create_for_match(self, match_id):
        doc = self.store.get("matches", match_id)
        if not doc:
            raise NotFound("Match not found.")
        match = Match.from_doc(doc)
        if self.identity.user_id not in {match.dog_owner_id, match.petting_user_id}:
            raise Forbidden()
        if match.chat_id:
            return self._resolve(match.chat_id)

        now = self.clock()
        data = new_chat_document(match, now)
        chat_id = self.store.insert("chats", data)
        # second, separate write: the chat exists even if linking fails
        try:
            self.store.update("matches", match.id, {"chatId": chat_id})
        except RemoteWriteError:
            logger.error("Chat %s created but match %s was not linked", chat_id, match.id)
            raise
        logger.info("Created chat %s for match %s", chat_id, match.id)
        return ChatSession.from_doc({**data, "id": chat_id})

    # ---------------------- expiry --------------------------
    def is_expired(self, now=None):
        if self.session is None:
            return False
        return self.session.is_expired(now or self.clock())

    def _on_tick(self, left, expired):
        if expired:
            self._expire(self.clock())

    def _expire(self, now):
        with self._lock:
            session = self.session
            if session is None or session.status == ChatStatus.CLOSED:
                self.monitor.stop()
                return False
            self.session = dataclasses.replace(session, status=ChatStatus.CLOSED, closed_at=now)
            self.monitor.stop()
        try:
            self.store.update("chats", session.id, {"status": ChatStatus.CLOSED.value, "closedAt": now})
        except RemoteWriteError as e:
            logger.error("Could not persist close of chat %s: %s", session.id, e)
        logger.info("Chat %s closed", session.id)
        self._notify()
        return True

    def _adopt_stored_close(self):
        """Pick up a close written elsewhere: the other participant, or a sweep."""
        session = self.session
        if session is None or session.status == ChatStatus.CLOSED:
            return False
        doc = self.store.get("chats", session.id)
        if not doc or doc.get("status") != ChatStatus.CLOSED.value:
            return False
        with self._lock:
            if self.session is None or self.session.status == ChatStatus.CLOSED:
                return False
            closed_at = as_datetime(doc.get("closedAt")) or self.clock()
            self.session = dataclasses.replace(self.session, status=ChatStatus.CLOSED, closed_at=closed_at)
            self.monitor.stop()
        logger.info("Chat %s was closed by another session", session.id)
        self._notify()
        return True

    def check_expiry(self):
        """Run the monitor's check now, e.g. when a client polls the chat."""
        now = self.clock()
        if self.session is not None and self.session.is_expired(now):
            self._expire(now)
        else:
            self._adopt_stored_close()
        return self.snapshot(now)

    def close(self):
        if self.session is None:
            raise MissingPrecondition("No chat is open.")
        self._expire(self.clock())
        return self.snapshot()

    # ---------------------- messages ------------------------
    def send_message(self, text):
        """Returns the new Message, or None when the chat cannot take messages."""
        session = self.session
        if session is None:
            return None
        now = self.clock()
        if session.is_expired(now):
            self._expire(now)
            return None
        text = (text or "").strip()
        if not text:
            return None
        if self._adopt_stored_close():
            return None

        data = {
            "chatId": session.id,
            "senderId": self.identity.user_id,
            "text": text,
            "createdAt": now,
            "read": False,
        }
        message_id = self.store.insert("messages", data)

        summary = {"lastMessage": text, "lastMessageTime": now, "lastMessageAt": now}
        try:
            self.store.update("chats", session.id, summary)
        except RemoteWriteError as e:
            # summary is a list-view cache; the next message rewrites it
            logger.warning("Last-message cache not updated for chat %s: %s", session.id, e)
        else:
            with self._lock:
                if self.session is not None:
                    self.session = dataclasses.replace(
                        self.session, last_message=text, last_message_time=now, last_message_at=now,
                    )
        return Message.from_doc({**data, "id": message_id})

    def mark_read(self, messages):
        marked = 0
        for message in messages:
            if message.sender_id == self.identity.user_id or message.read:
                continue
            try:
                self.store.update("messages", message.id, {"read": True})
                marked += 1
            except RemoteWriteError as e:
                logger.warning("Read receipt failed for message %s: %s", message.id, e)
        return marked

    def load_messages(self, limit=MESSAGE_PAGE_SIZE):
        if self.session is None:
            raise MissingPrecondition("No chat is open.")
        docs = self.store.find(
            "messages", {"chatId": self.session.id},
            order_by="createdAt", descending=True, limit=limit,
        )
        self.messages = decode_messages(docs)
        self.mark_read(self.messages)
        return self.messages

    def subscribe_messages(self, callback, limit=MESSAGE_PAGE_SIZE):
        """
        Live message list, newest first. Every emission replaces the previous list.

        Each call is its own subscription (a reconnecting stream overlaps the
        old one for a moment); the returned callable cancels only this one.
        """
        if self.session is None:
            raise MissingPrecondition("No chat is open.")

        def on_snapshot(docs):
            self.messages = decode_messages(docs)
            self.mark_read(self.messages)
            callback(self.messages)

        cancel = self.store.subscribe(
            "messages", {"chatId": self.session.id}, on_snapshot,
            order_by="createdAt", descending=True, limit=limit,
        )
        with self._lock:
            token = self._next_subscription
            self._next_subscription += 1
            self._message_subscriptions[token] = cancel

        def unsubscribe():
            with self._lock:
                handle = self._message_subscriptions.pop(token, None)
            if handle is not None:
                handle()

        return unsubscribe

    def unsubscribe_messages(self):
        with self._lock:
            handles, self._message_subscriptions = list(self._message_subscriptions.values()), {}
        for handle in handles:
            handle()

    # ---------------------- state ---------------------------
    def snapshot(self, now=None):
        now = now or self.clock()
        if self.session is None:
            return {"state": ChatState.UNINITIALIZED.value, "chat": None, "canSend": False}
        expired = self.session.is_expired(now)
        left = until(self.session.expires_at, now) if self.session.expires_at else None
        return {
            "state": self.state.value,
            "chat": self.session.to_json(now),
            "isExpired": expired,
            "canSend": not expired,
            "remainingSeconds": int(left.total_seconds()) if left is not None else None,
            "remainingLabel": format_remaining(left) if left is not None else None,
        }

    def subscribe(self, callback):
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self):
        snap = self.snapshot()
        for callback in list(self._listeners):
            try:
                callback(snap)
            except Exception:
                logger.exception("Chat listener failed")

    def teardown(self):
        self.monitor.stop()
        self.unsubscribe_messages()
        self._listeners.clear()


# ------------------------------------------------------------
# Chat list
# ------------------------------------------------------------
class ChatListReducer:
    """
    Merges emissions from the "I own the dog" and "I petted the dog" queries.
    Chats are upserted by id, hidden ones dropped, newest activity first.
    """

    def __init__(self, viewer_id):
        self.viewer_id = viewer_id
        self._chats = {}

    def apply(self, docs):
        for doc in docs:
            try:
                chat = ChatSession.from_doc(doc)
            except DecodeError as e:
                logger.warning("Skipping chat: %s", e)
                continue
            if chat.deleted_by.get(self.viewer_id):
                self._chats.pop(chat.id, None)
                continue
            self._chats[chat.id] = chat
        return self.items()

    def items(self):
        return sorted(
            self._chats.values(),
            key=lambda c: c.last_message_at or EPOCH,
            reverse=True,
        )


class ChatDirectory:
    def __init__(self, identity, store, clock=utcnow):
        self.identity = identity
        self.store = store
        self.clock = clock

    def _queries(self):
        uid = self.identity.user_id
        return [{"dogOwnerId": uid}, {"pettingUserId": uid}]

    def _describe(self, chat, now):
        uid = self.identity.user_id
        other_id = chat.other_participant(uid)
        other_name, other_image = "Anonymous", None
        dog_name, dog_image = "Unknown dog", None
        try:
            user_doc = self.store.get("users", other_id)
            if user_doc:
                other = UserAccount.from_doc(user_doc)
                other_name = other.name or other_name
                other_image = other.profile_image
            dog_doc = self.store.get("dogs", chat.dog_id)
            if dog_doc:
                dog = DogProfile.from_doc(dog_doc)
                dog_name = dog.name
                dog_image = dog.profile_image
        except DecodeError as e:
            logger.warning("Chat %s details incomplete: %s", chat.id, e)

        item = chat.to_json(now)
        left = until(chat.expires_at, now) if chat.expires_at else None
        item.update({
            "otherUserId": other_id,
            "otherUserName": other_name,
            "otherUserImage": other_image,
            "dogName": dog_name,
            "dogImage": dog_image,
            "isUserDogOwner": chat.dog_owner_id == uid,
            "remainingLabel": None if item["isExpired"] or left is None else format_remaining(left),
        })
        return item

    def list_chats(self):
        reducer = ChatListReducer(self.identity.user_id)
        for filters in self._queries():
            reducer.apply(self.store.find("chats", filters, order_by="lastMessageAt", descending=True))
        now = self.clock()
        return [self._describe(chat, now) for chat in reducer.items()]

    def subscribe(self, callback):
        reducer = ChatListReducer(self.identity.user_id)

        def on_snapshot(docs):
            chats = reducer.apply(docs)
            now = self.clock()
            callback([self._describe(chat, now) for chat in chats])

        unsubscribers = [
            self.store.subscribe("chats", filters, on_snapshot, order_by="lastMessageAt", descending=True)
            for filters in self._queries()
        ]

        def unsubscribe():
            for fn in unsubscribers:
                fn()

        return unsubscribe

    def hide(self, chat_id):
        """Remove the chat from this user's list only."""
        doc = self.store.get("chats", chat_id)
        if not doc:
            raise NotFound("Chat not found.")
        chat = ChatSession.from_doc(doc)
        uid = self.identity.user_id
        if uid not in chat.participants:
            raise Forbidden()
        self.store.update("chats", chat_id, {
            f"deletedBy.{uid}": True,
            f"deletedAt.{uid}": self.clock(),
        })
