"""
Push notifications.

Three on-create triggers (new petting request, new match, new chat message)
look up the recipients' push tokens and hand the message to the Expo push
relay. A recipient without a token is skipped; relay failures are logged and
never reach the write that fired the trigger.
"""
import logging

import requests

from mofumofu.config import DEFAULT_PUSH_ENDPOINT
from mofumofu.errors import RemoteWriteError

logger = logging.getLogger(__name__)


class PushRelay:
    def __init__(self, endpoint=DEFAULT_PUSH_ENDPOINT, timeout=10.0, session=None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, token, title, body, data=None):
        payload = {"to": token, "title": title, "body": body, "data": data or {}}
        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise RemoteWriteError(f"Push relay failed: {e}") from e
        try:
            result = response.json()
        except ValueError:
            logger.warning("Push relay answered %s with a non-JSON body", response.status_code)
            return None
        logger.info("Push notification sent: %s", result)
        return result


class NotificationTriggers:
    def __init__(self, store, relay: PushRelay):
        self.store = store
        self.relay = relay

    def register(self):
        self.store.on_insert("applies", self.on_request_created)
        self.store.on_insert("matches", self.on_match_created)
        self.store.on_insert("messages", self.on_message_created)

    def _user(self, user_id):
        if not user_id:
            return {}
        return self.store.get("users", user_id) or {}

    def _push(self, user, title, body, data):
        token = user.get("pushToken")
        if not token:
            logger.info("User %s has no push token", user.get("id"))
            return False
        try:
            self.relay.send(token, title, body, data)
        except RemoteWriteError as e:
            logger.error("Error sending push notification to %s: %s", user.get("id"), e)
            return False
        return True

    def on_request_created(self, apply):
        receiver = self._user(apply.get("dogOwnerId"))
        if not receiver:
            logger.info("Request %s has no reachable owner", apply.get("id"))
            return
        sender = self._user(apply.get("requesterId"))
        self._push(
            receiver,
            "Petting request",
            f"{sender.get('name') or 'Someone'} sent you a petting request",
            {"type": "pettingRequest", "applyId": apply.get("id"), "senderId": apply.get("requesterId")},
        )

    def on_match_created(self, match):
        owner_id = match.get("dogOwnerId")
        petting_id = match.get("pettingUserId")
        if not owner_id or not petting_id:
            logger.info("Match %s is missing a participant", match.get("id"))
            return
        for user_id, other_id in ((owner_id, petting_id), (petting_id, owner_id)):
            user = self._user(user_id)
            if not user:
                continue
            other = self._user(other_id)
            self._push(
                user,
                "It's a match!",
                f"You matched with {other.get('name') or 'someone'}!",
                {"type": "match", "matchId": match.get("id"), "otherUserId": other_id},
            )

    def on_message_created(self, message):
        sender_id = message.get("senderId")
        if not sender_id:
            logger.info("Message %s has no sender", message.get("id"))
            return
        chat = self.store.get("chats", message.get("chatId")) or {}
        owner_id, petting_id = chat.get("dogOwnerId"), chat.get("pettingUserId")
        if not owner_id or not petting_id:
            logger.info("Chat %s not found or incomplete", message.get("chatId"))
            return
        receiver_id = petting_id if sender_id == owner_id else owner_id
        receiver = self._user(receiver_id)
        if not receiver:
            return
        sender = self._user(sender_id)
        self._push(
            receiver,
            "New message",
            f"{sender.get('name') or 'Someone'} sent you a message",
            {
                "type": "chatMessage",
                "chatId": message.get("chatId"),
                "messageId": message.get("id"),
                "senderId": sender_id,
            },
        )
