"""
Petting requests ("applies") and the match they turn into.

pending -> accepted | rejected, both terminal. Accepting creates the Match and
its ChatSession in the same transaction as the status change, and the
transaction re-reads the request so a second accept (double tap, retry, other
device) fails instead of creating a second match.
"""
import logging
from dataclasses import dataclass
from typing import Callable

from mofumofu.chat import new_chat_document
from mofumofu.config import REQUEST_LIFETIME
from mofumofu.errors import (
    Conflict, DecodeError, Forbidden, MissingPrecondition, NotFound, TransactionFailed,
)
from mofumofu.geo import is_request_blocking
from mofumofu.helpers import utcnow
from mofumofu.models import (
    ChatSession, DogProfile, Identity, Match, MatchStatus, PettingRequest, RequestStatus, UserAccount,
)

logger = logging.getLogger(__name__)


@dataclass
class AcceptedMatch:
    request: PettingRequest
    match: Match
    chat: ChatSession

    def to_json(self):
        return {
            "request": self.request.to_json(),
            "match": self.match.to_json(),
            "chat": self.chat.to_json(),
        }


def _decode_requests(docs):
    items = []
    for doc in docs:
        try:
            items.append(PettingRequest.from_doc(doc))
        except DecodeError as e:
            logger.warning("Skipping request: %s", e)
    return items


class MatchingRequestWorkflow:
    def __init__(self, identity: Identity, store, clock: Callable = utcnow):
        self.identity = identity
        self.store = store
        self.clock = clock

    # ---------------------- requester side ------------------
    def has_active_request(self, dog_id, now=None):
        now = now or self.clock()
        previous = self.store.find("applies", {"requesterId": self.identity.user_id, "dogId": dog_id})
        return any(is_request_blocking(doc, now) for doc in previous)

    def send_request(self, dog_id):
        doc = self.store.get("dogs", dog_id)
        if not doc:
            raise NotFound("Dog not found.")
        dog = DogProfile.from_doc(doc)
        if dog.owner_id == self.identity.user_id:
            raise MissingPrecondition("You cannot send a request for your own dog.")

        now = self.clock()
        if self.has_active_request(dog_id, now):
            raise Conflict("You already sent a request for this dog.")

        requester_name = self.identity.name
        user_doc = self.store.get("users", self.identity.user_id)
        if user_doc:
            requester_name = UserAccount.from_doc(user_doc).name or requester_name
        requester_name = requester_name or "Guest"

        coordinate = dog.coordinate
        data = {
            "requesterId": self.identity.user_id,
            "dogId": dog.id,
            "dogOwnerId": dog.owner_id,
            "status": RequestStatus.PENDING.value,
            "message": f"{requester_name} would like to pet {dog.name}!",
            "appliedAt": now,
            "expiresAt": now + REQUEST_LIFETIME,
            "location": coordinate.to_json() if coordinate else None,
            "updatedAt": now,
            "dogName": dog.name,
            "requesterName": requester_name,
        }
        request_id = self.store.insert("applies", data)
        logger.info("Request %s sent for dog %s", request_id, dog.id)
        return PettingRequest.from_doc({**data, "id": request_id})

    def sent(self):
        docs = self.store.find(
            "applies", {"requesterId": self.identity.user_id},
            order_by="appliedAt", descending=True,
        )
        return _decode_requests(docs)

    # ---------------------- owner side ----------------------
    def incoming(self):
        docs = self.store.find(
            "applies",
            {"dogOwnerId": self.identity.user_id, "status": RequestStatus.PENDING.value},
            order_by="appliedAt", descending=True,
        )
        return _decode_requests(docs)

    def subscribe_incoming(self, callback):
        def on_snapshot(docs):
            callback(_decode_requests(docs))

        return self.store.subscribe(
            "applies",
            {"dogOwnerId": self.identity.user_id, "status": RequestStatus.PENDING.value},
            on_snapshot, order_by="appliedAt", descending=True,
        )

    def _pending_for_owner(self, txn, request_id):
        doc = txn.get("applies", request_id)
        if not doc:
            raise NotFound("Request not found.")
        request = PettingRequest.from_doc(doc)
        if request.dog_owner_id != self.identity.user_id:
            raise Forbidden("Only the dog's owner can answer this request.")
        if request.is_terminal:
            raise TransactionFailed(f"This request was already {request.status.value}.")
        return request

    def accept(self, request_id):
        def accept_in_transaction(txn):
            request = self._pending_for_owner(txn, request_id)
            now = self.clock()

            txn.update("applies", request.id, {"status": RequestStatus.ACCEPTED.value, "updatedAt": now})

            match = Match(
                id=txn.new_id(),
                dog_id=request.dog_id,
                dog_owner_id=request.dog_owner_id,
                petting_user_id=request.requester_id,
                status=MatchStatus.ACTIVE,
                created_at=now,
                request_id=request.id,
            )
            txn.insert("matches", {
                "dogId": match.dog_id,
                "dogOwnerId": match.dog_owner_id,
                "pettingUserId": match.petting_user_id,
                "status": match.status.value,
                "createdAt": now,
                "requestId": request.id,
            }, match.id)

            chat_data = new_chat_document(match, now)
            chat_id = txn.insert("chats", chat_data, txn.new_id())
            txn.update("matches", match.id, {"chatId": chat_id})

            accepted = PettingRequest.from_doc({
                **txn.get("applies", request.id), "status": RequestStatus.ACCEPTED.value,
            })
            match.chat_id = chat_id
            return AcceptedMatch(accepted, match, ChatSession.from_doc({**chat_data, "id": chat_id}))

        result = self.store.run_transaction(accept_in_transaction)
        logger.info("Request %s accepted: match %s, chat %s", request_id, result.match.id, result.chat.id)
        return result

    def reject(self, request_id):
        def reject_in_transaction(txn):
            request = self._pending_for_owner(txn, request_id)
            now = self.clock()
            txn.update("applies", request.id, {"status": RequestStatus.REJECTED.value, "updatedAt": now})
            return PettingRequest.from_doc({
                **txn.get("applies", request.id), "status": RequestStatus.REJECTED.value,
            })

        result = self.store.run_transaction(reject_in_transaction)
        logger.info("Request %s rejected", request_id)
        return result
