"""
Server-side expiry sweeps.

Devices only close sessions while someone is looking at them. These jobs do
the same transitions for records nobody is watching.
"""
import logging

from mofumofu.config import WALK_BUDGET
from mofumofu.errors import RemoteWriteError
from mofumofu.helpers import utcnow
from mofumofu.models import ChatStatus, RequestStatus

logger = logging.getLogger(__name__)

WALK_SWEEP_SECONDS = 10 * 60
REQUEST_SWEEP_SECONDS = 2 * 60 * 60
CHAT_SWEEP_SECONDS = 10 * 60


class ExpirySweeper:
    def __init__(self, store, mirror, clock=utcnow):
        self.store = store
        self.mirror = mirror
        self.clock = clock

    def reset_stale_walks(self, now=None):
        now = now or self.clock()
        stale = self.store.find("dogs", {
            "isWalking": True,
            "lastWalkingStatusUpdate": {"$lt": now - WALK_BUDGET},
        })
        reset = 0
        for dog in stale:
            try:
                self.store.update("dogs", dog["id"], {"isWalking": False, "lastWalkingStatusUpdate": now})
            except RemoteWriteError as e:
                logger.error("Could not reset walking status of dog %s: %s", dog["id"], e)
                continue
            try:
                self.mirror.update(f"locations/dogs/{dog['id']}", {
                    "isWalking": False, "lastUpdated": now.isoformat(),
                })
            except RemoteWriteError as e:
                logger.warning("Mirror reset failed for dog %s: %s", dog["id"], e)
            reset += 1
        logger.info("Reset walking status of %d dog(s)", reset)
        return reset

    def reject_expired_requests(self, now=None):
        now = now or self.clock()
        expired = self.store.find("applies", {
            "status": RequestStatus.PENDING.value,
            "expiresAt": {"$lt": now},
        })
        rejected = 0
        for apply in expired:
            try:
                self.store.update("applies", apply["id"], {
                    "status": RequestStatus.REJECTED.value,
                    "updatedAt": now,
                    "autoRejected": True,
                    "rejectionReason": "Automatically rejected because the request expired.",
                })
                rejected += 1
            except RemoteWriteError as e:
                logger.error("Could not auto-reject request %s: %s", apply["id"], e)
        logger.info("Auto-rejected %d expired request(s)", rejected)
        return rejected

    def close_expired_chats(self, now=None):
        now = now or self.clock()
        expired = self.store.find("chats", {
            "status": ChatStatus.ACTIVE.value,
            "expiresAt": {"$lte": now},
        })
        closed = 0
        for chat in expired:
            try:
                self.store.update("chats", chat["id"], {"status": ChatStatus.CLOSED.value, "closedAt": now})
                closed += 1
            except RemoteWriteError as e:
                logger.error("Could not close chat %s: %s", chat["id"], e)
        logger.info("Closed %d expired chat(s)", closed)
        return closed

    def schedule(self, scheduler):
        return [
            scheduler.every(WALK_SWEEP_SECONDS, self.reset_stale_walks, name="reset-stale-walks"),
            scheduler.every(REQUEST_SWEEP_SECONDS, self.reject_expired_requests, name="reject-expired-requests"),
            scheduler.every(CHAT_SWEEP_SECONDS, self.close_expired_chats, name="close-expired-chats"),
        ]
