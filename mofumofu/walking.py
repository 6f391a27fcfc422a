"""
Walking sessions.

An owner marks their dog as out walking; while walking the dog shows up in
proximity searches. Each toggle captures the owner's position, writes the dog
document and mirrors the position to the realtime store. The walk has a
60-minute budget; what is left is derived from lastWalkingStatusUpdate on every
refresh. Hitting zero does not flip the dog back to idle here, the stale-walk
sweep does that.
"""
import dataclasses
import logging
import threading
from enum import Enum

from mofumofu.config import WALK_BUDGET, WALK_REFRESH_SECONDS
from mofumofu.errors import (
    Forbidden, MissingPrecondition, NotFound, PermissionDenied, RemoteWriteError,
)
from mofumofu.helpers import iso, utcnow
from mofumofu.models import DogProfile
from mofumofu.timers import SessionTimer

logger = logging.getLogger(__name__)


class WalkingState(str, Enum):
    IDLE = "idle"
    WALKING = "walking"


def remaining_walk_minutes(last_update, now, budget=WALK_BUDGET):
    if last_update is None:
        return 0
    elapsed_minutes = int((now - last_update).total_seconds() // 60)
    return max(0, int(budget.total_seconds() // 60) - elapsed_minutes)


class WalkingSessionController:
    def __init__(self, identity, dog_id, store, mirror, scheduler, clock=utcnow):
        self.identity = identity
        self.store = store
        self.mirror = mirror
        self.clock = clock
        self.dog = self._load(dog_id)
        self._listeners = []
        self._lock = threading.Lock()
        self.remaining_minutes = 0
        self.timer = SessionTimer(
            WALK_BUDGET, scheduler,
            interval_seconds=WALK_REFRESH_SECONDS,
            clock=clock,
            on_tick=self._on_tick,
            name=f"walk-{dog_id}",
        )
        self._sync_timer()

    def _load(self, dog_id):
        doc = self.store.get("dogs", dog_id)
        if not doc:
            raise NotFound("Dog not found.")
        dog = DogProfile.from_doc(doc)
        if dog.owner_id != self.identity.user_id:
            raise Forbidden("Only the owner can change this dog's walking status.")
        return dog

    @property
    def state(self):
        return WalkingState.WALKING if self.dog.is_walking else WalkingState.IDLE

    def _recompute(self, now=None):
        now = now or self.clock()
        if self.dog.is_walking:
            self.remaining_minutes = remaining_walk_minutes(self.dog.last_walking_status_update, now)
        else:
            self.remaining_minutes = 0
        return self.remaining_minutes

    def _sync_timer(self):
        if self.dog.is_walking:
            if not self.timer.active or self.timer.started_at != self.dog.last_walking_status_update:
                self.timer.start(self.dog.last_walking_status_update)
        else:
            self.timer.stop()
        self._recompute()

    def _on_tick(self, remaining, expired):
        with self._lock:
            self._recompute()
        self._notify()

    # ---------------------- actions -------------------------
    def toggle_walking(self, location):
        if not location.request_permission():
            raise PermissionDenied("Allow location access to update the walking status.")
        position = location.current_position(accuracy="balanced")
        if position is None:
            raise MissingPrecondition("Could not determine your location. Please try again.")

        now = self.clock()
        walking = not self.dog.is_walking
        fields = {
            "isWalking": walking,
            "lastWalkingStatusUpdate": now,
            "latitude": position.latitude,
            "longitude": position.longitude,
            "updatedAt": now,
        }
        if not self.store.update("dogs", self.dog.id, fields):
            raise NotFound("Dog not found.")

        # mirror is a cache for proximity reads, the dog document is authoritative
        try:
            self.mirror.set(f"locations/dogs/{self.dog.id}", {
                "latitude": position.latitude,
                "longitude": position.longitude,
                "isWalking": walking,
                "lastUpdated": now.isoformat(),
            })
        except RemoteWriteError as e:
            logger.warning("Location mirror write failed for dog %s: %s", self.dog.id, e)

        with self._lock:
            self.dog = dataclasses.replace(
                self.dog,
                is_walking=walking,
                last_walking_status_update=now,
                latitude=position.latitude,
                longitude=position.longitude,
                updated_at=now,
            )
            self._sync_timer()
        logger.info("Dog %s is now %s", self.dog.id, self.state.value)
        self._notify()
        return self.snapshot()

    def refresh(self):
        """Re-read the dog and recompute, e.g. when the screen regains focus."""
        dog = self._load(self.dog.id)
        with self._lock:
            self.dog = dog
            self._sync_timer()
        self._notify()
        return self.snapshot()

    def snapshot(self):
        return {
            "dogId": self.dog.id,
            "dogName": self.dog.name,
            "state": self.state.value,
            "isWalking": self.dog.is_walking,
            "lastWalkingStatusUpdate": iso(self.dog.last_walking_status_update),
            "remainingMinutes": self._recompute(),
            "timerActive": self.timer.active,
        }

    # ---------------------- live updates --------------------
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
                logger.exception("Walking listener failed")

    def teardown(self):
        self.timer.stop()
        self._listeners.clear()
