import logging
import math
from datetime import datetime
from typing import Callable, Iterable, Optional

from mofumofu.config import REAPPLY_WINDOW
from mofumofu.errors import DecodeError, PermissionDenied, MissingPrecondition, RemoteWriteError
from mofumofu.helpers import as_datetime, utcnow
from mofumofu.models import Coordinate, DogProfile, Identity, RequestStatus

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # rounding can push h a hair past 1 for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def find_within(observer: Coordinate, candidates: Iterable, radius_km: float):
    """
    candidates: iterable of (coordinate_or_None, payload).
    Returns [(payload, distance_km)] for everything within radius_km
    (inclusive), nearest first. Candidates without a coordinate are skipped.
    """
    hits = []
    for coordinate, payload in candidates:
        if coordinate is None:
            continue
        distance = haversine_km(observer, coordinate)
        if distance <= radius_km:
            hits.append((payload, distance))
    hits.sort(key=lambda hit: hit[1])
    return hits


def is_request_blocking(doc, now: datetime, window=REAPPLY_WINDOW) -> bool:
    """
    A previous request to the same dog blocks a new one while it is pending or
    accepted and younger than the reapply window. Rejected requests never block;
    requests without appliedAt (legacy) always do.
    """
    status = doc.get("status")
    if status == RequestStatus.REJECTED.value:
        return False
    applied_at = as_datetime(doc.get("appliedAt"))
    if applied_at is None:
        return True
    return now - applied_at < window


class NearbyDogSearch:
    """
    Finds walking dogs around the searcher.

    The dogs collection says who is walking; the location mirror says where.
    A dog with no mirrored position is skipped.
    """

    def __init__(self, identity: Identity, store, mirror, location,
                 radius_km: float = 5.0, clock: Callable[[], datetime] = utcnow):
        self.identity = identity
        self.store = store
        self.mirror = mirror
        self.location = location
        self.radius_km = radius_km
        self.clock = clock

    def observer_position(self) -> Coordinate:
        if not self.location.request_permission():
            raise PermissionDenied("Allow location access to find dogs nearby.")
        position = self.location.current_position(accuracy="balanced")
        if position is None:
            raise MissingPrecondition("Could not determine your location. Please try again.")
        try:
            self.mirror.set(f"locations/users/{self.identity.user_id}", {
                "latitude": position.latitude,
                "longitude": position.longitude,
                "lastUpdated": self.clock().isoformat(),
            })
        except RemoteWriteError as e:
            logger.warning("User location mirror failed for %s: %s", self.identity.user_id, e)
        return position

    def applied_dog_ids(self):
        now = self.clock()
        docs = self.store.find("applies", {
            "requesterId": self.identity.user_id,
            "status": {"$in": [s.value for s in RequestStatus]},
        })
        return {d["dogId"] for d in docs if d.get("dogId") and is_request_blocking(d, now)}

    def search(self, radius_km: Optional[float] = None):
        radius = self.radius_km if radius_km is None else radius_km
        observer = self.observer_position()

        candidates = []
        for doc in self.store.find("dogs", {"isWalking": True}):
            try:
                dog = DogProfile.from_doc(doc)
            except DecodeError as e:
                logger.warning("Skipping dog in search: %s", e)
                continue
            if dog.owner_id == self.identity.user_id:
                continue
            mirrored = self.mirror.get(f"locations/dogs/{dog.id}") or {}
            coordinate = Coordinate.maybe(mirrored.get("latitude"), mirrored.get("longitude"))
            candidates.append((coordinate, dog))

        applied = self.applied_dog_ids()
        results = []
        for dog, distance in find_within(observer, candidates, radius):
            results.append({
                **dog.to_json(),
                "distanceKm": distance,
                "applied": dog.id in applied,
            })
        return results
