"""
Keeps live controllers (their timers and subscriptions) around between HTTP
requests. One controller per key; idle ones are torn down periodically.

A key that is held (an open event stream) is never idle, however long ago
it was last opened.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import timedelta

from mofumofu.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_IDLE = timedelta(minutes=15)


class SessionRegistry:
    def __init__(self, clock=utcnow):
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries

    def open(self, key, factory):
        """
        Return the controller for key, building it with factory() the first time.

        factory() talks to the store, so it runs outside the lock. When two
        requests race to build the same key the first one registered wins and
        the other controller is torn down.
        """
        existing = self.get(key)
        if existing is not None:
            return existing

        controller = factory()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = {"controller": controller, "last_used": self.clock(), "holds": 0}
                logger.debug("Opened session %s", key)
                return controller
            entry["last_used"] = self.clock()
            winner = entry["controller"]
        self._teardown(key, controller)
        return winner

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry["last_used"] = self.clock()
            return entry["controller"]

    def hold(self, key):
        """Mark key as in use until release(key). Returns False if it is not open."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry["holds"] += 1
            entry["last_used"] = self.clock()
            return True

    def release(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry["holds"] > 0:
                entry["holds"] -= 1
                entry["last_used"] = self.clock()

    @contextmanager
    def holding(self, key):
        held = self.hold(key)
        try:
            yield held
        finally:
            if held:
                self.release(key)

    def close(self, key):
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._teardown(key, entry["controller"])
        return True

    def close_all(self):
        with self._lock:
            entries, self._entries = self._entries, {}
        for key, entry in entries.items():
            self._teardown(key, entry["controller"])
        return len(entries)

    def close_for(self, user_id):
        """Tear down every session opened by user_id. Keys are (kind, user_id, entity_id)."""
        with self._lock:
            keys = [k for k in self._entries if len(k) > 1 and k[1] == user_id]
            entries = [(k, self._entries.pop(k)) for k in keys]
        for key, entry in entries:
            self._teardown(key, entry["controller"])
        return len(entries)

    def close_idle(self, max_idle=DEFAULT_MAX_IDLE):
        cutoff = self.clock() - max_idle
        with self._lock:
            stale = [k for k, e in self._entries.items() if not e["holds"] and e["last_used"] < cutoff]
            entries = [(k, self._entries.pop(k)) for k in stale]
        for key, entry in entries:
            self._teardown(key, entry["controller"])
        if entries:
            logger.info("Closed %d idle session(s)", len(entries))
        return len(entries)

    def schedule(self, scheduler, max_idle=DEFAULT_MAX_IDLE, interval_seconds=60):
        return scheduler.every(interval_seconds, lambda: self.close_idle(max_idle), name="close-idle-sessions")

    @staticmethod
    def _teardown(key, controller):
        try:
            controller.teardown()
        except Exception:
            logger.exception("Teardown of session %s failed", key)
