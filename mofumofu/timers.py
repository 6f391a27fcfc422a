"""
Countdown/expiry primitive shared by walking sessions and chat sessions.

Remaining time is always recomputed from the wall clock and the stored start
time. The interval tick only triggers a recomputation, it never decrements
anything, so a paused or slow process reads the right value on the next tick.
"""
import logging
import threading
from datetime import timedelta

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from mofumofu.helpers import utcnow

logger = logging.getLogger(__name__)

ZERO = timedelta(0)


def remaining(start, duration, now):
    return max(ZERO, start + duration - now)


def is_expired(start, duration, now):
    return now >= start + duration


def until(deadline, now):
    return max(ZERO, deadline - now)


def format_remaining(delta):
    if delta <= ZERO:
        return "expired"
    total_minutes = int(delta.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------
class ScheduledJob:
    def __init__(self, job):
        self._job = job
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self._job.remove()
        except LookupError:
            # already removed, e.g. scheduler shut down
            pass


class IntervalScheduler:
    """Recurring callbacks on an APScheduler background scheduler."""

    def __init__(self, max_workers=10):
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
            timezone=pytz.UTC,
        )
        self.is_running = False

    def start(self):
        if self.is_running:
            return
        self.scheduler.start()
        self.is_running = True
        logger.info("Interval scheduler started")

    def shutdown(self):
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Interval scheduler stopped")

    def every(self, seconds, fn, name=None):
        job = self.scheduler.add_job(fn, "interval", seconds=seconds, name=name)
        return ScheduledJob(job)

    def submit(self, fn, *args):
        """Run fn(*args) once, as soon as a worker is free."""
        self.scheduler.add_job(fn, args=args, name=getattr(fn, "__name__", None))


# ------------------------------------------------------------
# SessionTimer
# ------------------------------------------------------------
class SessionTimer:
    def __init__(self, duration, scheduler, interval_seconds=1, clock=utcnow, on_tick=None, name=None):
        self.duration = duration
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.on_tick = on_tick
        self.name = name or "session-timer"
        self.started_at = None
        self._handle = None
        self._lock = threading.Lock()

    @property
    def active(self):
        return self._handle is not None

    def start(self, started_at):
        """(Re)start counting from started_at. Any running interval is cancelled first."""
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            self.started_at = started_at
            self._handle = self.scheduler.every(self.interval_seconds, self.tick, name=self.name)

    def stop(self):
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def remaining(self, now=None):
        if self.started_at is None:
            return ZERO
        return remaining(self.started_at, self.duration, now or self.clock())

    def is_expired(self, now=None):
        if self.started_at is None:
            return False
        return is_expired(self.started_at, self.duration, now or self.clock())

    def tick(self):
        now = self.clock()
        left = self.remaining(now)
        expired = self.is_expired(now)
        if self.on_tick is not None:
            try:
                self.on_tick(left, expired)
            except Exception:
                logger.exception("%s tick callback failed", self.name)
        return left, expired
