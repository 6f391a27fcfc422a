"""
Wiring: the backing stores, the scheduler and the long-lived services the
HTTP layer shares between requests.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from mofumofu.auth import AuthService, TokenBlocklist
from mofumofu.config import Settings
from mofumofu.helpers import utcnow
from mofumofu.mail import Mailer
from mofumofu.notifications import NotificationTriggers, PushRelay
from mofumofu.registry import SessionRegistry
from mofumofu.store import GridFSBlobStorage, MongoDocumentStore, RedisLocationMirror
from mofumofu.sweeps import ExpirySweeper
from mofumofu.timers import IntervalScheduler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Any
    mirror: Any
    blobs: Any
    blocklist: Any
    scheduler: Any
    relay: Any
    mailer: Any = None
    registry: SessionRegistry = field(default_factory=SessionRegistry)
    clock: Callable = utcnow

    def __post_init__(self):
        self.auth = AuthService(self.store, self.blocklist, self.clock, self.mailer)
        self.sweeper = ExpirySweeper(self.store, self.mirror, self.clock)
        self.started = False

    @classmethod
    def connect(cls, settings: Settings):
        store = MongoDocumentStore.connect(settings.mongodb_uri, settings.mongodb_db)
        store.ensure_indexes()
        return cls(
            settings=settings,
            store=store,
            mirror=RedisLocationMirror.connect(settings.redis_url),
            blobs=GridFSBlobStorage(store.db),
            blocklist=TokenBlocklist.connect(settings.redis_url),
            scheduler=IntervalScheduler(),
            relay=PushRelay(settings.push_endpoint, settings.push_timeout),
            mailer=Mailer.from_settings(settings),
        )

    def start(self):
        if self.started:
            return
        self.store.triggers.dispatch_with(self.scheduler.submit)
        NotificationTriggers(self.store, self.relay).register()
        if self.settings.enable_sweeps:
            self.sweeper.schedule(self.scheduler)
        self.registry.schedule(self.scheduler)
        self.scheduler.start()
        self.started = True
        logger.info("Services started (sweeps %s)", "on" if self.settings.enable_sweeps else "off")

    def stop(self):
        if not self.started:
            return
        self.registry.close_all()
        self.scheduler.shutdown()
        self.started = False
