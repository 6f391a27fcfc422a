"""Shared test infrastructure for the mofumofu test suite.

Provides in-memory stand-ins for the backing stores so controllers run
without MongoDB, Redis or a push relay:
- store: FakeDocumentStore (Mongo-style filters, subscriptions, transactions, triggers)
- mirror: FakeMirror (key-path location mirror)
- blobs: FakeBlobs
- scheduler: FakeScheduler (jobs and one-off submissions run only when a test says so)
- clock: FakeClock (settable "now")
- make_user / make_dog / make_request: document factories
"""

import copy
import itertools
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from mofumofu.errors import NotFound, RemoteWriteError, UploadFailed
from mofumofu.models import Identity
from mofumofu.store import TriggerRegistry

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------

def _get_path(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_path(doc, key, value):
    parts = key.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _compare(op, value, operand):
    if op == "$in":
        return value in operand
    if op == "$ne":
        return value != operand
    if value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise ValueError(f"unsupported operator {op}")


def matches(doc, filters):
    for key, cond in (filters or {}).items():
        value = _get_path(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_compare(op, value, operand) for op, operand in cond.items()):
                return False
        elif value != cond:
            return False
    return True


class FakeTransaction:
    def __init__(self, store):
        self.store = store
        self.inserted = []

    def new_id(self):
        return self.store.new_id()

    def get(self, collection, doc_id):
        return self.store.get(collection, doc_id)

    def insert(self, collection, data, doc_id=None):
        doc_id = self.store._write_insert(collection, data, doc_id)
        self.inserted.append((collection, {**data, "id": doc_id}))
        return doc_id

    def update(self, collection, doc_id, fields):
        return self.store._write_update(collection, doc_id, fields)


class FakeDocumentStore:
    def __init__(self):
        self.collections = defaultdict(dict)
        self.triggers = TriggerRegistry()
        self.fail_inserts = set()
        self.fail_updates = set()
        self.transactions = 0
        self._subscriptions = []
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._dirty = set()

    # ---- interface ----
    def on_insert(self, collection, handler):
        self.triggers.on_insert(collection, handler)

    def new_id(self):
        return f"doc{next(self._ids)}"

    def get(self, collection, doc_id):
        doc = self.collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc else None

    def insert(self, collection, data, doc_id=None):
        with self._lock:
            doc_id = self._write_insert(collection, data, doc_id)
        self.triggers.fire(collection, {**data, "id": doc_id})
        self._flush()
        return doc_id

    def update(self, collection, doc_id, fields):
        with self._lock:
            updated = self._write_update(collection, doc_id, fields)
        self._flush()
        return updated

    def find(self, collection, filters=None, order_by=None, descending=False, limit=None):
        docs = [copy.deepcopy(d) for d in self.collections[collection].values() if matches(d, filters)]
        if order_by:
            docs.sort(
                key=lambda d: (d.get(order_by) is not None, d.get(order_by) if d.get(order_by) is not None else 0),
                reverse=descending,
            )
        if limit:
            docs = docs[:limit]
        return docs

    def subscribe(self, collection, filters, callback, order_by=None, descending=False, limit=None):
        sub = (collection, filters, callback, order_by, descending, limit)
        self._subscriptions.append(sub)
        callback(self.find(collection, filters, order_by, descending, limit))

        def unsubscribe():
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    def run_transaction(self, fn):
        with self._lock:
            self.transactions += 1
            saved = copy.deepcopy(self.collections)
            self._in_transaction = True
            txn = FakeTransaction(self)
            try:
                result = fn(txn)
            except Exception:
                self.collections = saved
                self._dirty.clear()
                raise
            finally:
                self._in_transaction = False
        for collection, doc in txn.inserted:
            self.triggers.fire(collection, doc)
        self._flush()
        return result

    # ---- internals ----
    def _write_insert(self, collection, data, doc_id):
        if collection in self.fail_inserts:
            raise RemoteWriteError()
        doc_id = doc_id or self.new_id()
        self.collections[collection][doc_id] = copy.deepcopy({**data, "id": doc_id})
        self._dirty.add(collection)
        return doc_id

    def _write_update(self, collection, doc_id, fields):
        if collection in self.fail_updates:
            raise RemoteWriteError()
        doc = self.collections[collection].get(doc_id)
        if doc is None:
            return False
        for key, value in fields.items():
            _set_path(doc, key, copy.deepcopy(value))
        self._dirty.add(collection)
        return True

    def _flush(self):
        if self._in_transaction:
            return
        dirty, self._dirty = self._dirty, set()
        for collection, filters, callback, order_by, descending, limit in list(self._subscriptions):
            if collection in dirty:
                callback(self.find(collection, filters, order_by, descending, limit))


# ---------------------------------------------------------------------------
# Mirror, blobs, scheduler
# ---------------------------------------------------------------------------

class FakeMirror:
    def __init__(self):
        self.data = {}
        self.fail_writes = False

    def set(self, path, value):
        if self.fail_writes:
            raise RemoteWriteError()
        self.data[path] = dict(value)

    def get(self, path):
        value = self.data.get(path)
        return dict(value) if value is not None else None

    def update(self, path, fields):
        current = self.get(path) or {}
        current.update(fields)
        self.set(path, current)


class FakeBlobs:
    def __init__(self):
        self.files = {}
        self.fail_uploads = False

    def upload(self, path, data, content_type="image/jpeg"):
        if self.fail_uploads:
            raise UploadFailed()
        self.files[path] = (data, content_type)
        return f"/api/blobs/{path}"

    def open(self, path):
        if path not in self.files:
            raise NotFound("File not found.")
        return self.files[path]


class FakeJob:
    def __init__(self, seconds, fn, name):
        self.seconds = seconds
        self.fn = fn
        self.name = name
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    def __init__(self):
        self.jobs = []
        self.submitted = []
        self.is_running = False

    def every(self, seconds, fn, name=None):
        job = FakeJob(seconds, fn, name)
        self.jobs.append(job)
        return job

    def submit(self, fn, *args):
        self.submitted.append((fn, args))

    def run_submitted(self):
        while self.submitted:
            fn, args = self.submitted.pop(0)
            fn(*args)

    def start(self):
        self.is_running = True

    def shutdown(self):
        self.is_running = False

    @property
    def active(self):
        return [j for j in self.jobs if not j.cancelled]

    def run_pending(self, prefix=""):
        for job in self.active:
            if (job.name or "").startswith(prefix):
                job.fn()


class FakeBlocklist:
    def __init__(self):
        self.revoked = {}

    def revoke(self, jti, ttl_seconds):
        self.revoked[jti] = ttl_seconds

    def is_revoked(self, jti):
        return jti in self.revoked


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def mirror():
    return FakeMirror()


@pytest.fixture
def blobs():
    return FakeBlobs()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def relay():
    mock = MagicMock()
    mock.sent = []
    mock.send.side_effect = lambda token, title, body, data=None: mock.sent.append((token, title, body, data))
    return mock


def make_user(store, name="Hana", email=None, **extra):
    email = email or f"{name.lower()}@mofumofu.jp"
    doc = {
        "email": email,
        "name": name,
        "profileImage": None,
        "comment": "",
        "isOwner": False,
        "pushToken": None,
        "createdAt": T0,
        **extra,
    }
    user_id = store.insert("users", doc)
    return Identity(user_id=user_id, email=email, name=name)


def make_dog(store, owner_id, name="Mochi", **extra):
    doc = {
        "name": name,
        "ownerId": owner_id,
        "sex": "female",
        "age": 3,
        "likes": "",
        "notes": "",
        "profileImage": None,
        "isWalking": False,
        "lastWalkingStatusUpdate": None,
        "latitude": None,
        "longitude": None,
        "createdAt": T0,
        "updatedAt": T0,
        **extra,
    }
    return store.insert("dogs", doc)


def make_request(store, requester_id, dog_id, owner_id, status="pending", applied_at=T0, **extra):
    doc = {
        "requesterId": requester_id,
        "dogId": dog_id,
        "dogOwnerId": owner_id,
        "status": status,
        "message": "",
        "appliedAt": applied_at,
        "expiresAt": applied_at + timedelta(hours=24) if applied_at else None,
        "location": None,
        "updatedAt": applied_at,
        **extra,
    }
    return store.insert("applies", doc)
