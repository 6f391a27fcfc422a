"""
Backing stores.

- MongoDocumentStore: the document database (users, dogs, applies, matches,
  chats, messages). Documents travel as dicts with the id under "id".
- RedisLocationMirror: low-latency key-path store that mirrors current dog and
  user positions for proximity reads.
- GridFSBlobStorage: profile images.

Transactions and change streams need MongoDB running as a replica set.
"""
import json
import logging
import threading
from collections import defaultdict

import gridfs
import redis
from gridfs.errors import NoFile
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, errors as mongo_errors

from mofumofu.errors import (
    Conflict, MofumofuError, NotFound, RemoteReadError, RemoteWriteError, TransactionFailed,
    UploadFailed,
)
from mofumofu.helpers import safe_oid

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "dogs", "applies", "matches", "chats", "messages")


def _store_id(doc_id):
    oid = safe_oid(doc_id)
    return oid if oid is not None else doc_id


def _from_store(doc):
    if not doc:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


def _run_inline(fn, *args):
    fn(*args)


class TriggerRegistry:
    """
    on-create handlers, run after the write (or its transaction) is committed.

    Handlers go through `dispatch`, inline until `dispatch_with` hands them to
    a worker pool so a slow handler never holds up the write that fired it.
    """

    def __init__(self, dispatch=_run_inline):
        self._handlers = defaultdict(list)
        self.dispatch = dispatch

    def on_insert(self, collection, handler):
        self._handlers[collection].append(handler)

    def dispatch_with(self, dispatch):
        self.dispatch = dispatch

    def fire(self, collection, doc):
        for handler in self._handlers.get(collection, []):
            self.dispatch(self._run, handler, collection, doc)

    @staticmethod
    def _run(handler, collection, doc):
        try:
            handler(doc)
        except Exception:
            logger.exception("Trigger %s failed for %s/%s",
                             getattr(handler, "__name__", handler), collection, doc.get("id"))


# ------------------------------------------------------------
# Document store
# ------------------------------------------------------------
class MongoTransaction:
    def __init__(self, store, session, inserted):
        self.store = store
        self.session = session
        self.inserted = inserted

    def new_id(self):
        return self.store.new_id()

    def get(self, collection, doc_id):
        doc = self.store.db[collection].find_one({"_id": _store_id(doc_id)}, session=self.session)
        return _from_store(doc)

    def insert(self, collection, data, doc_id=None):
        doc_id = doc_id or self.new_id()
        doc = {k: v for k, v in data.items() if k != "id"}
        doc["_id"] = _store_id(doc_id)
        self.store.db[collection].insert_one(doc, session=self.session)
        self.inserted.append((collection, {**data, "id": doc_id}))
        return doc_id

    def update(self, collection, doc_id, fields):
        res = self.store.db[collection].update_one(
            {"_id": _store_id(doc_id)}, {"$set": fields}, session=self.session
        )
        return res.matched_count > 0


class MongoDocumentStore:
    def __init__(self, client: MongoClient, db_name: str):
        self.client = client
        self.db = client[db_name]
        self.triggers = TriggerRegistry()

    @classmethod
    def connect(cls, uri, db_name):
        return cls(MongoClient(uri, tz_aware=True), db_name)

    def ensure_indexes(self):
        try:
            self.db["users"].create_index([("email", ASCENDING)], unique=True)
            self.db["users"].create_index([("resetTokenHash", ASCENDING)], sparse=True)
            self.db["dogs"].create_index([("ownerId", ASCENDING)])
            self.db["dogs"].create_index([("isWalking", ASCENDING), ("lastWalkingStatusUpdate", ASCENDING)])
            self.db["applies"].create_index([("dogOwnerId", ASCENDING), ("status", ASCENDING), ("appliedAt", DESCENDING)])
            self.db["applies"].create_index([("requesterId", ASCENDING), ("dogId", ASCENDING)])
            self.db["applies"].create_index([("status", ASCENDING), ("expiresAt", ASCENDING)])
            self.db["chats"].create_index([("dogOwnerId", ASCENDING), ("lastMessageAt", DESCENDING)])
            self.db["chats"].create_index([("pettingUserId", ASCENDING), ("lastMessageAt", DESCENDING)])
            self.db["chats"].create_index([("status", ASCENDING), ("expiresAt", ASCENDING)])
            self.db["messages"].create_index([("chatId", ASCENDING), ("createdAt", DESCENDING)])
        except mongo_errors.PyMongoError as e:
            logger.warning("Index creation warning: %s", e)

    def on_insert(self, collection, handler):
        self.triggers.on_insert(collection, handler)

    def new_id(self):
        return str(ObjectId())

    def get(self, collection, doc_id):
        try:
            return _from_store(self.db[collection].find_one({"_id": _store_id(doc_id)}))
        except mongo_errors.PyMongoError as e:
            raise RemoteReadError() from e

    def insert(self, collection, data, doc_id=None):
        doc_id = doc_id or self.new_id()
        doc = {k: v for k, v in data.items() if k != "id"}
        doc["_id"] = _store_id(doc_id)
        try:
            self.db[collection].insert_one(doc)
        except mongo_errors.DuplicateKeyError as e:
            raise Conflict() from e
        except mongo_errors.PyMongoError as e:
            raise RemoteWriteError() from e
        stored = {**data, "id": doc_id}
        self.triggers.fire(collection, stored)
        return doc_id

    def update(self, collection, doc_id, fields):
        try:
            res = self.db[collection].update_one({"_id": _store_id(doc_id)}, {"$set": fields})
        except mongo_errors.PyMongoError as e:
            raise RemoteWriteError() from e
        return res.matched_count > 0

    def find(self, collection, filters=None, order_by=None, descending=False, limit=None):
        try:
            cur = self.db[collection].find(filters or {})
            if order_by:
                cur = cur.sort(order_by, DESCENDING if descending else ASCENDING)
            if limit:
                cur = cur.limit(limit)
            return [_from_store(d) for d in cur]
        except mongo_errors.PyMongoError as e:
            raise RemoteReadError() from e

    def subscribe(self, collection, filters, callback, order_by=None, descending=False, limit=None):
        """
        Emit the full query result now and again after every change to the
        collection. Returns an unsubscribe callable.
        """
        def emit():
            try:
                callback(self.find(collection, filters, order_by, descending, limit))
            except MofumofuError as e:
                logger.error("Subscription on %s failed to refresh: %s", collection, e)

        stop = threading.Event()

        def watch():
            try:
                with self.db[collection].watch() as stream:
                    while not stop.is_set():
                        change = stream.try_next()
                        if change is None:
                            stop.wait(0.2)
                            continue
                        emit()
            except mongo_errors.PyMongoError as e:
                logger.error("Change stream on %s stopped: %s", collection, e)

        emit()
        thread = threading.Thread(target=watch, name=f"watch-{collection}", daemon=True)
        thread.start()

        def unsubscribe():
            stop.set()
            thread.join(timeout=1)

        return unsubscribe

    def run_transaction(self, fn):
        """Run fn(txn) in one multi-document transaction. All writes commit or none do."""
        inserted = []

        def callback(session):
            inserted.clear()
            return fn(MongoTransaction(self, session, inserted))

        try:
            with self.client.start_session() as session:
                result = session.with_transaction(callback)
        except MofumofuError:
            raise
        except mongo_errors.PyMongoError as e:
            raise TransactionFailed() from e

        for collection, doc in inserted:
            self.triggers.fire(collection, doc)
        return result


# ------------------------------------------------------------
# Realtime location mirror
# ------------------------------------------------------------
class RedisLocationMirror:
    def __init__(self, client: redis.Redis, prefix="mofumofu"):
        self.redis = client
        self.prefix = prefix

    @classmethod
    def connect(cls, url):
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _key(self, path):
        return f"{self.prefix}:{path.strip('/').replace('/', ':')}"

    def set(self, path, value):
        try:
            self.redis.set(self._key(path), json.dumps(value))
        except redis.RedisError as e:
            raise RemoteWriteError() from e

    def get(self, path):
        try:
            raw = self.redis.get(self._key(path))
        except redis.RedisError as e:
            raise RemoteReadError() from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable mirror entry %s", path)
            return None

    def update(self, path, fields):
        current = self.get(path) or {}
        current.update(fields)
        self.set(path, current)


# ------------------------------------------------------------
# Blob storage
# ------------------------------------------------------------
class GridFSBlobStorage:
    def __init__(self, db, public_base="/api/blobs"):
        self.fs = gridfs.GridFS(db, collection="blobs")
        self.public_base = public_base.rstrip("/")

    def upload(self, path, data: bytes, content_type="image/jpeg"):
        try:
            for old in self.fs.find({"filename": path}):
                self.fs.delete(old._id)
            self.fs.put(data, filename=path, metadata={"contentType": content_type})
        except mongo_errors.PyMongoError as e:
            raise UploadFailed() from e
        return f"{self.public_base}/{path}"

    def open(self, path):
        try:
            grid_out = self.fs.get_last_version(filename=path)
        except NoFile:
            raise NotFound("File not found.")
        except mongo_errors.PyMongoError as e:
            raise RemoteReadError() from e
        content_type = (grid_out.metadata or {}).get("contentType")
        return grid_out.read(), content_type or "application/octet-stream"
