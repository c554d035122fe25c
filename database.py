import itertools
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import StoreUnavailable

# Load environment variables if present
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "gradebook")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").lower()
WATCH_POLL_MS = int(os.getenv("WATCH_POLL_MS", 1000))

client = None
_db = None

if STORE_BACKEND == "mongo":
    try:
        client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
        _db = client[DATABASE_NAME]
    except Exception as e:
        logger.warning(f"Could not create Mongo client for {DATABASE_URL}: {e}")
        client = None
        _db = None

# Expose db for other modules
db = _db

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]


class Snapshot(NamedTuple):
    version: int
    records: List[Document]


class RecordSnapshot(NamedTuple):
    version: int
    record: Optional[Document]


class Subscription:
    def __init__(self, on_cancel: Callable[[], None]):
        self._on_cancel = on_cancel
        self._cancelled = threading.Event()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._on_cancel()


def _to_record(doc: Optional[Document]) -> Optional[Document]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc["_id"])
        del doc["_id"]
    return doc


def _stamp(key: str, data: Document, existing: Optional[Document]) -> Document:
    data = dict(data)
    data.pop("id", None)
    data.pop("_id", None)
    now = datetime.now(timezone.utc)
    data["created_at"] = (existing or {}).get("created_at", now)
    data["updated_at"] = now
    return data


class DocumentStore:
    """
    A keyed collection of documents.

    Subscriptions get the current snapshot right away and a full snapshot
    after every change. Snapshot versions only ever grow.
    """

    name: str

    def get_by_key(self, key: str) -> Optional[Document]:
        raise NotImplementedError

    def put_by_key(self, key: str, data: Document) -> bool:
        raise NotImplementedError

    def delete_by_key(self, key: str) -> bool:
        raise NotImplementedError

    def list_all(self, predicate: Optional[Predicate] = None) -> List[Document]:
        raise NotImplementedError

    def subscribe_collection(
        self, callback: Callable[[Snapshot], None], predicate: Optional[Predicate] = None
    ) -> Subscription:
        raise NotImplementedError

    def subscribe_by_key(self, key: str, callback: Callable[[RecordSnapshot], None]) -> Subscription:
        def on_snapshot(snapshot: Snapshot) -> None:
            record = snapshot.records[0] if snapshot.records else None
            callback(RecordSnapshot(snapshot.version, record))

        return self.subscribe_collection(on_snapshot, predicate=lambda doc: doc.get("id") == key)

    def exists(self, key: str) -> bool:
        return self.get_by_key(key) is not None


class MemoryDocumentStore(DocumentStore):
    """In-process store used for local development and tests."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._docs: Dict[str, Document] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._subscribers: Dict[int, tuple] = {}
        self._subscriber_ids = itertools.count()

    def get_by_key(self, key: str) -> Optional[Document]:
        with self._lock:
            doc = self._docs.get(key)
            return _to_record({"_id": key, **doc}) if doc is not None else None

    def put_by_key(self, key: str, data: Document) -> bool:
        with self._lock:
            self._docs[key] = _stamp(key, data, self._docs.get(key))
        self._publish()
        return True

    def delete_by_key(self, key: str) -> bool:
        with self._lock:
            removed = self._docs.pop(key, None)
        if removed is None:
            return False
        self._publish()
        return True

    def list_all(self, predicate: Optional[Predicate] = None) -> List[Document]:
        with self._lock:
            records = [_to_record({"_id": key, **doc}) for key, doc in self._docs.items()]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    def _snapshot(self, predicate: Optional[Predicate]) -> Snapshot:
        with self._lock:
            return Snapshot(next(self._versions), self.list_all(predicate))

    def _publish(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback, predicate in subscribers:
            callback(self._snapshot(predicate))

    def subscribe_collection(
        self, callback: Callable[[Snapshot], None], predicate: Optional[Predicate] = None
    ) -> Subscription:
        with self._lock:
            sub_id = next(self._subscriber_ids)
            self._subscribers[sub_id] = (callback, predicate)
            initial = self._snapshot(predicate)

        def on_cancel() -> None:
            with self._lock:
                self._subscribers.pop(sub_id, None)

        subscription = Subscription(on_cancel)
        callback(initial)
        return subscription

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class MongoDocumentStore(DocumentStore):
    def __init__(self, database, collection_name: str):
        self.name = collection_name
        self._collection = database[collection_name]
        self._versions = itertools.count(1)
        self._version_lock = threading.Lock()

    def _next_version(self) -> int:
        with self._version_lock:
            return next(self._versions)

    def get_by_key(self, key: str) -> Optional[Document]:
        try:
            return _to_record(self._collection.find_one({"_id": key}))
        except PyMongoError as e:
            raise StoreUnavailable(str(e)) from e

    def put_by_key(self, key: str, data: Document) -> bool:
        try:
            existing = self._collection.find_one({"_id": key}, {"created_at": 1})
            result = self._collection.replace_one({"_id": key}, _stamp(key, data, existing), upsert=True)
        except PyMongoError as e:
            raise StoreUnavailable(str(e)) from e
        return result.acknowledged

    def delete_by_key(self, key: str) -> bool:
        try:
            result = self._collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise StoreUnavailable(str(e)) from e
        return result.deleted_count > 0

    def list_all(self, predicate: Optional[Predicate] = None) -> List[Document]:
        try:
            records = [_to_record(doc) for doc in self._collection.find({})]
        except PyMongoError as e:
            raise StoreUnavailable(str(e)) from e
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    def _snapshot(self, predicate: Optional[Predicate]) -> Snapshot:
        version = self._next_version()
        return Snapshot(version, self.list_all(predicate))

    def subscribe_collection(
        self, callback: Callable[[Snapshot], None], predicate: Optional[Predicate] = None
    ) -> Subscription:
        stop = threading.Event()
        subscription = Subscription(stop.set)
        # open the stream before the first read so no write falls between them
        try:
            stream = self._collection.watch(max_await_time_ms=WATCH_POLL_MS)
        except PyMongoError as e:
            logger.error(f"Could not open change stream on '{self.name}': {e}")
            stream = None
        try:
            callback(self._snapshot(predicate))
        except Exception:
            if stream is not None:
                stream.close()
            raise
        if stream is None:
            return subscription

        def watch() -> None:
            try:
                while stream.alive and not stop.is_set():
                    change = stream.try_next()
                    if change is None or stop.is_set():
                        continue
                    callback(self._snapshot(predicate))
            except PyMongoError as e:
                logger.error(f"Change stream on '{self.name}' stopped: {e}")
            finally:
                stream.close()

        threading.Thread(target=watch, name=f"watch-{self.name}", daemon=True).start()
        return subscription


_stores: Dict[str, DocumentStore] = {}
_stores_lock = threading.Lock()


def get_store(collection_name: str) -> DocumentStore:
    with _stores_lock:
        store = _stores.get(collection_name)
        if store is None:
            if db is not None:
                store = MongoDocumentStore(db, collection_name)
            else:
                logger.info(f"Using in-memory store for '{collection_name}'")
                store = MemoryDocumentStore(collection_name)
            _stores[collection_name] = store
        return store
