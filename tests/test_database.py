import database
from database import MemoryDocumentStore, get_store


def test_put_and_get_by_key():
    store = MemoryDocumentStore()
    assert store.get_by_key("S1") is None
    assert store.put_by_key("S1", {"name": "Asha", "marks": [90]})
    record = store.get_by_key("S1")
    assert record["id"] == "S1"
    assert record["name"] == "Asha"
    assert "created_at" in record and "updated_at" in record


def test_overwrite_keeps_created_at():
    store = MemoryDocumentStore()
    store.put_by_key("S1", {"name": "Asha"})
    created = store.get_by_key("S1")["created_at"]
    store.put_by_key("S1", {"id": "S1", "name": "Asha K"})
    record = store.get_by_key("S1")
    assert record["name"] == "Asha K"
    assert record["created_at"] == created


def test_delete_by_key():
    store = MemoryDocumentStore()
    store.put_by_key("S1", {"name": "Asha"})
    assert store.delete_by_key("S1")
    assert not store.delete_by_key("S1")
    assert not store.exists("S1")


def test_list_all_with_predicate():
    store = MemoryDocumentStore()
    store.put_by_key("S1", {"branch": "CSE"})
    store.put_by_key("S2", {"branch": "ECE"})
    assert {r["id"] for r in store.list_all()} == {"S1", "S2"}
    assert [r["id"] for r in store.list_all(lambda r: r["branch"] == "ECE")] == ["S2"]


def test_subscription_gets_initial_and_change_snapshots():
    store = MemoryDocumentStore()
    store.put_by_key("S1", {"name": "Asha"})
    snapshots = []
    subscription = store.subscribe_collection(snapshots.append)

    store.put_by_key("S2", {"name": "Ravi"})
    store.delete_by_key("S1")

    assert [sorted(r["id"] for r in s.records) for s in snapshots] == [["S1"], ["S1", "S2"], ["S2"]]
    versions = [s.version for s in snapshots]
    assert versions == sorted(versions)
    assert len(set(versions)) == len(versions)
    subscription.cancel()


def test_cancelled_subscription_stops_receiving():
    store = MemoryDocumentStore()
    snapshots = []
    subscription = store.subscribe_collection(snapshots.append)
    assert store.subscriber_count == 1

    subscription.cancel()
    subscription.cancel()
    store.put_by_key("S1", {"name": "Asha"})

    assert not subscription.active
    assert store.subscriber_count == 0
    assert len(snapshots) == 1


def test_subscription_predicate():
    store = MemoryDocumentStore()
    snapshots = []
    store.subscribe_collection(snapshots.append, predicate=lambda r: r.get("grade") == "F")
    store.put_by_key("S1", {"grade": "A"})
    store.put_by_key("S2", {"grade": "F"})
    assert [[r["id"] for r in s.records] for s in snapshots] == [[], [], ["S2"]]


def test_subscribe_by_key():
    store = MemoryDocumentStore()
    seen = []
    subscription = store.subscribe_by_key("S1", seen.append)
    store.put_by_key("S1", {"name": "Asha"})
    store.put_by_key("S2", {"name": "Ravi"})
    store.delete_by_key("S1")
    subscription.cancel()

    assert [s.record["name"] if s.record else None for s in seen] == [None, "Asha", "Asha", None]


def test_get_store_falls_back_to_memory():
    assert database.db is None
    store = get_store("unit_test_collection")
    assert isinstance(store, MemoryDocumentStore)
    assert get_store("unit_test_collection") is store


class FakeCollection:
    """Stands in for a pymongo collection and records the order of calls."""

    def __init__(self, calls):
        self.calls = calls
        self.stream = FakeStream(calls)

    def watch(self, **kwargs):
        self.calls.append("watch")
        return self.stream

    def find(self, query):
        self.calls.append("find")
        return [{"_id": "S1", "name": "Asha"}]


class FakeStream:
    alive = False

    def __init__(self, calls):
        self.calls = calls

    def try_next(self):
        return None

    def close(self):
        self.calls.append("close")


def test_mongo_subscription_opens_stream_before_first_read():
    calls = []
    collection = FakeCollection(calls)
    store = database.MongoDocumentStore({"student": collection}, "student")
    snapshots = []

    subscription = store.subscribe_collection(snapshots.append)
    subscription.cancel()

    assert calls[:2] == ["watch", "find"]
    assert [r["id"] for r in snapshots[0].records] == ["S1"]
