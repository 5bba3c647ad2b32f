"""
Test suite for storage backends

Both backends must behave identically, including rollback of atomic blocks.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum

from microlending.storage import InMemoryStorage, SQLiteStorage, StorageRecord, create_storage


class Colour(Enum):
    RED = "red"


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    colour: Colour
    seen_at: datetime = None

    decimal_fields = ('amount',)
    datetime_fields = ('seen_at',)
    enum_fields = {'colour': Colour}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    backend = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageBackends:

    def test_save_and_load(self, storage):
        storage.save("loans", "L1", {"id": "L1", "amount": "100.00", "status": "pending"})

        assert storage.load("loans", "L1") == {"id": "L1", "amount": "100.00", "status": "pending"}
        assert storage.load("loans", "missing") is None
        assert storage.exists("loans", "L1")
        assert storage.count("loans") == 1

    def test_returned_records_are_copies(self, storage):
        storage.save("loans", "L1", {"id": "L1", "meta": {"a": 1}})
        record = storage.load("loans", "L1")
        record["meta"]["a"] = 2
        assert storage.load("loans", "L1")["meta"]["a"] == 1

    def test_find_and_load_all(self, storage):
        storage.save("loans", "L1", {"id": "L1", "status": "pending", "user_id": "U1"})
        storage.save("loans", "L2", {"id": "L2", "status": "approved", "user_id": "U1"})
        storage.save("loans", "L3", {"id": "L3", "status": "pending", "user_id": "U2"})

        assert [r["id"] for r in storage.find("loans", {"status": "pending"})] == ["L1", "L3"]
        assert [r["id"] for r in storage.find("loans", {"status": "pending", "user_id": "U2"})] == ["L3"]
        assert [r["id"] for r in storage.load_all("loans")] == ["L1", "L2", "L3"]

    def test_delete_and_clear(self, storage):
        storage.save("loans", "L1", {"id": "L1"})
        storage.save("loans", "L2", {"id": "L2"})

        assert storage.delete("loans", "L1") is True
        assert storage.delete("loans", "L1") is False
        storage.clear_table("loans")
        assert storage.count("loans") == 0

    def test_atomic_rolls_back(self, storage):
        storage.save("loans", "L1", {"id": "L1", "status": "pending"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "L1", {"id": "L1", "status": "approved"})
                storage.save("users", "U1", {"id": "U1", "credit_score": 700})
                raise RuntimeError("abort")

        assert storage.load("loans", "L1")["status"] == "pending"
        assert storage.load("users", "U1") is None

    def test_nested_atomic_commits_with_outer(self, storage):
        with storage.atomic():
            storage.save("loans", "L1", {"id": "L1"})
            with storage.atomic():
                storage.save("loans", "L2", {"id": "L2"})

        assert storage.count("loans") == 2

    def test_compare_and_swap(self, storage):
        assert storage.compare_and_swap("loans", "L1", None, {"id": "L1", "version": 0})
        assert not storage.compare_and_swap("loans", "L1", 3, {"id": "L1", "version": 4})
        assert storage.compare_and_swap("loans", "L1", 0, {"id": "L1", "version": 1})


class TestStorageRecord:

    def test_round_trip(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord(
            id="S1", created_at=now, updated_at=now,
            amount=Decimal("12.50"), colour=Colour.RED, seen_at=now
        )

        data = record.to_dict()
        assert data["amount"] == "12.50"
        assert data["colour"] == "red"
        assert data["seen_at"] == now.isoformat()

        restored = SampleRecord.from_dict(data)
        assert restored == record


class TestCreateStorage:

    def test_backends(self, tmp_path):
        assert isinstance(create_storage("memory"), InMemoryStorage)

        sqlite = create_storage("sqlite", str(tmp_path / "lending.db"))
        assert isinstance(sqlite, SQLiteStorage)
        sqlite.close()

        with pytest.raises(ValueError):
            create_storage("postgres")

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "lending.db"
        first = SQLiteStorage(path)
        first.save("loans", "L1", {"id": "L1", "amount": "10.00"})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("loans", "L1") == {"id": "L1", "amount": "10.00"}
        second.close()
