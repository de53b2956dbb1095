"""
Test suite for storage backends

Covers CRUD operations and atomic units on the in-memory and SQLite
backends, and backend selection from a database URL.
"""

import pytest
import threading

from microlending.storage import (
    StorageInterface, InMemoryStorage, SQLiteStorage, PostgreSQLStorage, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageInterface:
    """Test basic storage operations"""

    def test_basic_operations(self, storage):
        """Test save, load, exists, find, count and delete"""
        storage.save("loans", "L1", {"id": "L1", "status": "ACTIVE", "amount": "100.00"})
        storage.save("loans", "L2", {"id": "L2", "status": "PAID", "amount": "50.00"})

        assert storage.load("loans", "L1")["amount"] == "100.00"
        assert storage.load("loans", "missing") is None
        assert storage.exists("loans", "L2")
        assert storage.count("loans") == 2
        assert [r["id"] for r in storage.find("loans", {"status": "PAID"})] == ["L2"]

        assert storage.delete("loans", "L1")
        assert not storage.delete("loans", "L1")
        assert storage.count("loans") == 1

        storage.clear_table("loans")
        assert storage.load_all("loans") == []

    def test_save_overwrites(self, storage):
        storage.save("loans", "L1", {"id": "L1", "status": "ACTIVE"})
        storage.save("loans", "L1", {"id": "L1", "status": "OVERDUE"})

        assert storage.count("loans") == 1
        assert storage.load("loans", "L1")["status"] == "OVERDUE"

    def test_loaded_records_are_copies(self, storage):
        storage.save("loans", "L1", {"id": "L1", "status": "ACTIVE"})

        record = storage.load("loans", "L1")
        record["status"] = "PAID"

        assert storage.load("loans", "L1")["status"] == "ACTIVE"

    def test_load_all_returns_every_record(self, storage):
        for n in range(5):
            storage.save("payments", f"P{n}", {"id": f"P{n}"})

        ids = [r["id"] for r in storage.load_all("payments")]
        assert sorted(ids) == ["P0", "P1", "P2", "P3", "P4"]


class TestAtomicUnits:
    """Test all-or-nothing units"""

    def test_commit(self, storage):
        with storage.atomic():
            storage.save("loans", "L1", {"id": "L1"})
            storage.save("payments", "P1", {"id": "P1"})

        assert storage.exists("loans", "L1")
        assert storage.exists("payments", "P1")

    def test_rollback_restores_previous_state(self, storage):
        storage.save("loans", "L1", {"id": "L1", "balance": "100.00"})
        storage.save("loans", "L2", {"id": "L2", "balance": "50.00"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "L1", {"id": "L1", "balance": "0.00"})
                storage.save("loans", "L3", {"id": "L3", "balance": "10.00"})
                storage.delete("loans", "L2")
                raise RuntimeError("boom")

        assert storage.load("loans", "L1")["balance"] == "100.00"
        assert storage.load("loans", "L2")["balance"] == "50.00"
        assert not storage.exists("loans", "L3")

    def test_nested_units_join_outer(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "L1", {"id": "L1"})
                raise RuntimeError("outer failure")

        assert not storage.exists("loans", "L1")

    def test_units_are_serialized(self, storage):
        """Read-modify-write in concurrent units never loses an increment"""
        storage.save("counters", "C1", {"id": "C1", "value": 0})

        def increment():
            for _ in range(20):
                with storage.atomic():
                    record = storage.load_for_update("counters", "C1")
                    record["value"] += 1
                    storage.save("counters", "C1", record)

        threads = [threading.Thread(target=increment) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert storage.load("counters", "C1")["value"] == 100


class TestCreateStorage:
    """Test backend selection from URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'lending.db'}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path.endswith("lending.db")
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/lending")

    def test_backends_implement_interface(self):
        assert issubclass(PostgreSQLStorage, StorageInterface)
