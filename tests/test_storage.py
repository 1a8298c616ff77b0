"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from kyc_registry.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)
from kyc_registry.banks import Bank
from kyc_registry.config import RegistryConfig
from kyc_registry.registry import KycRegistry


test_data = {
    "id": "0xbank_a",
    "name": "Bank A",
    "registration_number": "REG-001",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestInMemoryStorage:
    """Test InMemoryStorage operations"""

    def test_basic_operations(self):
        """Test basic CRUD operations"""
        storage = InMemoryStorage()

        storage.save("banks", "0xbank_a", test_data)
        assert storage.load("banks", "0xbank_a") == test_data
        assert storage.exists("banks", "0xbank_a")
        assert not storage.exists("banks", "0xnone")

        storage.save("banks", "0xbank_b", {"id": "0xbank_b", "name": "Bank B"})
        assert len(storage.load_all("banks")) == 2
        assert storage.find("banks", {"name": "Bank B"})[0]["id"] == "0xbank_b"

        results = storage.find("banks", {"name": "Bank A"})
        assert len(results) == 1
        assert results[0]["id"] == "0xbank_a"

        assert storage.delete("banks", "0xbank_a")
        assert not storage.delete("banks", "0xbank_a")
        assert storage.load("banks", "0xbank_a") is None
        assert [r["id"] for r in storage.load_all("banks")] == ["0xbank_b"]

    def test_loaded_records_are_copies(self):
        """Test mutating a loaded record does not touch storage"""
        storage = InMemoryStorage()
        storage.save("customers", "alice", {"id": "alice", "up_votes": 0})

        loaded = storage.load("customers", "alice")
        loaded["up_votes"] = 5

        assert storage.load("customers", "alice")["up_votes"] == 0

    def test_atomic_commit(self):
        """Test committed writes persist"""
        storage = InMemoryStorage()

        with storage.atomic():
            storage.save("customers", "alice", {"id": "alice"})

        assert storage.exists("customers", "alice")

    def test_atomic_rollback(self):
        """Test a failure inside atomic() undoes every write"""
        storage = InMemoryStorage()
        storage.save("customers", "alice", {"id": "alice", "up_votes": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("customers", "alice", {"id": "alice", "up_votes": 2})
                storage.save("customers", "bob", {"id": "bob"})
                storage.delete("kyc_requests", "alice")
                raise RuntimeError("abort")

        assert storage.load("customers", "alice")["up_votes"] == 1
        assert not storage.exists("customers", "bob")

    def test_transaction_tracks_only_touched_keys(self):
        """Test the undo log grows with the transaction, not the store"""
        storage = InMemoryStorage()
        for i in range(500):
            storage.save("customers", f"user-{i}", {"id": f"user-{i}"})

        with storage.atomic():
            storage.save("customers", "user-1", {"id": "user-1", "up_votes": 1})
            storage.delete("customers", "user-2")
            storage.delete("customers", "missing")
            assert storage.pending_writes == 2

        assert storage.pending_writes == 0

    def test_rollback_generation(self):
        """Test only rollbacks that discard writes bump the generation"""
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.load("customers", "alice")
                raise RuntimeError("abort")
        assert storage.rollback_generation == 0

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("customers", "alice", {"id": "alice"})
                raise RuntimeError("abort")
        assert storage.rollback_generation == 1

    def test_load_latest(self):
        """Test the highest sequence wins regardless of insertion order"""
        storage = InMemoryStorage()
        assert storage.load_latest("audit_events") is None

        storage.save("audit_events", "b", {"id": "b", "sequence": 2})
        storage.save("audit_events", "a", {"id": "a", "sequence": 1})
        storage.save("audit_events", "x", {"id": "x"})

        assert storage.load_latest("audit_events")["id"] == "b"


class TestSQLiteStorage:
    """Test SQLiteStorage operations"""

    def test_basic_operations(self):
        """Test basic CRUD operations"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "registry.db")

            storage.save("banks", "0xbank_a", test_data)
            assert storage.load("banks", "0xbank_a") == test_data
            assert storage.exists("banks", "0xbank_a")

            storage.save("banks", "0xbank_b", {"id": "0xbank_b", "name": "Bank B"})
            assert [r["id"] for r in storage.load_all("banks")] == ["0xbank_a", "0xbank_b"]
            assert storage.find("banks", {"name": "Bank B"})[0]["id"] == "0xbank_b"
            assert storage.find("banks", {"name": "Nobody"}) == []

            assert storage.delete("banks", "0xbank_b")
            assert [r["id"] for r in storage.load_all("banks")] == ["0xbank_a"]

            storage.close()

    def test_atomic_rollback(self):
        """Test rollback discards writes made inside the transaction"""
        storage = SQLiteStorage(":memory:")
        storage.save("customers", "alice", {"id": "alice", "up_votes": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("customers", "alice", {"id": "alice", "up_votes": 2})
                storage.save("kyc_requests", "alice", {"id": "alice"})
                raise RuntimeError("abort")

        assert storage.load("customers", "alice")["up_votes"] == 1
        assert not storage.exists("kyc_requests", "alice")

        # Tables created inside the rolled back transaction are usable again
        storage.save("kyc_requests", "alice", {"id": "alice"})
        assert storage.exists("kyc_requests", "alice")
        assert storage.rollback_generation == 1
        storage.close()

    def test_update_keeps_insertion_order(self):
        """Test re-saving a record does not move it to the end"""
        storage = SQLiteStorage(":memory:")
        storage.save("banks", "0xbank_a", {"id": "0xbank_a", "kyc_count": 0})
        storage.save("banks", "0xbank_b", {"id": "0xbank_b", "kyc_count": 0})
        storage.save("banks", "0xbank_a", {"id": "0xbank_a", "kyc_count": 3})

        assert [r["id"] for r in storage.load_all("banks")] == ["0xbank_a", "0xbank_b"]
        assert storage.load("banks", "0xbank_a")["kyc_count"] == 3
        storage.close()

    def test_find_matches_json_fields(self):
        """Test filters compare against fields inside the stored document"""
        storage = SQLiteStorage(":memory:")
        storage.save("banks", "0xbank_a", {"id": "0xbank_a", "is_allowed_to_vote": True, "kyc_count": 2})
        storage.save("banks", "0xbank_b", {"id": "0xbank_b", "is_allowed_to_vote": False, "kyc_count": 2})

        allowed = storage.find("banks", {"is_allowed_to_vote": True, "kyc_count": 2})
        assert [r["id"] for r in allowed] == ["0xbank_a"]
        storage.close()

    def test_load_latest_uses_sequence_column(self):
        """Test the chain head comes from the indexed sequence column"""
        storage = SQLiteStorage(":memory:")
        assert storage.load_latest("audit_events") is None

        for sequence in (3, 1, 2):
            storage.save("audit_events", f"event-{sequence}", {"id": f"event-{sequence}", "sequence": sequence})
        storage.save("registry_state", "state", {"id": "state"})

        assert storage.load_latest("audit_events")["id"] == "event-3"
        assert storage.load_latest("registry_state") is None

        indexes = storage._connection.execute("PRAGMA index_list(audit_events)").fetchall()
        assert any(row["name"] == "idx_audit_events_seq" for row in indexes)
        storage.close()

    def test_registry_state_persists(self):
        """Test a registry reopened on the same database sees prior state"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "registry.db"
            config = RegistryConfig(admin_id="0xadmin")

            storage = SQLiteStorage(db_path)
            registry = KycRegistry("0xadmin", storage=storage, config=config)
            registry.add_bank("0xadmin", "Bank A", "0xbank_a", "REG-001")
            registry.add_bank("0xadmin", "Bank B", "0xbank_b", "REG-002")
            registry.add_customer("0xbank_a", "alice", "alice-data")
            registry.add_kyc_request("0xbank_a", "alice", "alice-data")
            registry.up_vote_customer("0xbank_b", "alice")
            storage.close()

            storage = SQLiteStorage(db_path)
            reopened = KycRegistry("0xadmin", storage=storage, config=config)

            assert reopened.total_banks == 2
            assert reopened.view_customer("alice").kyc_status is True
            assert reopened.has_voted("alice", "0xbank_b")
            assert reopened.get_bank_kyc_count("0xbank_a") == 1
            assert reopened.audit_trail.verify_integrity()['valid'] is True
            storage.close()


class TestStorageRecord:
    """Test record conversion"""

    def test_round_trip(self):
        """Test a bank record converts to and from a storage dict"""
        now = datetime.now(timezone.utc)
        bank = Bank(id="0xbank_a", created_at=now, updated_at=now,
                    name="Bank A", registration_number="REG-001")

        restored = Bank.from_dict(bank.to_dict())

        assert restored == bank
        assert isinstance(restored.created_at, datetime)

    def test_base_record(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)
        assert record.to_dict()["created_at"] == now.isoformat()


class TestCreateStorage:
    """Test backend selection from database URLs"""

    def test_memory(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_memory(self):
        storage = create_storage("sqlite:///:memory:")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"

    def test_sqlite_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/registry.db")
            assert isinstance(storage, SQLiteStorage)
            assert storage.db_path == f"{temp_dir}/registry.db"
            storage.close()

    def test_unsupported(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/kyc")
