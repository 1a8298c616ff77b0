"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification of registry state changes.
"""

import pytest
from datetime import datetime, timezone

from kyc_registry.storage import InMemoryStorage
from kyc_registry.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime.now(timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.BANK_ADDED,
            entity_type="bank",
            entity_id="0xbank_a",
            previous_hash="",
            current_hash="",
            user_id="0xadmin",
            sequence=1,
            metadata={"name": "Bank A"}
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Test enums, datetimes and sets become JSON-friendly values"""
        now = datetime.now(timezone.utc)
        event = self.make_event(metadata={
            "when": now,
            "type": AuditEventType.CUSTOMER_UPVOTED,
            "voters": {"0xbank_b"},
            "nested": {"when": now}
        })

        assert event.metadata["when"] == now.isoformat()
        assert event.metadata["type"] == "customer_upvoted"
        assert event.metadata["voters"] == ["0xbank_b"]
        assert event.metadata["nested"]["when"] == now.isoformat()

    def test_hash_is_deterministic(self):
        """Test hash calculation"""
        event = self.make_event()

        first = event.calculate_hash()
        assert len(first) == 64
        assert first == event.calculate_hash()

    def test_hash_verification(self):
        """Test tampering with an event breaks its hash"""
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["name"] = "Forged Bank"
        assert not event.verify_hash()

    def test_dict_round_trip(self):
        """Test conversion to and from storage dicts keeps the hash valid"""
        event = self.make_event()
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.event_type == AuditEventType.BANK_ADDED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and queries"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        """Test each event links to its predecessor"""
        first = self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a", user_id="0xadmin")
        second = self.audit_trail.log_event(AuditEventType.BANK_REPORTED, "bank", "0xbank_a")

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2

    def test_get_events_for_entity(self):
        """Test entity queries return events in chain order"""
        self.audit_trail.log_event(AuditEventType.CUSTOMER_ADDED, "customer", "alice")
        self.audit_trail.log_event(AuditEventType.CUSTOMER_ADDED, "customer", "bob")
        self.audit_trail.log_event(AuditEventType.CUSTOMER_UPVOTED, "customer", "alice")

        events = self.audit_trail.get_events_for_entity("customer", "alice")
        assert [e.event_type for e in events] == [
            AuditEventType.CUSTOMER_ADDED, AuditEventType.CUSTOMER_UPVOTED
        ]

        latest = self.audit_trail.get_events_for_entity("customer", "alice", limit=1)
        assert latest[0].event_type == AuditEventType.CUSTOMER_UPVOTED

    def test_get_events_by_type(self):
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a")
        self.audit_trail.log_event(AuditEventType.BANK_REMOVED, "bank", "0xbank_a")
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_b")

        added = self.audit_trail.get_events_by_type(AuditEventType.BANK_ADDED)
        assert [e.entity_id for e in added] == ["0xbank_a", "0xbank_b"]

    def test_chain_survives_reload(self):
        """Test a new trail on the same storage continues the chain"""
        first = self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a")

        reloaded = AuditTrail(self.storage)
        second = reloaded.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_b")

        assert second.previous_hash == first.current_hash
        assert reloaded.verify_integrity()['valid'] is True

    def test_chain_continues_after_rollback(self):
        """Test events rolled back with a transaction do not break the chain"""
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.BANK_REMOVED, "bank", "0xbank_a")
                raise RuntimeError("abort")

        self.audit_trail.log_event(AuditEventType.BANK_REPORTED, "bank", "0xbank_a")

        result = self.audit_trail.verify_integrity()
        assert result['valid'] is True
        assert result['total_events'] == 2

    def test_verify_integrity_detects_tampering(self):
        """Test a modified stored event is reported"""
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a", metadata={"name": "Bank A"})
        event = self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_b", metadata={"name": "Bank B"})

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["name"] = "Forged"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert result['valid'] is False
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_verify_integrity_detects_deleted_event(self):
        """Test removing an event breaks the chain"""
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_a")
        middle = self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_b")
        self.audit_trail.log_event(AuditEventType.BANK_ADDED, "bank", "0xbank_c")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert result['valid'] is False
        assert len(result['chain_breaks']) == 1

    def test_empty_trail_is_valid(self):
        result = self.audit_trail.verify_integrity()
        assert result == {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}
