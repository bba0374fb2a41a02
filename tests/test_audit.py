"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection and integrity verification.
"""

from datetime import datetime, timezone, timedelta, date
from decimal import Decimal

from lamf_ledger.storage import InMemoryStorage
from lamf_ledger.audit import AuditTrail, AuditEvent, AuditEventType


NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        fields = dict(
            id="AUDIT001",
            created_at=NOW,
            updated_at=NOW,
            sequence=1,
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id="LN2401000001",
            previous_hash="",
            current_hash="",
            metadata={"principal": Decimal('50000.00')}
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Decimals, dates and enums become JSON-friendly values"""
        event = self.make_event(metadata={
            "amount": Decimal('4395.79'),
            "disbursed_on": date(2024, 1, 15),
            "event": AuditEventType.LOAN_CLOSED,
            "nested": {"covered": (1, 2)}
        })

        assert event.metadata["amount"] == "4395.79"
        assert event.metadata["disbursed_on"] == "2024-01-15"
        assert event.metadata["event"] == "loan_closed"
        assert event.metadata["nested"] == {"covered": [1, 2]}

    def test_hash_is_deterministic(self):
        event1 = self.make_event()
        event2 = self.make_event()
        assert event1.calculate_hash() == event2.calculate_hash()
        assert len(event1.calculate_hash()) == 64

    def test_hash_changes_with_content(self):
        event1 = self.make_event()
        event2 = self.make_event(metadata={"principal": Decimal('50000.01')})
        assert event1.calculate_hash() != event2.calculate_hash()

    def test_round_trip(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.event_type == AuditEventType.LOAN_DISBURSED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            event_type=AuditEventType.APPLICATION_CREATED,
            entity_type="application",
            entity_id="LA2401000001",
            metadata={"requested_amount": Decimal('50000')},
            user_id="OPS1"
        )

        assert event.sequence == 1
        assert event.previous_hash == ""  # First event has no previous hash
        assert len(event.current_hash) == 64
        assert event.user_id == "OPS1"
        assert self.audit_trail.count_events() == 1

    def test_events_are_chained(self):
        event1 = self.audit_trail.log_event(AuditEventType.COLLATERAL_PLEDGED, "collateral", "COL1")
        event2 = self.audit_trail.log_event(AuditEventType.APPLICATION_CREATED, "application", "LA1")
        event3 = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")

        assert event2.previous_hash == event1.current_hash
        assert event3.previous_hash == event2.current_hash
        assert [e.sequence for e in (event1, event2, event3)] == [1, 2, 3]

    def test_backdated_timestamp_keeps_chain_order(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1", timestamp=NOW)
        self.audit_trail.log_event(
            AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1",
            timestamp=NOW - timedelta(days=30)
        )
        assert self.audit_trail.verify_integrity()['valid']

    def test_get_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN2")
        self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1")

        events = self.audit_trail.get_events_for_entity("loan", "LN1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_DISBURSED, AuditEventType.LOAN_PAYMENT_MADE
        ]

    def test_get_events_by_type(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")
        self.audit_trail.log_event(AuditEventType.MARGIN_CALL_TRIGGERED, "loan", "LN1")

        events = self.audit_trail.get_events_by_type(AuditEventType.MARGIN_CALL_TRIGGERED)
        assert len(events) == 1
        assert events[0].entity_id == "LN1"

    def test_chain_continues_after_reload(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.LOAN_CLOSED, "loan", "LN1")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_head_record_follows_chain(self):
        self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")
        latest = self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1")

        head = self.storage.load("audit_head", "audit_events")
        assert head['sequence'] == 2
        assert head['current_hash'] == latest.current_hash

    def test_logging_does_not_scan_events(self, monkeypatch):
        first = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")

        def load_all(table):
            raise AssertionError(f"unexpected scan of {table}")

        monkeypatch.setattr(self.storage, "load_all", load_all)
        second = AuditTrail(self.storage).log_event(AuditEventType.LOAN_CLOSED, "loan", "LN1")
        assert second.previous_hash == first.current_hash

    def test_head_rolls_back_with_event(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")
        try:
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1")
                raise RuntimeError("payment save failed")
        except RuntimeError:
            pass

        retried = self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1")
        assert retried.sequence == 2
        assert retried.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()['valid']

    def test_trail_without_head_record(self):
        """Stores written before the head record existed fall back to a scan"""
        first = self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1")
        self.storage.delete("audit_head", "audit_events")

        second = AuditTrail(self.storage).log_event(AuditEventType.LOAN_CLOSED, "loan", "LN1")
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash


class TestIntegrity:
    """Test tamper detection"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.events = [
            self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN1",
                                       metadata={"principal": "50000.00"}),
            self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1",
                                       metadata={"amount": "4395.79"}),
            self.audit_trail.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "LN1",
                                       metadata={"amount": "4395.79"}),
        ]

    def test_empty_trail_is_valid(self):
        result = AuditTrail(InMemoryStorage()).verify_integrity()
        assert result['valid']
        assert result['total_events'] == 0

    def test_untouched_trail_is_valid(self):
        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_modified_metadata_detected(self):
        target = self.events[1]
        data = self.storage.load("audit_events", target.id)
        data['metadata']['amount'] = "43957.90"
        self.storage.save("audit_events", target.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == target.id
        assert result['hash_errors'][0]['position'] == 1

    def test_deleted_event_breaks_chain(self):
        self.storage.delete("audit_events", self.events[1].id)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['chain_breaks'][0]['event_id'] == self.events[2].id

    def test_rehashed_event_still_breaks_chain(self):
        """Recomputing a tampered event's own hash does not fix its successor"""
        target = self.events[0]
        data = self.storage.load("audit_events", target.id)
        data['metadata']['principal'] = "500000.00"
        event = AuditEvent.from_dict(data)
        event.current_hash = event.calculate_hash()
        self.storage.save("audit_events", target.id, event.to_dict())

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'] == []
        assert result['chain_breaks'][0]['event_id'] == self.events[1].id
