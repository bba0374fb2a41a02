"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change of an application, loan or collateral is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Application events
    APPLICATION_CREATED = "application_created"
    APPLICATION_STATUS_CHANGED = "application_status_changed"
    APPLICATION_COLLATERAL_ADDED = "application_collateral_added"

    # Loan events
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_PREPAYMENT_MADE = "loan_prepayment_made"
    LOAN_CLOSED = "loan_closed"
    LOAN_FORECLOSED = "loan_foreclosed"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_SETTLED = "loan_settled"
    LOAN_WRITTEN_OFF = "loan_written_off"

    # Collateral events
    COLLATERAL_PLEDGED = "collateral_pledged"
    COLLATERAL_REVALUED = "collateral_revalued"
    LIEN_MARKED = "lien_marked"
    LIEN_INVOKED = "lien_invoked"
    COLLATERAL_RELEASED = "collateral_released"

    # Margin events
    MARGIN_CALL_TRIGGERED = "margin_call_triggered"
    MARGIN_CALL_RESOLVED = "margin_call_resolved"

    # System events
    OVERDUE_SWEEP_COMPLETED = "overdue_sweep_completed"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # application, loan, collateral
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, (datetime, date)):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, (list, tuple)):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    Events are chained in sequence order, not timestamp order, so backdated
    timestamps (batch replays, injected clocks) never break the chain. The
    chain head (last sequence and hash) is kept in a single ``audit_head``
    record written in the same transaction as each event.
    """

    HEAD_TABLE = "audit_head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: str = ""
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        head = self.storage.load(self.HEAD_TABLE, self.table_name)
        if head:
            self._last_hash = head['current_hash']
            self._last_sequence = head['sequence']
            return

        # Trails written before the head record existed
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash', "")
            self._last_sequence = latest.get('sequence', 0)
        else:
            self._last_hash = ""
            self._last_sequence = 0

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action
            timestamp: Business time of the event (defaults to now)

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = timestamp or datetime.now(timezone.utc)

            # Re-load the chain head; a rolled-back transaction may have dropped events
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._last_sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            with self.storage.atomic():
                self.storage.save(self.table_name, event.id, event.to_dict())
                self.storage.save(self.HEAD_TABLE, self.table_name, {
                    'id': self.table_name,
                    'sequence': event.sequence,
                    'current_hash': event.current_hash,
                })

            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All audit events of one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        all_events_data = self.storage.load_all(self.table_name)
        if not all_events_data:
            return result

        events = [AuditEvent.from_dict(data) for data in all_events_data]
        events.sort(key=lambda x: x.sequence)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return len(self.storage.load_all(self.table_name))
