"""
Audit Trail Module

Hash-chained append-only audit log with SHA-256 for tamper detection.
Every ledger state change is logged here inside the same atomic unit as
the change itself, so a rolled-back operation leaves no audit event.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Audited ledger operations"""
    CREATE_LOAN = "CREATE_LOAN"
    CANCEL_LOAN = "CANCEL_LOAN"
    MARK_OVERDUE = "MARK_OVERDUE"
    REGISTER_PAYMENT = "REGISTER_PAYMENT"
    REVERSE_PAYMENT = "REVERSE_PAYMENT"
    PROCESS_OVERDUE = "PROCESS_OVERDUE"


class AuditEntity(Enum):
    """Entity types referenced by audit events"""
    LOAN = "LOAN"
    PAYMENT = "PAYMENT"


def _serialize(value):
    """Convert metadata values to JSON-serializable format"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int             # Position in the chain, 1-based
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    previous_hash: str        # Hash of previous audit event for chaining
    current_hash: str         # SHA-256 hash of this event
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _serialize(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = self._base_dict()
        result.update({
            'sequence': self.sequence,
            'action': self.action.value,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sequence=data['sequence'],
            action=AuditAction(data['action']),
            entity_type=AuditEntity(data['entity_type']),
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        if not self.storage.exists(self.head_table, self.HEAD_ID):
            self.storage.save(self.head_table, self.HEAD_ID, self._head_from_events())

    def _head_from_events(self) -> Dict[str, Any]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'current_hash': ""}
        last = max(events, key=lambda e: e['sequence'])
        return {'sequence': last['sequence'], 'current_hash': last['current_hash']}

    def _chain_head(self) -> Dict[str, Any]:
        """
        Sequence and hash of the last event, read with the head row locked

        Appenders in other units or processes wait on the lock until this
        unit ends, so two events can never claim the same sequence.
        """
        head = self.storage.load_for_update(self.head_table, self.HEAD_ID)
        return head or self._head_from_events()

    def log_event(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            action: Audited operation
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Operation details (amounts, status changes, reason)
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'sequence': event.sequence, 'current_hash': event.current_hash
            })
            return event

    def _events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: AuditEntity,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return (most recent)

        Returns:
            List of AuditEvent objects in chain order
        """
        events = [
            e for e in self._events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_action(self, action: AuditAction) -> List[AuditEvent]:
        """Get audit events of one action type in chain order"""
        return [e for e in self._events() if e.action == action]

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

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
            'chain_breaks': [],
        }

        events = self._events()
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
