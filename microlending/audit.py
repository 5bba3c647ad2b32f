"""
Audit Trail Module

Hash-chained audit log of admin decisions and settings changes. Each record
carries the SHA-256 of its predecessor, so editing or removing one breaks
the chain for every record after it.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, encode_value


class AuditAction(Enum):
    """Audited actions"""
    LOAN_APPROVED = "LOAN_APPROVED"
    LOAN_REJECTED = "LOAN_REJECTED"
    LOAN_AUTO_APPROVED = "LOAN_AUTO_APPROVED"
    LOAN_SPECIAL_APPROVED = "LOAN_SPECIAL_APPROVED"
    LOAN_DISBURSED = "LOAN_DISBURSED"
    LOAN_DISBURSEMENT_RESET = "LOAN_DISBURSEMENT_RESET"
    LOAN_REFUND_PROCESSED = "LOAN_REFUND_PROCESSED"
    LOAN_SETTLED = "LOAN_SETTLED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"


@dataclass
class AuditRecord(StorageRecord):
    """
    Immutable audit record
    """
    actor_id: Optional[str]
    action: AuditAction
    resource: str       # loan, settings, user
    resource_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    details: Dict[str, Any] = field(default_factory=dict)

    enum_fields = {'action': AuditAction}

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash``"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'actor_id': self.actor_id,
            'action': self.action.value,
            'resource': self.resource,
            'resource_id': self.resource_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'details': encode_value(self.details)
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Append-only, hash-chained audit trail
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_log"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _last_record(self) -> Optional[Dict[str, Any]]:
        records = self.storage.load_all(self.table_name)
        if not records:
            return None
        return max(records, key=lambda r: r.get('sequence', 0))

    def record(
        self,
        action: AuditAction,
        resource: str,
        resource_id: str,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditRecord:
        """
        Append an audit record

        Args:
            action: What happened
            resource: Kind of resource acted on
            resource_id: ID of the resource
            actor_id: Admin (or system) responsible
            details: Old/new values and other context

        Returns:
            The stored AuditRecord
        """
        with self._lock:
            with self.storage.atomic():
                last = self._last_record()
                now = datetime.now(timezone.utc)
                audit_record = AuditRecord(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    actor_id=actor_id,
                    action=action,
                    resource=resource,
                    resource_id=resource_id,
                    sequence=(last['sequence'] + 1) if last else 1,
                    previous_hash=last['current_hash'] if last else "",
                    current_hash="",
                    details=encode_value(details or {})
                )
                audit_record.current_hash = audit_record.calculate_hash()
                self.storage.save(self.table_name, audit_record.id, audit_record.to_dict())
        return audit_record

    def all_records(self) -> List[AuditRecord]:
        records = [AuditRecord.from_dict(data) for data in self.storage.load_all(self.table_name)]
        records.sort(key=lambda r: r.sequence)
        return records

    def records_for(self, resource: str, resource_id: str) -> List[AuditRecord]:
        """Records about one resource, oldest first"""
        records = [
            AuditRecord.from_dict(data)
            for data in self.storage.find(self.table_name, {'resource': resource, 'resource_id': resource_id})
        ]
        records.sort(key=lambda r: r.sequence)
        return records

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain and report tampered records

        Returns:
            Dictionary with ``valid``, ``total_records``, ``hash_errors`` and ``chain_breaks``
        """
        result = {
            'valid': True,
            'total_records': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        records = self.all_records()
        result['total_records'] = len(records)

        previous_hash = ""
        for position, audit_record in enumerate(records):
            if not audit_record.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'record_id': audit_record.id, 'position': position})
            if audit_record.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'record_id': audit_record.id, 'position': position})
            previous_hash = audit_record.current_hash

        return result
