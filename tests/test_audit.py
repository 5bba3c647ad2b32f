"""
Test suite for the hash-chained audit trail
"""

from microlending.audit import AuditAction, AuditRecord, AuditTrail
from microlending.storage import InMemoryStorage


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_records_are_chained(self):
        first = self.audit.record(AuditAction.LOAN_APPROVED, "loan", "loan-1", actor_id="admin-1",
                                  details={"status": {"old": "pending", "new": "approved"}})
        second = self.audit.record(AuditAction.LOAN_DISBURSED, "loan", "loan-1", actor_id="admin-1")

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert first.verify_hash() and second.verify_hash()
        assert first.timestamp == first.created_at

    def test_integrity_of_untouched_chain(self):
        for action in (AuditAction.LOAN_APPROVED, AuditAction.LOAN_DISBURSED, AuditAction.LOAN_SETTLED):
            self.audit.record(action, "loan", "loan-1")

        report = self.audit.verify_integrity()
        assert report == {"valid": True, "total_records": 3, "hash_errors": [], "chain_breaks": []}

    def test_tampering_is_detected(self):
        record = self.audit.record(AuditAction.SETTINGS_UPDATED, "settings", "applicationFee",
                                   details={"old_value": "50", "new_value": "75.00"})
        self.audit.record(AuditAction.LOAN_APPROVED, "loan", "loan-1")

        data = self.storage.load("audit_log", record.id)
        data["details"]["new_value"] = "5.00"
        self.storage.save("audit_log", record.id, data)

        report = self.audit.verify_integrity()
        assert report["valid"] is False
        assert report["hash_errors"] == [{"record_id": record.id, "position": 0}]

    def test_deleted_record_breaks_chain(self):
        self.audit.record(AuditAction.LOAN_APPROVED, "loan", "loan-1")
        middle = self.audit.record(AuditAction.LOAN_DISBURSED, "loan", "loan-1")
        last = self.audit.record(AuditAction.LOAN_SETTLED, "loan", "loan-1")

        self.storage.delete("audit_log", middle.id)

        report = self.audit.verify_integrity()
        assert report["valid"] is False
        assert report["chain_breaks"] == [{"record_id": last.id, "position": 1}]

    def test_records_for_resource(self):
        self.audit.record(AuditAction.LOAN_APPROVED, "loan", "loan-1")
        self.audit.record(AuditAction.LOAN_REJECTED, "loan", "loan-2")
        self.audit.record(AuditAction.LOAN_DISBURSED, "loan", "loan-1")

        records = self.audit.records_for("loan", "loan-1")
        assert [r.action for r in records] == [AuditAction.LOAN_APPROVED, AuditAction.LOAN_DISBURSED]
        assert self.audit.count() == 3

    def test_round_trip(self):
        record = self.audit.record(AuditAction.LOAN_APPROVED, "loan", "loan-1", details={"n": 1})
        restored = AuditRecord.from_dict(self.storage.load("audit_log", record.id))
        assert restored.verify_hash()
        assert restored.details == {"n": 1}
