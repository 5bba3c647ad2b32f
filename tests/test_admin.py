"""
Test suite for the admin decision engine

Each action audits once and publishes its event; audit and event failures
never undo a committed transition.
"""

import pytest
from decimal import Decimal
from unittest.mock import patch

from microlending.audit import AuditAction
from microlending.errors import AutoApprovalCriteriaNotMet, ProviderError, StateConflict
from microlending.events import LoanEvent
from microlending.loans import DisbursementStatus, LoanStatus, RefundStatus
from microlending.notifications import NotificationType


class TestAdminDecisions:

    @pytest.fixture(autouse=True)
    def _events(self, system):
        self.events = []
        system.events.subscribe_all(self.events.append)

    def _event_types(self):
        return [e.event_type for e in self.events]

    def test_approve_audits_and_publishes(self, system, admin, paid_loan):
        transition = system.admin.approve(paid_loan.id, admin.id)

        records = system.audit_trail.records_for("loan", paid_loan.id)
        assert [r.action for r in records] == [AuditAction.LOAN_APPROVED]
        assert records[0].actor_id == admin.id
        assert records[0].details["loan"]["status"] == {"old": "pending", "new": "approved"}
        assert records[0].details["user"]["credit_score"] == {"old": 650, "new": 700}

        assert self._event_types()[-1] == LoanEvent.APPROVED
        assert self.events[-1].data["approved_by"] == admin.id
        assert transition.loan.status == LoanStatus.APPROVED

    def test_approval_notifies_borrower(self, system, borrower, admin, paid_loan):
        system.admin.approve(paid_loan.id, admin.id)

        notifications = system.notifications.list_for_user(borrower.id)
        assert [n.notification_type for n in notifications] == [NotificationType.LOAN_APPROVED]
        # Admins heard about the application when the fee was paid
        assert len(system.notifications.list_for_user(admin.id)) == 1

    def test_failed_decision_is_not_audited(self, system, admin, unpaid_loan):
        with pytest.raises(StateConflict):
            system.admin.approve(unpaid_loan.id, admin.id)
        assert system.audit_trail.count() == 0
        assert LoanEvent.APPROVED not in self._event_types()

    def test_auto_approve(self, system, admin, paid_loan):
        system.admin.auto_approve(paid_loan.id, admin.id)

        record = system.audit_trail.records_for("loan", paid_loan.id)[0]
        assert record.action == AuditAction.LOAN_AUTO_APPROVED
        assert record.details["criteria"]["good_credit"] is True
        assert LoanEvent.AUTO_APPROVED in self._event_types()

    def test_auto_approve_reports_criteria(self, system, unpaid_loan):
        with pytest.raises(AutoApprovalCriteriaNotMet) as exc_info:
            system.admin.auto_approve(unpaid_loan.id)
        assert exc_info.value.details["criteria"]["fee_paid"] is False

    def test_special_approve(self, system, admin, unpaid_loan):
        system.admin.special_approve(unpaid_loan.id, admin.id)

        assert system.audit_trail.records_for("loan", unpaid_loan.id)[0].action == AuditAction.LOAN_SPECIAL_APPROVED
        assert LoanEvent.SPECIALLY_APPROVED in self._event_types()

    def test_reject_publishes_reason_and_refund(self, system, admin, paid_loan):
        system.admin.reject(paid_loan.id, "insufficient documentation", admin.id)

        record = system.audit_trail.records_for("loan", paid_loan.id)[0]
        assert record.action == AuditAction.LOAN_REJECTED
        assert record.details["reason"] == "insufficient documentation"

        rejected = [e for e in self.events if e.event_type == LoanEvent.REJECTED][0]
        assert rejected.data["reason"] == "insufficient documentation"
        assert rejected.data["refund_status"] == "processed"
        assert LoanEvent.REFUND_PROCESSED in self._event_types()

    def test_disbursement_flow(self, system, admin, paid_loan):
        system.admin.approve(paid_loan.id, admin.id)
        transition = system.admin.initiate_disbursement(paid_loan.id, admin.id)

        disbursed = [e for e in self.events if e.event_type == LoanEvent.DISBURSED]
        assert len(disbursed) == 1
        assert disbursed[0].data["transaction_id"] == transition.loan.disbursement_transaction_id

        completed = system.admin.complete_disbursement(paid_loan.id, True)
        assert completed.loan.disbursement_status == DisbursementStatus.COMPLETED

        settled = system.admin.settle_loan(paid_loan.id, admin.id)
        assert settled.loan.status == LoanStatus.PAID
        actions = [r.action for r in system.audit_trail.records_for("loan", paid_loan.id)]
        assert actions == [AuditAction.LOAN_APPROVED, AuditAction.LOAN_DISBURSED, AuditAction.LOAN_SETTLED]

    def test_failed_disbursement_is_audited_then_retried(self, system, provider, admin, paid_loan):
        system.admin.approve(paid_loan.id, admin.id)
        provider.disburse_success = False

        with pytest.raises(ProviderError):
            system.admin.initiate_disbursement(paid_loan.id, admin.id)

        failure = system.audit_trail.records_for("loan", paid_loan.id)[-1]
        assert failure.details["disbursement_status"] == "failed"
        assert LoanEvent.DISBURSED not in self._event_types()

        provider.disburse_success = True
        transition = system.admin.retry_disbursement(paid_loan.id, admin.id)
        assert transition.loan.disbursement_status == DisbursementStatus.PROCESSING
        actions = [r.action for r in system.audit_trail.records_for("loan", paid_loan.id)]
        assert actions[-2:] == [AuditAction.LOAN_DISBURSEMENT_RESET, AuditAction.LOAN_DISBURSED]

    def test_process_refund(self, system, provider, admin, paid_loan):
        provider.refund_success = False
        system.admin.reject(paid_loan.id, "Policy", admin.id)

        provider.refund_success = True
        transition = system.admin.process_refund(paid_loan.id, admin.id)

        assert transition.loan.rejection_refund_status == RefundStatus.PROCESSED
        assert system.audit_trail.records_for("loan", paid_loan.id)[-1].action == AuditAction.LOAN_REFUND_PROCESSED

    def test_update_setting(self, system, borrower, admin):
        old_value, new_value = system.admin.update_setting("applicationFee", "80", admin.id)

        assert (old_value, new_value) == ("50", "80.00")
        record = system.audit_trail.records_for("settings", "applicationFee")[0]
        assert record.details == {"key": "applicationFee", "old_value": "50", "new_value": "80.00"}

        loan = system.loans.create_loan(borrower.id, Decimal("5000"), "254712345678")
        assert loan.fee_amount == Decimal("80.00")

    def test_audit_failure_is_swallowed(self, system, borrower, admin, paid_loan):
        with patch.object(system.audit_trail, "record", side_effect=RuntimeError("disk full")):
            transition = system.admin.approve(paid_loan.id, admin.id)

        assert transition.loan.status == LoanStatus.APPROVED
        assert system.users.get_user(borrower.id).total_loans_approved == 1

    def test_event_failure_is_swallowed(self, system, admin, paid_loan):
        with patch.object(system.events, "emit", side_effect=RuntimeError("queue full")):
            transition = system.admin.approve(paid_loan.id, admin.id)

        assert transition.loan.status == LoanStatus.APPROVED
        assert system.audit_trail.count() == 1

    def test_audit_chain_stays_valid(self, system, admin, paid_loan):
        system.admin.approve(paid_loan.id, admin.id)
        system.admin.initiate_disbursement(paid_loan.id, admin.id)
        system.admin.update_setting("minLoanAmount", "2000", admin.id)

        assert system.audit_trail.verify_integrity()["valid"] is True
