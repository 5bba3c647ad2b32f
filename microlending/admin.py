"""
Admin Decision Engine

Entry points for admin actions. Each one calls the loan state machine, then
writes one audit record and publishes the matching event. Audit and event
failures are logged and swallowed: once the transition has committed, the
action has succeeded.
"""

from typing import Any, Dict, Optional, Tuple

from .audit import AuditAction, AuditTrail
from .errors import ProviderError
from .events import EventDispatcher, LoanEvent
from .loans import LoanStateMachine, Transition
from .logging_config import get_logger
from .settings import SystemSettings


class AdminDecisionEngine:
    """Thin orchestration over the state machine; holds no state of its own"""

    def __init__(self, loans: LoanStateMachine, audit: Optional[AuditTrail],
                 settings: SystemSettings, events: Optional[EventDispatcher] = None):
        self.loans = loans
        self.audit = audit
        self.settings = settings
        self.events = events
        self.logger = get_logger("microlending.admin")

    def _audit(self, action: AuditAction, resource: str, resource_id: str,
               actor_id: Optional[str], details: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(action, resource, resource_id, actor_id=actor_id, details=details)
        except Exception as e:
            self.logger.error(f"Audit write failed for {action.value} on {resource}:{resource_id}: {e}")

    def _publish(self, event_type: LoanEvent, transition: Transition, **data) -> None:
        if self.events is None:
            return
        loan = transition.loan
        try:
            self.events.emit(event_type, loan.user_id, loan.id, amount=str(loan.amount), **data)
        except Exception as e:
            self.logger.error(f"Failed to publish {event_type.value} for loan {loan.id}: {e}")

    def approve(self, loan_id: str, admin_id: str) -> Transition:
        transition = self.loans.approve(loan_id, admin_id)
        self._audit(AuditAction.LOAN_APPROVED, "loan", loan_id, admin_id, transition.details)
        self._publish(LoanEvent.APPROVED, transition, approved_by=admin_id)
        return transition

    def auto_approve(self, loan_id: str, admin_id: Optional[str] = None) -> Transition:
        transition = self.loans.auto_approve(loan_id)
        self._audit(AuditAction.LOAN_AUTO_APPROVED, "loan", loan_id, admin_id, transition.details)
        self._publish(LoanEvent.AUTO_APPROVED, transition)
        return transition

    def special_approve(self, loan_id: str, admin_id: str) -> Transition:
        transition = self.loans.special_approve(loan_id, admin_id)
        self._audit(AuditAction.LOAN_SPECIAL_APPROVED, "loan", loan_id, admin_id, transition.details)
        self._publish(LoanEvent.SPECIALLY_APPROVED, transition, approved_by=admin_id)
        return transition

    def reject(self, loan_id: str, reason: str, admin_id: str) -> Transition:
        transition = self.loans.reject(loan_id, reason, admin_id)
        loan = transition.loan
        self._audit(AuditAction.LOAN_REJECTED, "loan", loan_id, admin_id,
                    dict(transition.details, reason=loan.rejection_reason))
        refund_status = loan.rejection_refund_status.value if loan.rejection_refund_status else None
        self._publish(LoanEvent.REJECTED, transition, reason=loan.rejection_reason, refund_status=refund_status)
        return transition

    def initiate_disbursement(self, loan_id: str, admin_id: str) -> Transition:
        """
        Start disbursement; a provider failure is audited before it is raised
        """
        try:
            transition = self.loans.initiate_disbursement(loan_id)
        except ProviderError as e:
            self._audit(AuditAction.LOAN_DISBURSED, "loan", loan_id, admin_id,
                        {"disbursement_status": "failed", "error": e.message})
            raise
        self._audit(AuditAction.LOAN_DISBURSED, "loan", loan_id, admin_id, transition.details)
        self._publish(LoanEvent.DISBURSED, transition,
                      transaction_id=transition.loan.disbursement_transaction_id)
        return transition

    def complete_disbursement(self, loan_id: str, success: bool) -> Transition:
        return self.loans.complete_disbursement(loan_id, success)

    def retry_disbursement(self, loan_id: str, admin_id: str) -> Transition:
        """Reset a failed disbursement and initiate it again"""
        transition = self.loans.reset_failed_disbursement(loan_id)
        self._audit(AuditAction.LOAN_DISBURSEMENT_RESET, "loan", loan_id, admin_id, transition.details)
        return self.initiate_disbursement(loan_id, admin_id)

    def process_refund(self, loan_id: str, admin_id: str) -> Transition:
        """Repeat a failed fee refund"""
        try:
            transition = self.loans.retry_refund(loan_id)
        except ProviderError as e:
            self._audit(AuditAction.LOAN_REFUND_PROCESSED, "loan", loan_id, admin_id,
                        {"rejection_refund_status": "failed", "error": e.message})
            raise
        self._audit(AuditAction.LOAN_REFUND_PROCESSED, "loan", loan_id, admin_id, transition.details)
        return transition

    def settle_loan(self, loan_id: str, admin_id: str, defaulted: bool = False) -> Transition:
        transition = self.loans.settle(loan_id, defaulted=defaulted)
        self._audit(AuditAction.LOAN_SETTLED, "loan", loan_id, admin_id, transition.details)
        return transition

    def update_setting(self, key: str, value: Any, admin_id: str) -> Tuple[Any, Any]:
        old_value, new_value = self.settings.update(key, value, actor_id=admin_id)
        self._audit(AuditAction.SETTINGS_UPDATED, "settings", key, admin_id,
                    {"key": key, "old_value": old_value, "new_value": new_value})
        return old_value, new_value
