"""
Loan State Machine Module

Owns the loan lifecycle: application with fee charge, fee reconciliation
from provider callbacks, the approval paths, rejection with refund,
disbursement and settlement.

Every transition is one ``storage.atomic()`` unit that re-reads the loan,
checks its preconditions and writes the loan (and, where the transition
touches it, the borrower) with a versioned compare-and-swap. Payment
provider calls never run inside that unit: the guard status
(``processing``, refund ``pending``) is committed first so a concurrent
duplicate fails with ``StateConflict``, then a second unit records the
provider's answer.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .errors import (
    AutoApprovalCriteriaNotMet, LendingError, NotFound, PaymentDeclined,
    PermissionDenied, ProviderError, StateConflict, ValidationError
)
from .eligibility import evaluate_eligibility, EligibilityDecision
from .events import EventDispatcher, LoanEvent
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .payments import ChargeResult, PaymentGateway, PaymentMethod, RefundResult
from .settings import LoanSettings, SystemSettings
from .storage import StorageInterface, StorageRecord
from .transactions import PaymentTransaction, TransactionKind, TransactionLedger, TransactionStatus
from .users import Borrower, UserManager


APPROVAL_CREDIT_DELTA = 50
AUTO_APPROVAL_CREDIT_DELTA = 25
SPECIAL_APPROVAL_CREDIT_DELTA = 100
AUTO_APPROVAL_MIN_CREDIT_SCORE = 600


class LoanStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    DEFAULTED = "defaulted"


class DisbursementStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


ACTIVE_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED)


@dataclass
class Loan(StorageRecord):
    """
    Loan application and its lifecycle state
    """
    user_id: str
    amount: Decimal
    fee_amount: Decimal
    phone_number: str
    payment_method: PaymentMethod
    description: Optional[str] = None
    fee_paid: bool = False
    status: LoanStatus = LoanStatus.PENDING

    is_auto_approved: bool = False
    is_special_approved: bool = False
    disbursement_status: DisbursementStatus = DisbursementStatus.PENDING
    rejection_refund_status: Optional[RefundStatus] = None

    approved_by: Optional[str] = None
    mpesa_transaction_id: Optional[str] = None  # fee charge reference
    fee_receipt_number: Optional[str] = None
    disbursement_transaction_id: Optional[str] = None
    rejection_refund_transaction_id: Optional[str] = None
    rejection_reason: Optional[str] = None

    approval_date: Optional[datetime] = None
    auto_approved_at: Optional[datetime] = None
    special_approved_at: Optional[datetime] = None
    refund_initiated_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    version: int = 0

    decimal_fields = ('amount', 'fee_amount')
    datetime_fields = (
        'approval_date', 'auto_approved_at', 'special_approved_at',
        'refund_initiated_at', 'disbursed_at', 'settled_at'
    )
    enum_fields = {
        'payment_method': PaymentMethod,
        'status': LoanStatus,
        'disbursement_status': DisbursementStatus,
        'rejection_refund_status': RefundStatus,
    }

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass
class Transition:
    """A committed transition and the old/new values it changed"""
    loan: Loan
    details: Dict[str, Any] = field(default_factory=dict)


_UNAUDITED_FIELDS = ('updated_at', 'version')


def _changes(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {
        key: {"old": before.get(key), "new": value}
        for key, value in after.items()
        if key not in _UNAUDITED_FIELDS and before.get(key) != value
    }


def _coerce_method(payment_method: Union[str, PaymentMethod]) -> PaymentMethod:
    if isinstance(payment_method, PaymentMethod):
        return payment_method
    try:
        return PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {payment_method}")


class LoanStateMachine:
    """
    Loan lifecycle operations
    """

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        settings: SystemSettings,
        ledger: TransactionLedger,
        gateway: PaymentGateway,
        events: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.users = users
        self.settings = settings
        self.ledger = ledger
        self.gateway = gateway
        self.events = events
        self.table_name = "loans"
        self.logger = get_logger("microlending.loans")

    # Persistence helpers

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        return Loan.from_dict(data)

    def _save_loan(self, loan: Loan, new: bool = False) -> None:
        """Compare-and-swap on the loan's version"""
        expected = None if new else loan.version
        loan.version = 0 if new else loan.version + 1
        loan.updated_at = datetime.now(timezone.utc)
        if not self.storage.compare_and_swap(self.table_name, loan.id, expected, loan.to_dict()):
            raise StateConflict(f"Loan {loan.id} was modified concurrently")

    def _discard_loan(self, loan_id: str) -> None:
        """Delete an unpaid application and give back the borrower's applied count"""
        with self.storage.atomic():
            data = self.storage.load(self.table_name, loan_id)
            if data is None:
                return
            loan = self._loan_from_dict(data)
            self.storage.delete(self.table_name, loan_id)
            user = self.users.find_user(loan.user_id)
            if user is not None and user.total_loans_applied > 0:
                user.total_loans_applied -= 1
                self.users.save_user(user)
        log_action(
            self.logger, "info", f"Discarded unpaid loan {loan_id}",
            user_id=loan.user_id, action="discard_loan", resource=f"loan:{loan_id}"
        )

    def _emit(self, event_type: LoanEvent, loan: Loan, **data) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, loan.user_id, loan.id, amount=str(loan.amount), **data)
        except Exception as e:
            self.logger.error(f"Failed to publish {event_type.value} for loan {loan.id}: {e}")

    def _active_loans(self, user_id: str) -> List[Loan]:
        return [
            loan for loan in self.list_user_loans(user_id)
            if loan.is_active
        ]

    def _other_active_loans(self, loan: Loan) -> List[Loan]:
        return [other for other in self._active_loans(loan.user_id) if other.id != loan.id]

    def _require_pending(self, loan: Loan) -> None:
        if loan.status != LoanStatus.PENDING:
            raise StateConflict(
                f"Loan is not in pending status (status: {loan.status.value})",
                details={"loan_id": loan.id, "status": loan.status.value}
            )

    def _require_single_active(self, loan: Loan) -> None:
        if self._other_active_loans(loan):
            raise StateConflict(
                "User already has another pending or approved loan",
                details={"loan_id": loan.id, "user_id": loan.user_id}
            )

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            raise NotFound(f"Loan {loan_id} not found")
        return self._loan_from_dict(data)

    def find_loan_by_fee_reference(self, provider_reference: str) -> Optional[Loan]:
        """Locate a loan by any fee charge reference it has used, current or superseded"""
        txn = self.ledger.find_by_provider_reference(provider_reference, TransactionKind.FEE)
        if txn is not None and txn.loan_id:
            data = self.storage.load(self.table_name, txn.loan_id)
            return self._loan_from_dict(data) if data else None
        matches = self.storage.find(self.table_name, {"mpesa_transaction_id": provider_reference})
        return self._loan_from_dict(matches[0]) if matches else None

    def list_user_loans(self, user_id: str) -> List[Loan]:
        """The borrower's loans, newest first"""
        loans = [self._loan_from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def count_active_loans(self, user_id: str) -> int:
        return len(self._active_loans(user_id))

    def list_loans(self, status: Optional[LoanStatus] = None, page: int = 1,
                   limit: int = 20) -> Tuple[List[Loan], int]:
        """
        Paginated loans, newest first

        Returns:
            (loans on the page, total matching)
        """
        filters = {"status": status.value} if status else {}
        loans = [self._loan_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        start = max(page - 1, 0) * limit
        return loans[start:start + limit], len(loans)

    def loan_queue(self, limit: int = 50) -> List[Loan]:
        """Pending loans in arrival order"""
        pending = [
            self._loan_from_dict(d)
            for d in self.storage.find(self.table_name, {"status": LoanStatus.PENDING.value})
        ]
        pending.sort(key=lambda loan: loan.created_at)
        return pending[:limit]

    def stats(self) -> Dict[str, Any]:
        """Loan counts per status and the principal disbursed so far"""
        loans = [self._loan_from_dict(d) for d in self.storage.load_all(self.table_name)]
        counts = {status.value: 0 for status in LoanStatus}
        disbursed = ZERO
        for loan in loans:
            counts[loan.status.value] += 1
            if loan.disbursement_status == DisbursementStatus.COMPLETED:
                disbursed += loan.amount
        return {
            "total_loans": len(loans),
            "by_status": counts,
            "awaiting_fee": sum(1 for loan in loans if loan.status == LoanStatus.PENDING and not loan.fee_paid),
            "total_disbursed": str(disbursed),
        }

    def check_eligibility(self, user_id: str) -> EligibilityDecision:
        """Read-only eligibility snapshot for the borrower"""
        user = self.users.get_user(user_id)
        return evaluate_eligibility(user, self.count_active_loans(user_id), self.settings.resolve())

    # Application and fee reconciliation

    def create_loan(
        self,
        user_id: str,
        amount: Any,
        phone_number: str,
        description: Optional[str] = None,
        payment_method: Union[str, PaymentMethod] = PaymentMethod.MOBILE_MONEY_PUSH
    ) -> Loan:
        """
        Submit a loan application and charge the processing fee

        The loan is persisted ``pending``/unpaid, then the fee charge is
        initiated. A synchronous method settles the fee immediately; an
        asynchronous one leaves the loan unpaid until
        ``resolve_fee_callback``. If the charge cannot be initiated, or a
        synchronous charge is declined, the loan is deleted again and the
        provider error is raised with ``details['loan_id']``.

        Raises:
            ValidationError: ineligible borrower, amount out of range, bad input
            NotFound: unknown user
            ProviderError: charge failed (``PaymentDeclined``, ``ProviderTimeout``)
        """
        settings = self.settings.resolve()
        method = _coerce_method(payment_method)
        self.gateway.provider_for(method)
        try:
            amount = to_amount(amount)
        except ValueError as e:
            raise ValidationError(str(e))
        if not phone_number or not str(phone_number).strip():
            raise ValidationError("Phone number is required")

        with self.storage.atomic():
            user = self.users.get_user(user_id)
            if not user.is_active:
                raise PermissionDenied("Account is deactivated")
            self._check_application(user, amount, settings)

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                amount=amount,
                fee_amount=settings.fee_for(amount),
                phone_number=str(phone_number).strip(),
                payment_method=method,
                description=description
            )
            self._save_loan(loan, new=True)
            user.total_loans_applied += 1
            self.users.save_user(user)

        log_action(
            self.logger, "info", f"Loan application created: {loan.amount} (fee {loan.fee_amount})",
            user_id=user_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"payment_method": method.value}
        )

        try:
            charge = self.gateway.charge(method, loan.phone_number, loan.fee_amount, loan.id)
        except LendingError as e:
            self._discard_loan(loan.id)
            e.details.setdefault("loan_id", loan.id)
            raise

        loan = self._record_fee_charge(loan.id, method, charge, discard_on_decline=True)
        return loan

    def _check_application(self, user: Borrower, amount: Decimal, settings: LoanSettings) -> None:
        decision = evaluate_eligibility(user, self.count_active_loans(user.id), settings)
        if not decision.eligible:
            raise ValidationError(decision.reason, details=decision.to_dict())
        if amount < settings.min_loan_amount:
            raise ValidationError(f"Minimum loan amount is {settings.min_loan_amount}")
        if amount > settings.max_loan_amount:
            raise ValidationError(f"Maximum loan amount is {settings.max_loan_amount}")
        if amount > decision.max_amount:
            raise ValidationError(
                f"Loan amount exceeds your maximum of {decision.max_amount}",
                details=decision.to_dict()
            )

    def _record_fee_charge(self, loan_id: str, method: PaymentMethod, charge: ChargeResult,
                           discard_on_decline: bool) -> Loan:
        """Store the charge reference and, for synchronous methods, its outcome"""
        declined = charge.synchronous and not charge.success
        if charge.synchronous:
            status = TransactionStatus.SUCCESS if charge.success else TransactionStatus.FAILED
        else:
            status = TransactionStatus.PENDING

        submitted = False
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            self.ledger.record_attempt(
                user_id=loan.user_id,
                kind=TransactionKind.FEE,
                amount=loan.fee_amount,
                payment_method=method.value,
                account_reference=loan.phone_number,
                loan_id=loan.id,
                provider_reference=charge.transaction_id,
                status=status,
                reason="declined" if declined else None,
                provider_response=charge.raw
            )
            if not declined:
                loan.mpesa_transaction_id = charge.transaction_id
                loan.payment_method = method
                if charge.synchronous and loan.status == LoanStatus.PENDING and not loan.fee_paid:
                    loan.fee_paid = True
                    submitted = True
                self._save_loan(loan)

        if declined:
            if discard_on_decline:
                self._discard_loan(loan_id)
            raise PaymentDeclined("Payment was declined", details={"loan_id": loan_id})

        if submitted:
            log_action(
                self.logger, "info", "Processing fee paid",
                user_id=loan.user_id, action="fee_paid", resource=f"loan:{loan.id}"
            )
            self._emit(LoanEvent.APPLICATION_SUBMITTED, loan, fee_amount=str(loan.fee_amount))
        return loan

    def pay_fee(self, loan_id: str, user_id: str,
                payment_method: Optional[Union[str, PaymentMethod]] = None) -> Loan:
        """
        Re-initiate the fee charge for the borrower's own unpaid application

        Unlike ``create_loan``, a failed re-charge leaves the loan in place.
        """
        loan = self.get_loan(loan_id)
        if loan.user_id != user_id:
            raise PermissionDenied("Access denied")
        self._require_pending(loan)
        if loan.fee_paid:
            raise StateConflict("Fee already paid", details={"loan_id": loan_id})
        method = _coerce_method(payment_method) if payment_method else loan.payment_method
        self.gateway.provider_for(method)

        charge = self.gateway.charge(method, loan.phone_number, loan.fee_amount, loan.id)
        return self._record_fee_charge(loan.id, method, charge, discard_on_decline=False)

    def resolve_fee_callback(
        self,
        provider_reference: str,
        success: bool,
        amount: Optional[Any] = None,
        receipt_number: Optional[str] = None
    ) -> Optional[Loan]:
        """
        Apply an asynchronous fee result

        Safe under redelivery and reordering: an unknown reference or an
        already-resolved charge is a no-op. A short payment leaves the fee
        unpaid.

        ``pay_fee`` replaces the loan's charge reference, so a callback may
        name a superseded charge. Only a failure on the current reference
        discards a pending, unpaid loan; a failure on a superseded one just
        closes its ledger row. The first successful charge pays the fee. A
        later success on another reference is a duplicate charge and is
        refunded.

        The reference is only stored once ``gateway.charge`` has returned.
        A callback that overtakes that write is treated as unknown and
        dropped, leaving the loan unpaid until the provider redelivers or
        the borrower retries with ``pay_fee``.

        Returns:
            The loan after the callback, or None if unknown or discarded
        """
        submitted = False
        discard = False
        duplicate = None
        with self.storage.atomic():
            loan = self.find_loan_by_fee_reference(provider_reference)
            if loan is None:
                self.logger.info(f"Fee callback for unknown reference {provider_reference}, ignoring")
                return None

            txn = self.ledger.find_by_provider_reference(provider_reference, TransactionKind.FEE)
            if txn is not None and txn.is_resolved:
                self.logger.info(f"Fee callback {provider_reference} already resolved as {txn.status.value}")
                return loan
            current = provider_reference == loan.mpesa_transaction_id

            if success:
                paid = to_amount(amount) if amount is not None else None
                if paid is not None and paid < loan.fee_amount:
                    self.logger.warning(
                        f"Underpaid fee for loan {loan.id}: received {paid}, expected {loan.fee_amount}"
                    )
                    if txn is not None:
                        self.ledger.resolve(txn.id, False, reason="underpaid")
                    return loan

                if loan.fee_paid and not current:
                    self.logger.warning(
                        f"Duplicate fee charge {provider_reference} for loan {loan.id}; "
                        f"fee already paid by {loan.mpesa_transaction_id}"
                    )
                    if txn is not None:
                        self.ledger.resolve(txn.id, True, reason="duplicate charge",
                                            provider_response={"receipt_number": receipt_number})
                        duplicate = self.ledger.get_transaction(txn.id)
                elif loan.status == LoanStatus.PENDING and not loan.fee_paid:
                    if txn is not None:
                        self.ledger.resolve(txn.id, True, provider_response={"receipt_number": receipt_number})
                    loan.fee_paid = True
                    loan.fee_receipt_number = receipt_number
                    loan.mpesa_transaction_id = provider_reference
                    self._save_loan(loan)
                    submitted = True
                else:
                    if txn is not None:
                        self.ledger.resolve(txn.id, True, provider_response={"receipt_number": receipt_number})
                    if not loan.fee_paid:
                        self.logger.warning(
                            f"Fee received for loan {loan.id} in status {loan.status.value}; not applied"
                        )
            else:
                if txn is not None:
                    self.ledger.resolve(txn.id, False, reason="provider reported failure")
                if current and loan.status == LoanStatus.PENDING and not loan.fee_paid:
                    discard = True
                elif not current:
                    self.logger.info(
                        f"Superseded fee charge {provider_reference} for loan {loan.id} failed"
                    )

        if discard:
            self._discard_loan(loan.id)
            return None
        if duplicate is not None:
            self._refund_duplicate_charge(loan, duplicate)
        if submitted:
            log_action(
                self.logger, "info", "Processing fee paid by callback",
                user_id=loan.user_id, action="fee_paid", resource=f"loan:{loan.id}",
                extra={"receipt_number": receipt_number}
            )
            self._emit(LoanEvent.APPLICATION_SUBMITTED, loan, fee_amount=str(loan.fee_amount))
        return loan

    def _refund_duplicate_charge(self, loan: Loan, charge: PaymentTransaction) -> PaymentTransaction:
        """Return a second successful fee charge to the borrower; failures stay in the ledger"""
        error: Optional[ProviderError] = None
        result: Optional[RefundResult] = None
        try:
            result = self.gateway.refund(
                PaymentMethod(charge.payment_method), charge.account_reference, charge.amount,
                charge.provider_reference, "Duplicate processing fee charge"
            )
        except ProviderError as e:
            error = e
        succeeded = result is not None and result.success
        if result is not None and not result.success:
            error = ProviderError("Refund was declined by the payment provider")

        refund = self.ledger.record_attempt(
            user_id=charge.user_id,
            kind=TransactionKind.REFUND,
            amount=charge.amount,
            payment_method=charge.payment_method,
            account_reference=charge.account_reference,
            loan_id=loan.id,
            provider_reference=result.transaction_id if result else None,
            status=TransactionStatus.SUCCESS if succeeded else TransactionStatus.FAILED,
            original_transaction_id=charge.id,
            reason="duplicate charge" if succeeded else str(error),
            provider_response=result.raw if result else {}
        )
        log_action(
            self.logger, "info" if succeeded else "error",
            "Duplicate fee charge refunded" if succeeded else f"Duplicate fee refund failed: {error}",
            user_id=loan.user_id, action="refund_duplicate_fee", resource=f"loan:{loan.id}",
            extra={"charge_reference": charge.provider_reference}
        )
        return refund

    # Decisions

    def _approve(self, loan: Loan, user: Borrower, credit_delta: int) -> Dict[str, Any]:
        before = user.to_dict()
        loan.status = LoanStatus.APPROVED
        loan.approval_date = datetime.now(timezone.utc)
        user.raise_credit_score(credit_delta)
        user.total_loans_approved += 1
        self._save_loan(loan)
        self.users.save_user(user)
        return _changes(before, user.to_dict())

    def approve(self, loan_id: str, admin_id: str) -> Transition:
        """
        Manual approval; requires a pending loan with the fee paid

        Raises:
            StateConflict: not pending, fee unpaid, or another active loan
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            self._require_pending(loan)
            if not loan.fee_paid:
                raise StateConflict("Loan fee must be paid before approval", details={"loan_id": loan_id})
            self._require_single_active(loan)

            user = self.users.get_user(loan.user_id)
            loan.approved_by = admin_id
            user_changes = self._approve(loan, user, APPROVAL_CREDIT_DELTA)

        log_action(
            self.logger, "info", "Loan approved",
            user_id=admin_id, action="approve_loan", resource=f"loan:{loan_id}"
        )
        return Transition(loan, {"loan": _changes(before, loan.to_dict()), "user": user_changes})

    def auto_approval_criteria(self, loan: Loan, user: Borrower) -> Dict[str, bool]:
        """Each auto-approval criterion and whether the loan meets it"""
        return {
            "fee_paid": loan.fee_paid,
            "valid_id": user.has_valid_id,
            "good_credit": user.credit_score >= AUTO_APPROVAL_MIN_CREDIT_SCORE,
            "no_pending_loans": not self._other_active_loans(loan),
        }

    def auto_approve(self, loan_id: str) -> Transition:
        """
        Rule-based approval

        Raises:
            StateConflict: not pending
            AutoApprovalCriteriaNotMet: one or more criteria failed; ``criteria`` names them
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            self._require_pending(loan)

            user = self.users.get_user(loan.user_id)
            criteria = self.auto_approval_criteria(loan, user)
            if not all(criteria.values()):
                raise AutoApprovalCriteriaNotMet(criteria)

            loan.is_auto_approved = True
            loan.auto_approved_at = datetime.now(timezone.utc)
            user_changes = self._approve(loan, user, AUTO_APPROVAL_CREDIT_DELTA)

        log_action(
            self.logger, "info", "Loan auto-approved",
            action="auto_approve_loan", resource=f"loan:{loan_id}", extra={"criteria": criteria}
        )
        return Transition(loan, {
            "loan": _changes(before, loan.to_dict()), "user": user_changes, "criteria": criteria
        })

    def special_approve(self, loan_id: str, admin_id: str) -> Transition:
        """Administrative override: approves a pending loan regardless of fee and credit"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            self._require_pending(loan)
            self._require_single_active(loan)

            user = self.users.get_user(loan.user_id)
            loan.is_special_approved = True
            loan.special_approved_at = datetime.now(timezone.utc)
            loan.approved_by = admin_id
            user_changes = self._approve(loan, user, SPECIAL_APPROVAL_CREDIT_DELTA)

        log_action(
            self.logger, "warning", "Loan specially approved",
            user_id=admin_id, action="special_approve_loan", resource=f"loan:{loan_id}",
            extra={"fee_paid": loan.fee_paid}
        )
        return Transition(loan, {"loan": _changes(before, loan.to_dict()), "user": user_changes})

    def reject(self, loan_id: str, reason: str, admin_id: Optional[str] = None) -> Transition:
        """
        Reject a pending loan; refunds the fee when it was paid

        The rejection commits before the refund is attempted. A failed
        refund leaves ``rejection_refund_status`` at ``failed`` for
        ``retry_refund``; it does not fail the rejection.
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            self._require_pending(loan)
            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason.strip()
            if loan.fee_paid:
                loan.rejection_refund_status = RefundStatus.PENDING
                loan.refund_initiated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

        log_action(
            self.logger, "info", "Loan rejected",
            user_id=admin_id, action="reject_loan", resource=f"loan:{loan_id}",
            extra={"reason": loan.rejection_reason}
        )

        if loan.rejection_refund_status == RefundStatus.PENDING:
            loan, _ = self._attempt_refund(loan)
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})

    def _attempt_refund(self, loan: Loan) -> Tuple[Loan, Optional[ProviderError]]:
        """Call the provider for a loan whose refund status is ``pending`` and record the outcome"""
        error: Optional[ProviderError] = None
        result: Optional[RefundResult] = None
        try:
            result = self.gateway.refund(
                loan.payment_method, loan.phone_number, loan.fee_amount,
                loan.mpesa_transaction_id or loan.id, loan.rejection_reason or "Loan rejected"
            )
        except ProviderError as e:
            error = e
        succeeded = result is not None and result.success
        if result is not None and not result.success:
            error = ProviderError("Refund was declined by the payment provider")

        fee_txns = [
            txn for txn in self.ledger.list_for_loan(loan.id)
            if txn.kind == TransactionKind.FEE and txn.status == TransactionStatus.SUCCESS
            and txn.provider_reference == loan.mpesa_transaction_id
        ]
        with self.storage.atomic():
            self.ledger.record_attempt(
                user_id=loan.user_id,
                kind=TransactionKind.REFUND,
                amount=loan.fee_amount,
                payment_method=loan.payment_method.value,
                account_reference=loan.phone_number,
                loan_id=loan.id,
                provider_reference=result.transaction_id if result else None,
                status=TransactionStatus.SUCCESS if succeeded else TransactionStatus.FAILED,
                original_transaction_id=fee_txns[-1].id if fee_txns else None,
                reason=None if succeeded else str(error),
                provider_response=result.raw if result else {}
            )
            loan = self.get_loan(loan.id)
            if loan.rejection_refund_status != RefundStatus.PENDING:
                raise StateConflict(f"Refund for loan {loan.id} is no longer pending")
            if succeeded:
                loan.rejection_refund_status = RefundStatus.PROCESSED
                loan.rejection_refund_transaction_id = result.transaction_id
            else:
                loan.rejection_refund_status = RefundStatus.FAILED
            self._save_loan(loan)

        if succeeded:
            log_action(
                self.logger, "info", "Fee refund processed",
                action="refund_fee", resource=f"loan:{loan.id}",
                extra={"transaction_id": result.transaction_id}
            )
            self._emit(LoanEvent.REFUND_PROCESSED, loan, refund_transaction_id=result.transaction_id)
        else:
            log_action(
                self.logger, "error", f"Fee refund failed: {error}",
                action="refund_fee", resource=f"loan:{loan.id}"
            )
            self._emit(LoanEvent.REFUND_FAILED, loan, error=str(error))
        return loan, error

    def retry_refund(self, loan_id: str) -> Transition:
        """
        Manually repeat a failed refund

        Raises:
            StateConflict: loan not rejected, no fee paid, refund in flight or already processed
            ProviderError: the repeated attempt failed (status is ``failed`` again)
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            if loan.status != LoanStatus.REJECTED:
                raise StateConflict("Refund can only be processed for rejected loans")
            if not loan.fee_paid:
                raise StateConflict("No fee was paid for this loan")
            if loan.rejection_refund_status == RefundStatus.PROCESSED:
                raise StateConflict("Refund already processed")
            if loan.rejection_refund_status != RefundStatus.FAILED:
                raise StateConflict("Refund is already in progress")
            loan.rejection_refund_status = RefundStatus.PENDING
            self._save_loan(loan)

        loan, error = self._attempt_refund(loan)
        if error is not None:
            raise error
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})

    # Disbursement and settlement

    def initiate_disbursement(self, loan_id: str) -> Transition:
        """
        Send the principal to the borrower

        Moves ``pending`` to ``processing`` before calling the provider. The
        provider accepting the payout keeps ``processing`` until
        ``complete_disbursement``; a refusal marks ``failed`` and raises.

        Raises:
            StateConflict: not approved, or disbursement already initiated
            ProviderError: provider refused or timed out (status is ``failed``)
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            if loan.status != LoanStatus.APPROVED:
                raise StateConflict("Loan must be approved before disbursement")
            if loan.disbursement_status != DisbursementStatus.PENDING:
                raise StateConflict(
                    "Disbursement already initiated or completed",
                    details={"disbursement_status": loan.disbursement_status.value}
                )
            loan.disbursement_status = DisbursementStatus.PROCESSING
            self._save_loan(loan)

        error: Optional[ProviderError] = None
        result: Optional[RefundResult] = None
        try:
            result = self.gateway.disburse(loan.payment_method, loan.phone_number, loan.amount, loan.id)
        except ProviderError as e:
            error = e
        if result is not None and not result.success:
            error = ProviderError("Disbursement was declined by the payment provider")

        with self.storage.atomic():
            self.ledger.record_attempt(
                user_id=loan.user_id,
                kind=TransactionKind.DISBURSEMENT,
                amount=loan.amount,
                payment_method=loan.payment_method.value,
                account_reference=loan.phone_number,
                loan_id=loan.id,
                provider_reference=result.transaction_id if result else None,
                status=TransactionStatus.FAILED if error else TransactionStatus.PENDING,
                reason=str(error) if error else None,
                provider_response=result.raw if result else {}
            )
            loan = self.get_loan(loan_id)
            if error is None:
                loan.disbursement_transaction_id = result.transaction_id
            else:
                loan.disbursement_status = DisbursementStatus.FAILED
            self._save_loan(loan)

        if error is not None:
            log_action(
                self.logger, "error", f"Disbursement failed: {error}",
                action="disburse_loan", resource=f"loan:{loan_id}"
            )
            error.details.setdefault("loan_id", loan_id)
            raise error

        log_action(
            self.logger, "info", "Disbursement initiated",
            action="disburse_loan", resource=f"loan:{loan_id}",
            extra={"transaction_id": loan.disbursement_transaction_id}
        )
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})

    def complete_disbursement(self, loan_id: str, success: bool) -> Transition:
        """
        Apply the provider's completion signal; repeats are no-ops

        Raises:
            StateConflict: disbursement was never initiated
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            if loan.disbursement_status in (DisbursementStatus.COMPLETED, DisbursementStatus.FAILED):
                self.logger.info(f"Disbursement for loan {loan_id} already {loan.disbursement_status.value}")
                return Transition(loan, {})
            if loan.disbursement_status != DisbursementStatus.PROCESSING:
                raise StateConflict("Disbursement has not been initiated")

            loan.disbursement_status = DisbursementStatus.COMPLETED if success else DisbursementStatus.FAILED
            if success:
                loan.disbursed_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            if loan.disbursement_transaction_id:
                txn = self.ledger.find_by_provider_reference(
                    loan.disbursement_transaction_id, TransactionKind.DISBURSEMENT
                )
                if txn is not None and not txn.is_resolved:
                    self.ledger.resolve(txn.id, success)

        log_action(
            self.logger, "info" if success else "error",
            f"Disbursement {loan.disbursement_status.value}",
            action="complete_disbursement", resource=f"loan:{loan_id}"
        )
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})

    def reset_failed_disbursement(self, loan_id: str) -> Transition:
        """Return a ``failed`` disbursement to ``pending`` for a manual retry"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            if loan.disbursement_status != DisbursementStatus.FAILED:
                raise StateConflict("Only failed disbursements can be retried")
            loan.disbursement_status = DisbursementStatus.PENDING
            loan.disbursement_transaction_id = None
            self._save_loan(loan)
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})

    def settle(self, loan_id: str, defaulted: bool = False) -> Transition:
        """Close a disbursed loan as repaid or defaulted"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            before = loan.to_dict()
            if loan.status != LoanStatus.APPROVED or loan.disbursement_status != DisbursementStatus.COMPLETED:
                raise StateConflict("Only approved, disbursed loans can be settled")
            loan.status = LoanStatus.DEFAULTED if defaulted else LoanStatus.PAID
            loan.settled_at = datetime.now(timezone.utc)
            self._save_loan(loan)
        return Transition(loan, {"loan": _changes(before, loan.to_dict())})
