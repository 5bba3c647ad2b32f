"""
Admin endpoints: loan decisions, disbursement, refunds, queue, settings and transactions
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .deps import Principal, envelope, get_system, require_admin
from .schemas import (
    DisbursementCallbackRequest, RejectLoanRequest, SettleLoanRequest, UpdateSettingRequest
)
from ..errors import ValidationError
from ..loans import LoanStatus, Transition
from ..transactions import TransactionKind, TransactionStatus
from ..system import LendingSystem


router = APIRouter()


def _transition_data(transition: Transition) -> dict:
    return {"loan": transition.loan.to_dict(), "changes": transition.details}


@router.patch("/loan/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    transition = system.admin.approve(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Loan approved successfully")


@router.patch("/loan/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Reject a pending loan; a paid fee is refunded"""
    transition = system.admin.reject(loan_id, request.reason, admin.user_id)
    refund_status = transition.loan.rejection_refund_status
    message = "Loan rejected successfully"
    if refund_status is not None:
        message += f" (fee refund {refund_status.value})"
    return envelope(data=_transition_data(transition), message=message)


@router.patch("/loan/{loan_id}/auto-approve")
def auto_approve_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    transition = system.admin.auto_approve(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Loan auto-approved successfully")


@router.patch("/loan/{loan_id}/special-approve")
def special_approve_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    transition = system.admin.special_approve(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Loan specially approved")


@router.post("/loan/{loan_id}/disbursement")
def disburse_loan(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Send the principal to the borrower's phone"""
    transition = system.admin.initiate_disbursement(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Disbursement initiated")


@router.post("/loan/{loan_id}/disbursement/callback")
def disbursement_callback(
    loan_id: str,
    request: DisbursementCallbackRequest,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Record the provider's final disbursement result"""
    transition = system.admin.complete_disbursement(loan_id, request.success)
    return envelope(
        data=_transition_data(transition),
        message=f"Disbursement {transition.loan.disbursement_status.value}"
    )


@router.post("/loan/{loan_id}/disbursement/retry")
def retry_disbursement(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    transition = system.admin.retry_disbursement(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Disbursement initiated")


@router.post("/loan/{loan_id}/refund")
def process_refund(
    loan_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Retry a failed fee refund"""
    transition = system.admin.process_refund(loan_id, admin.user_id)
    return envelope(data=_transition_data(transition), message="Refund processed successfully")


@router.post("/loan/{loan_id}/settle")
def settle_loan(
    loan_id: str,
    request: SettleLoanRequest,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    transition = system.admin.settle_loan(loan_id, admin.user_id, defaulted=request.defaulted)
    return envelope(
        data=_transition_data(transition),
        message=f"Loan marked {transition.loan.status.value}"
    )


@router.get("/loan-queue")
def get_loan_queue(
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Pending loans, oldest first"""
    loans = system.loans.loan_queue(limit=system.config.loan_queue_limit)
    return envelope(data={"loans": [loan.to_dict() for loan in loans], "count": len(loans)})


@router.get("/loans")
def list_loans(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    try:
        status_filter = LoanStatus(status) if status else None
    except ValueError:
        raise ValidationError(f"Unknown loan status: {status}")
    loans, total = system.loans.list_loans(status_filter, page=page, limit=limit)
    return envelope(data={
        "loans": [loan.to_dict() for loan in loans],
        "total": total,
        "page": page,
        "limit": limit,
    })


@router.get("/stats")
def get_stats(
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    return envelope(data=system.loans.stats())


@router.get("/settings")
def get_settings(
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    grouped = system.settings.list_settings()
    return envelope(data={
        category: [setting.to_dict() for setting in settings]
        for category, settings in grouped.items()
    })


@router.patch("/settings/{key}")
def update_setting(
    key: str,
    request: UpdateSettingRequest,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    old_value, new_value = system.admin.update_setting(key, request.value, admin.user_id)
    return envelope(
        data={"key": key, "old_value": old_value, "new_value": new_value},
        message="Setting updated successfully"
    )


@router.get("/audit")
def verify_audit_trail(
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Audit chain integrity report"""
    return envelope(data=system.audit_trail.verify_integrity())


@router.get("/transactions")
def list_transactions(
    kind: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    """Payment transactions, newest first"""
    try:
        kind_filter = TransactionKind(kind) if kind else None
        status_filter = TransactionStatus(status) if status else None
    except ValueError:
        raise ValidationError(f"Unknown transaction filter: kind={kind}, status={status}")
    transactions = list(reversed(system.ledger.list_transactions(kind_filter, status_filter)))
    start = (page - 1) * limit
    return envelope(data={
        "transactions": [txn.to_dict() for txn in transactions[start:start + limit]],
        "total": len(transactions),
        "page": page,
        "limit": limit,
    })


@router.get("/transactions/stats")
def get_transaction_stats(
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    return envelope(data=system.ledger.stats())


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    admin: Principal = Depends(require_admin),
    system: LendingSystem = Depends(get_system)
):
    return envelope(data={"transaction": system.ledger.get_transaction(transaction_id).to_dict()})
