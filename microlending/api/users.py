"""
Borrower self-service endpoints
"""

from fastapi import APIRouter, Depends, Query

from .deps import Principal, envelope, get_principal, get_system
from ..system import LendingSystem


router = APIRouter()


@router.get("/eligibility")
def check_eligibility(
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    """Whether the caller may apply now, and for how much"""
    decision = system.loans.check_eligibility(principal.user_id)
    return envelope(data=decision.to_dict())


@router.get("/loans")
def list_my_loans(
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    loans = system.loans.list_user_loans(principal.user_id)
    return envelope(data={"loans": [loan.to_dict() for loan in loans], "count": len(loans)})


@router.get("/notifications")
def list_notifications(
    unread_only: bool = Query(False),
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    notifications = system.notifications.list_for_user(principal.user_id, unread_only=unread_only)
    return envelope(data={"notifications": [n.to_dict() for n in notifications]})


@router.patch("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    notification = system.notifications.mark_read(notification_id, principal.user_id)
    return envelope(data={"notification": notification.to_dict()})


@router.get("/transactions")
def list_my_transactions(
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    """The caller's fee, refund and disbursement history, newest first"""
    transactions = list(reversed(system.ledger.list_for_user(principal.user_id)))
    return envelope(data={
        "transactions": [txn.to_dict() for txn in transactions],
        "count": len(transactions),
    })
