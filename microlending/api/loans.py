"""
Borrower loan endpoints and the M-Pesa STK callback
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from .deps import Principal, envelope, get_principal, get_system
from .schemas import ApplyLoanRequest, PayFeeRequest
from ..errors import LendingError, PermissionDenied
from ..logging_config import get_logger
from ..payments import parse_stk_callback
from ..system import LendingSystem


router = APIRouter()
logger = get_logger("microlending.api.loans")


def _application_message(loan) -> str:
    if loan.fee_paid:
        return "Processing fee paid. Your loan application has been submitted."
    return (f"Payment initiated via {loan.payment_method.value}. "
            f"Complete the payment to submit your loan application.")


@router.post("/apply")
def apply_for_loan(
    request: ApplyLoanRequest,
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    """Apply for a loan and start the processing fee charge"""
    loan = system.loans.create_loan(
        user_id=principal.user_id,
        amount=request.amount,
        phone_number=request.phone_number,
        description=request.description,
        payment_method=request.payment_method
    )
    return envelope(
        data={
            "loan": loan.to_dict(),
            "transaction_id": loan.mpesa_transaction_id,
            "fee_amount": str(loan.fee_amount),
            "awaiting_payment": not loan.fee_paid,
        },
        message=_application_message(loan)
    )


@router.post("/{loan_id}/pay-fee")
def pay_loan_fee(
    loan_id: str,
    request: Optional[PayFeeRequest] = None,
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    """Retry the processing fee charge for an unpaid application"""
    method = request.payment_method if request else None
    loan = system.loans.pay_fee(loan_id, principal.user_id, method)
    return envelope(data={"loan": loan.to_dict()}, message=_application_message(loan))


@router.post("/stk-callback")
def stk_callback(
    payload: Dict[str, Any] = Body(...),
    system: LendingSystem = Depends(get_system)
):
    """
    M-Pesa STK push result. Always answers 200 so the provider does not
    redeliver because of an error on our side.
    """
    result = parse_stk_callback(payload)
    if result is None:
        logger.warning("STK callback without a recognizable result")
        return envelope(success=False, message="Unrecognized callback")

    try:
        loan = system.loans.resolve_fee_callback(
            result.transaction_reference, result.success,
            amount=result.amount, receipt_number=result.receipt_number
        )
    except LendingError as e:
        logger.error(f"STK callback {result.transaction_reference} failed: {e.message}")
        return envelope(success=False, message=e.message)
    except Exception:
        logger.exception(f"STK callback {result.transaction_reference} failed")
        return envelope(success=False, message="Callback processing failed")

    return envelope(
        success=result.success,
        data={"loan_id": loan.id, "fee_paid": loan.fee_paid} if loan else None
    )


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    principal: Principal = Depends(get_principal),
    system: LendingSystem = Depends(get_system)
):
    loan = system.loans.get_loan(loan_id)
    if loan.user_id != principal.user_id and not principal.is_admin:
        raise PermissionDenied("Access denied")
    return envelope(data={"loan": loan.to_dict()})
