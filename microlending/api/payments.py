"""
Payment method listing and provider webhooks
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request

from .deps import envelope, get_system
from ..errors import LendingError
from ..logging_config import get_logger
from ..payments import parse_flutterwave_webhook
from ..system import LendingSystem


router = APIRouter()
logger = get_logger("microlending.api.payments")


@router.get("/methods")
def list_payment_methods(system: LendingSystem = Depends(get_system)):
    """Payment methods with a configured provider"""
    return envelope(data={"methods": system.gateway.available_methods()})


@router.post("/webhook/flutterwave")
def flutterwave_webhook(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    system: LendingSystem = Depends(get_system)
):
    """
    Flutterwave charge notification. A bad signature is refused; anything
    else is acknowledged with 200.
    """
    result = parse_flutterwave_webhook(
        payload, dict(request.headers), system.config.flutterwave_secret_hash
    )
    if result is None:
        return envelope(message="Event ignored")

    try:
        loan = system.loans.resolve_fee_callback(
            result.transaction_reference, result.success,
            amount=result.amount, receipt_number=result.receipt_number
        )
    except LendingError as e:
        logger.error(f"Webhook {result.transaction_reference} failed: {e.message}")
        return envelope(success=False, message=e.message)

    return envelope(
        success=result.success,
        data={"loan_id": loan.id, "fee_paid": loan.fee_paid} if loan else None
    )
