"""
Eligibility Evaluator

Decides whether a borrower may apply and for how much. Pure: reads the
borrower, their active-loan count and a settings snapshot, writes nothing.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .money import ZERO, to_amount
from .settings import LoanSettings
from .users import Borrower


# (score below, cap) pairs, checked in order
CREDIT_SCORE_CAPS = (
    (300, Decimal('10000.00')),
    (500, Decimal('25000.00')),
    (700, Decimal('50000.00')),
)
FIRST_TIME_BORROWER_CAP = Decimal('30000.00')


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    reason: Optional[str]
    max_amount: Decimal
    credit_score: int
    loan_limit: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "max_amount": str(self.max_amount),
            "credit_score": self.credit_score,
            "loan_limit": str(self.loan_limit),
        }


def credit_score_cap(credit_score: int, total_loans_applied: int) -> Optional[Decimal]:
    """
    Cap implied by the score band and borrowing history, or None when uncapped

    A borrower with no prior applications is held to the first-time cap in
    every band; the lower bands keep their own, smaller caps.
    """
    band_cap = None
    for threshold, cap in CREDIT_SCORE_CAPS:
        if credit_score < threshold:
            band_cap = cap
            break
    if total_loans_applied == 0:
        return FIRST_TIME_BORROWER_CAP if band_cap is None else min(band_cap, FIRST_TIME_BORROWER_CAP)
    return band_cap


def evaluate_eligibility(user: Borrower, active_loan_count: int,
                         settings: Optional[LoanSettings] = None) -> EligibilityDecision:
    """
    Evaluate whether ``user`` may apply for a loan.

    Args:
        user: Borrower profile
        active_loan_count: Loans of this user in pending or approved status
        settings: Settings snapshot; when given, ``max_loan_amount`` also caps the result

    Returns:
        EligibilityDecision. Ineligible decisions carry a reason and a zero max amount.
    """
    loan_limit = to_amount(user.loan_limit)

    if not user.is_citizen:
        return EligibilityDecision(
            eligible=False,
            reason="Only citizens are eligible for loans",
            max_amount=ZERO,
            credit_score=user.credit_score,
            loan_limit=loan_limit
        )

    if active_loan_count > 0:
        return EligibilityDecision(
            eligible=False,
            reason="You have an active loan. Please repay it before applying for a new one",
            max_amount=ZERO,
            credit_score=user.credit_score,
            loan_limit=loan_limit
        )

    max_amount = loan_limit
    cap = credit_score_cap(user.credit_score, user.total_loans_applied)
    if cap is not None:
        max_amount = min(max_amount, cap)
    if settings is not None:
        max_amount = min(max_amount, settings.max_loan_amount)

    return EligibilityDecision(
        eligible=True,
        reason=None,
        max_amount=max_amount,
        credit_score=user.credit_score,
        loan_limit=loan_limit
    )
