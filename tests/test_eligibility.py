"""
Test suite for the eligibility evaluator
"""

from decimal import Decimal
from datetime import datetime, timezone

from microlending.eligibility import credit_score_cap, evaluate_eligibility
from microlending.settings import LoanSettings
from microlending.users import Borrower


def _borrower(credit_score=650, loan_limit="100000", applied=0, is_citizen=True):
    now = datetime.now(timezone.utc)
    return Borrower(
        id="user-1", created_at=now, updated_at=now,
        full_name="Amina Otieno", email="amina@example.com",
        national_id="123456781", is_citizen=is_citizen,
        credit_score=credit_score, loan_limit=Decimal(loan_limit),
        total_loans_applied=applied
    )


SETTINGS = LoanSettings(Decimal("1000.00"), Decimal("500000.00"), Decimal("50.00"))


class TestEligibilityScenarios:

    def test_new_borrower_below_700_gets_first_time_cap(self):
        decision = evaluate_eligibility(_borrower(650, applied=0), 0, SETTINGS)
        assert decision.eligible is True
        assert decision.max_amount == Decimal("30000.00")

    def test_established_borrower_is_uncapped(self):
        decision = evaluate_eligibility(_borrower(750, applied=3), 0, SETTINGS)
        assert decision.max_amount == Decimal("100000.00")

    def test_poor_credit(self):
        assert evaluate_eligibility(_borrower(250, applied=2), 0, SETTINGS).max_amount == Decimal("10000.00")
        assert evaluate_eligibility(_borrower(250, "8000", applied=2), 0, SETTINGS).max_amount == Decimal("8000.00")

    def test_score_bands(self):
        assert evaluate_eligibility(_borrower(450, applied=1), 0, SETTINGS).max_amount == Decimal("25000.00")
        assert evaluate_eligibility(_borrower(650, applied=1), 0, SETTINGS).max_amount == Decimal("50000.00")
        assert evaluate_eligibility(_borrower(700, applied=0), 0, SETTINGS).max_amount == Decimal("30000.00")
        assert evaluate_eligibility(_borrower(700, applied=1), 0, SETTINGS).max_amount == Decimal("100000.00")

    def test_non_citizen(self):
        decision = evaluate_eligibility(_borrower(is_citizen=False), 0, SETTINGS)
        assert decision.eligible is False
        assert decision.reason == "Only citizens are eligible for loans"
        assert decision.max_amount == Decimal("0.00")

    def test_active_loan(self):
        decision = evaluate_eligibility(_borrower(800, applied=4), 1, SETTINGS)
        assert decision.eligible is False
        assert "active loan" in decision.reason

    def test_system_maximum_caps_result(self):
        settings = LoanSettings(Decimal("1000.00"), Decimal("20000.00"), Decimal("50.00"))
        assert evaluate_eligibility(_borrower(750, applied=3), 0, settings).max_amount == Decimal("20000.00")

    def test_without_settings(self):
        assert evaluate_eligibility(_borrower(750, "250000", applied=3), 0).max_amount == Decimal("250000.00")

    def test_to_dict(self):
        data = evaluate_eligibility(_borrower(650), 0, SETTINGS).to_dict()
        assert data == {
            "eligible": True,
            "reason": None,
            "max_amount": "30000.00",
            "credit_score": 650,
            "loan_limit": "100000.00",
        }


class TestCreditScoreCap:

    def test_caps(self):
        assert credit_score_cap(299, 5) == Decimal("10000.00")
        assert credit_score_cap(300, 5) == Decimal("25000.00")
        assert credit_score_cap(699, 5) == Decimal("50000.00")
        assert credit_score_cap(700, 5) is None
        assert credit_score_cap(299, 0) == Decimal("10000.00")
        assert credit_score_cap(900, 0) == Decimal("30000.00")
