"""
Shared fixtures: an in-memory lending system wired to one mock provider
"""

import pytest
from decimal import Decimal

from microlending.config import LendingConfig
from microlending.payments import MockPaymentProvider, PaymentMethod
from microlending.storage import InMemoryStorage
from microlending.system import LendingSystem
from microlending.users import UserRole, generate_national_id


def make_config(**overrides) -> LendingConfig:
    values = dict(
        storage_backend="memory",
        mock_payments=True,
        background_events=False,
        payment_timeout_seconds=5.0,
        notification_webhook_url="",
    )
    values.update(overrides)
    return LendingConfig(**values)


@pytest.fixture
def provider():
    """Mock provider serving every payment method; tweak its flags per test"""
    return MockPaymentProvider()


@pytest.fixture
def system(provider):
    lending_system = LendingSystem(
        config=make_config(),
        storage=InMemoryStorage(),
        providers={method: provider for method in PaymentMethod},
        background_events=False
    )
    yield lending_system
    lending_system.close()


@pytest.fixture
def make_borrower(system):
    """Factory for citizen borrowers with a valid national id"""
    def _make(credit_score=650, loan_limit="100000", is_citizen=True, national_id="generate",
              total_loans_applied=0, email=None):
        return system.users.create_user(
            full_name="Jane Wanjiru",
            email=email or f"borrower{system.storage.count('users')}@example.com",
            phone_number="254712345678",
            national_id=generate_national_id() if national_id == "generate" else national_id,
            is_citizen=is_citizen,
            credit_score=credit_score,
            loan_limit=loan_limit,
            total_loans_applied=total_loans_applied
        )
    return _make


@pytest.fixture
def borrower(make_borrower):
    return make_borrower()


@pytest.fixture
def admin(system):
    return system.users.create_user(
        full_name="Loan Officer",
        email="officer@example.com",
        role=UserRole.ADMIN
    )


@pytest.fixture
def paid_loan(system, borrower):
    """Pending loan whose fee was charged synchronously"""
    return system.loans.create_loan(
        borrower.id, Decimal("10000"), "254712345678", payment_method=PaymentMethod.MOCK
    )


@pytest.fixture
def unpaid_loan(system, borrower):
    """Pending loan awaiting the asynchronous fee callback"""
    return system.loans.create_loan(
        borrower.id, Decimal("10000"), "254712345678", payment_method=PaymentMethod.MOBILE_MONEY_PUSH
    )
