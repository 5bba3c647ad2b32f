"""
Test suite for the payment transaction ledger
"""

import pytest
from decimal import Decimal

from microlending.errors import NotFound
from microlending.storage import InMemoryStorage
from microlending.transactions import TransactionKind, TransactionLedger, TransactionStatus


class TestTransactionLedger:

    def setup_method(self):
        self.ledger = TransactionLedger(InMemoryStorage())

    def _fee(self, reference="ws_CO_1", loan_id="loan-1", **kwargs):
        return self.ledger.record_attempt(
            user_id="user-1",
            kind=TransactionKind.FEE,
            amount="50",
            payment_method="mobile_money_push",
            account_reference="254712345678",
            loan_id=loan_id,
            provider_reference=reference,
            **kwargs
        )

    def test_record_pending_attempt(self):
        txn = self._fee()

        assert txn.status == TransactionStatus.PENDING
        assert txn.amount == Decimal("50.00")
        assert txn.is_resolved is False
        assert txn.resolved_at is None
        assert txn.is_refund is False
        assert self.ledger.get_transaction(txn.id) == txn

    def test_record_resolved_attempt(self):
        txn = self._fee(status=TransactionStatus.SUCCESS)
        assert txn.is_resolved is True
        assert txn.resolved_at is not None

    def test_resolve_exactly_once(self):
        txn = self._fee()

        assert self.ledger.resolve(txn.id, True, provider_response={"receipt_number": "R1"}) is True
        assert self.ledger.resolve(txn.id, False, reason="late failure") is False

        stored = self.ledger.get_transaction(txn.id)
        assert stored.status == TransactionStatus.SUCCESS
        assert stored.provider_response == {"receipt_number": "R1"}
        assert stored.reason is None

    def test_refund_links_original(self):
        fee = self._fee(status=TransactionStatus.SUCCESS)
        refund = self.ledger.record_attempt(
            user_id="user-1", kind=TransactionKind.REFUND, amount=Decimal("50.00"),
            payment_method="mock", account_reference="254712345678", loan_id="loan-1",
            original_transaction_id=fee.id, status=TransactionStatus.SUCCESS
        )
        assert refund.is_refund is True
        assert refund.original_transaction_id == fee.id

    def test_find_by_provider_reference(self):
        self._fee("ref-1")
        latest = self._fee("ref-1", status=TransactionStatus.FAILED)

        assert self.ledger.find_by_provider_reference("ref-1").id == latest.id
        assert self.ledger.find_by_provider_reference("ref-1", TransactionKind.DISBURSEMENT) is None
        assert self.ledger.find_by_provider_reference("unknown") is None

    def test_listings(self):
        self._fee("ref-1", loan_id="loan-1")
        self._fee("ref-2", loan_id="loan-2", status=TransactionStatus.SUCCESS)

        assert len(self.ledger.list_for_loan("loan-1")) == 1
        assert len(self.ledger.list_for_user("user-1")) == 2
        assert len(self.ledger.list_transactions(kind=TransactionKind.FEE)) == 2
        assert len(self.ledger.list_transactions(status=TransactionStatus.SUCCESS)) == 1

    def test_missing_transaction(self):
        with pytest.raises(NotFound):
            self.ledger.get_transaction("missing")

    def test_stats(self):
        self._fee("ref-1", status=TransactionStatus.SUCCESS)
        self._fee("ref-2", status=TransactionStatus.FAILED)
        self._fee("ref-3")

        stats = self.ledger.stats()

        assert stats["total_transactions"] == 3
        assert stats["by_kind"]["fee"] == {"pending": 1, "success": 1, "failed": 1, "amount": "50.00"}
        assert stats["by_kind"]["refund"]["amount"] == "0.00"
