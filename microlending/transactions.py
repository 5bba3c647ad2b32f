"""
Transaction Ledger Module

One record per payment attempt: fee charges, fee refunds and loan
disbursements. A transaction is created ``pending`` when the provider call
is initiated and resolved exactly once; after ``success`` or ``failed`` it
never changes again, so redelivered callbacks cannot rewrite history.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .errors import NotFound
from .logging_config import get_logger
from .money import to_amount
from .storage import StorageInterface, StorageRecord


class TransactionKind(Enum):
    FEE = "fee"
    REFUND = "refund"
    DISBURSEMENT = "disbursement"


class TransactionStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PaymentTransaction(StorageRecord):
    """
    Payment attempt against a provider
    """
    user_id: str
    kind: TransactionKind
    amount: Decimal
    payment_method: str
    account_reference: str
    loan_id: Optional[str] = None
    provider_reference: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    is_refund: bool = False
    original_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None

    decimal_fields = ('amount',)
    datetime_fields = ('resolved_at',)
    enum_fields = {'kind': TransactionKind, 'status': TransactionStatus}

    @property
    def is_resolved(self) -> bool:
        return self.status != TransactionStatus.PENDING


class TransactionLedger:
    """
    Records and resolves payment transactions
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.logger = get_logger("microlending.transactions")

    def record_attempt(
        self,
        user_id: str,
        kind: TransactionKind,
        amount: Any,
        payment_method: str,
        account_reference: str,
        loan_id: Optional[str] = None,
        provider_reference: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        original_transaction_id: Optional[str] = None,
        reason: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None
    ) -> PaymentTransaction:
        """
        Record a payment attempt

        A synchronous attempt may be recorded already resolved by passing
        ``status``; asynchronous ones start ``pending``.
        """
        now = datetime.now(timezone.utc)
        txn = PaymentTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            kind=kind,
            amount=to_amount(amount),
            payment_method=payment_method,
            account_reference=account_reference,
            loan_id=loan_id,
            provider_reference=provider_reference,
            status=status,
            is_refund=kind == TransactionKind.REFUND,
            original_transaction_id=original_transaction_id,
            reason=reason,
            provider_response=provider_response or {},
            resolved_at=now if status != TransactionStatus.PENDING else None
        )
        self.storage.save(self.table_name, txn.id, txn.to_dict())
        return txn

    def resolve(self, txn_id: str, success: bool,
                provider_response: Optional[Dict[str, Any]] = None,
                reason: Optional[str] = None) -> bool:
        """
        Resolve a pending transaction

        Returns:
            True if this call resolved it, False if it was already resolved
        """
        with self.storage.atomic():
            txn = self.get_transaction(txn_id)
            if txn.is_resolved:
                self.logger.info(f"Transaction {txn_id} already {txn.status.value}, ignoring")
                return False

            now = datetime.now(timezone.utc)
            txn.status = TransactionStatus.SUCCESS if success else TransactionStatus.FAILED
            txn.resolved_at = now
            txn.updated_at = now
            if provider_response:
                txn.provider_response = provider_response
            if reason:
                txn.reason = reason
            self.storage.save(self.table_name, txn.id, txn.to_dict())
            return True

    def get_transaction(self, txn_id: str) -> PaymentTransaction:
        data = self.storage.load(self.table_name, txn_id)
        if not data:
            raise NotFound(f"Transaction {txn_id} not found")
        return PaymentTransaction.from_dict(data)

    def find_by_provider_reference(self, provider_reference: str,
                                   kind: Optional[TransactionKind] = None) -> Optional[PaymentTransaction]:
        """Most recent transaction carrying the provider reference"""
        filters: Dict[str, Any] = {"provider_reference": provider_reference}
        if kind is not None:
            filters["kind"] = kind.value
        matches = self.storage.find(self.table_name, filters)
        if not matches:
            return None
        return PaymentTransaction.from_dict(matches[-1])

    def list_for_loan(self, loan_id: str) -> List[PaymentTransaction]:
        return [PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, {"loan_id": loan_id})]

    def list_for_user(self, user_id: str) -> List[PaymentTransaction]:
        return [PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]

    def list_transactions(self, kind: Optional[TransactionKind] = None,
                          status: Optional[TransactionStatus] = None) -> List[PaymentTransaction]:
        """All transactions, optionally filtered by kind and status"""
        filters: Dict[str, Any] = {}
        if kind is not None:
            filters["kind"] = kind.value
        if status is not None:
            filters["status"] = status.value
        return [PaymentTransaction.from_dict(d) for d in self.storage.find(self.table_name, filters)]

    def stats(self) -> Dict[str, Any]:
        """Counts per kind and status, and the amount moved by successful transactions"""
        by_kind: Dict[str, Dict[str, Any]] = {}
        for kind in TransactionKind:
            by_kind[kind.value] = {status.value: 0 for status in TransactionStatus}
            by_kind[kind.value]["amount"] = Decimal("0.00")
        transactions = self.list_transactions()
        for txn in transactions:
            bucket = by_kind[txn.kind.value]
            bucket[txn.status.value] += 1
            if txn.status == TransactionStatus.SUCCESS:
                bucket["amount"] += txn.amount
        for bucket in by_kind.values():
            bucket["amount"] = str(bucket["amount"])
        return {"total_transactions": len(transactions), "by_kind": by_kind}
