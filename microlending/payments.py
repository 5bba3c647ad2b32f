"""
Payment Gateway Module

One abstract provider interface for fee charges, refunds and disbursements,
with M-Pesa STK push and Flutterwave clients plus a configurable mock.
Provider responses are normalized into ``ChargeResult``, ``RefundResult``
and ``CallbackResult`` here; nothing past this module sees provider field
names.

``PaymentGateway`` routes each call by payment method and bounds it with the
configured timeout. A provider that overruns surfaces as ``ProviderTimeout``;
any other provider failure surfaces as ``ProviderError``.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional
from enum import Enum
import base64
import time
import uuid

import httpx

from .errors import LendingError, PermissionDenied, ProviderError, ProviderTimeout, ValidationError
from .logging_config import get_logger
from .money import to_amount

logger = get_logger("microlending.payments")


class PaymentMethod(Enum):
    """How a borrower pays the processing fee"""
    MOBILE_MONEY_PUSH = "mobile_money_push"
    MOBILE_MONEY_DIRECT_DEBIT = "mobile_money_direct_debit"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MOCK = "mock"

    @property
    def is_synchronous(self) -> bool:
        """Whether a charge on this method completes within the call"""
        return self in SYNCHRONOUS_METHODS


SYNCHRONOUS_METHODS = frozenset({
    PaymentMethod.MOCK,
    PaymentMethod.CARD,
    PaymentMethod.MOBILE_MONEY_DIRECT_DEBIT,
})


@dataclass
class ChargeResult:
    """
    Outcome of initiating a charge

    ``success`` is authoritative only when ``synchronous`` is True; an
    asynchronous charge is resolved later by a callback carrying
    ``transaction_id``.
    """
    transaction_id: str
    synchronous: bool
    success: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Outcome of a refund or disbursement request"""
    transaction_id: Optional[str]
    success: bool
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallbackResult:
    """Provider callback normalized to what reconciliation needs"""
    transaction_reference: str
    success: bool
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    kind: str = "fee"
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """
    Abstract payment provider

    Implementations raise ``ProviderError`` (or let transport errors escape
    for the gateway to wrap) when the provider refuses the request itself.
    A request the provider accepts but declines is reported through the
    result's ``success`` flag.
    """

    name = "provider"

    @abstractmethod
    def charge(self, phone_number: str, amount: Decimal, reference: str,
               method: PaymentMethod) -> ChargeResult:
        """Charge the borrower ``amount``"""
        pass

    @abstractmethod
    def refund(self, phone_number: str, amount: Decimal, original_reference: str,
               reason: str) -> RefundResult:
        """
        Return ``amount`` to the borrower

        Treated as synchronous: the returned ``success`` is recorded as
        final, even though a real payout may still fail after the provider
        accepts it. Confirmation callbacks for refunds are not reconciled.
        """
        pass

    @abstractmethod
    def disburse(self, phone_number: str, amount: Decimal, reference: str) -> RefundResult:
        """Send the loan principal to the borrower; acceptance means processing started"""
        pass

    def parse_callback(self, payload: Mapping[str, Any],
                       headers: Optional[Mapping[str, str]] = None) -> Optional[CallbackResult]:
        """Normalize a provider callback; None when the payload carries no result"""
        raise NotImplementedError(f"{self.name} does not accept callbacks")

    def close(self) -> None:
        pass


class MockPaymentProvider(PaymentProvider):
    """
    In-process provider for development and tests

    Behaviour is configurable per instance: decline flags, an exception to
    raise, and artificial latency to exercise the gateway timeout.
    """

    name = "mock"

    def __init__(self, charge_success: bool = True, refund_success: bool = True,
                 disburse_success: bool = True, raise_error: Optional[Exception] = None,
                 latency_seconds: float = 0.0, force_asynchronous: bool = False):
        self.charge_success = charge_success
        self.refund_success = refund_success
        self.disburse_success = disburse_success
        self.raise_error = raise_error
        self.latency_seconds = latency_seconds
        self.force_asynchronous = force_asynchronous
        self.calls: List[Dict[str, Any]] = []

    def _simulate(self, operation: str, **kwargs) -> None:
        self.calls.append({"operation": operation, **kwargs})
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        if self.raise_error is not None:
            raise self.raise_error

    def charge(self, phone_number, amount, reference, method):
        self._simulate("charge", phone_number=phone_number, amount=amount, reference=reference)
        synchronous = method.is_synchronous and not self.force_asynchronous
        transaction_id = f"MOCK-{uuid.uuid4().hex[:12].upper()}"
        return ChargeResult(
            transaction_id=transaction_id,
            synchronous=synchronous,
            success=self.charge_success if synchronous else None,
            raw={"mock": True, "method": method.value}
        )

    def refund(self, phone_number, amount, original_reference, reason):
        self._simulate("refund", phone_number=phone_number, amount=amount, reference=original_reference)
        return RefundResult(
            transaction_id=f"MOCK-REFUND-{uuid.uuid4().hex[:8].upper()}" if self.refund_success else None,
            success=self.refund_success,
            raw={"mock": True, "reason": reason}
        )

    def disburse(self, phone_number, amount, reference):
        self._simulate("disburse", phone_number=phone_number, amount=amount, reference=reference)
        return RefundResult(
            transaction_id=f"MOCK-DISB-{uuid.uuid4().hex[:8].upper()}" if self.disburse_success else None,
            success=self.disburse_success,
            raw={"mock": True}
        )

    def parse_callback(self, payload, headers=None):
        reference = payload.get("reference")
        if not reference:
            return None
        amount = payload.get("amount")
        return CallbackResult(
            transaction_reference=reference,
            success=bool(payload.get("success")),
            amount=to_amount(amount) if amount is not None else None,
            receipt_number=payload.get("receipt_number"),
            kind=payload.get("kind", "fee"),
            raw=dict(payload)
        )


class MpesaStkPushProvider(PaymentProvider):
    """
    M-Pesa client: STK push for fee charges, B2C for refunds and disbursements
    """

    name = "mpesa"

    def __init__(self, base_url: str, api_key: str, shortcode: str, callback_url: str,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.shortcode = shortcode
        self.callback_url = callback_url
        self._client = httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())
        if response.status_code != 200:
            logger.warning(f"M-Pesa returned {response.status_code}: {response.text}")
            raise ProviderError(f"M-Pesa request failed with status {response.status_code}")
        return response.json()

    def charge(self, phone_number, amount, reference, method):
        timestamp = time.strftime("%Y%m%d%H%M%S")
        password = base64.b64encode(f"{self.shortcode}{self.api_key}{timestamp}".encode()).decode()
        data = self._post("/mpesa/stkpush/v1/processrequest", {
            "BusinessShortCode": self.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": reference,
            "TransactionDesc": "Loan processing fee",
        })
        if str(data.get("ResponseCode")) != "0":
            raise ProviderError(data.get("ResponseDescription") or "STK push was not accepted", details=data)
        return ChargeResult(transaction_id=data["CheckoutRequestID"], synchronous=False, raw=data)

    def _b2c(self, phone_number: str, amount: Decimal, remarks: str, occasion: str) -> RefundResult:
        data = self._post("/mpesa/b2c/v1/paymentrequest", {
            "CommandID": "BusinessPayment",
            "Amount": int(amount),
            "PartyA": self.shortcode,
            "PartyB": phone_number,
            "Remarks": remarks,
            "Occasion": occasion,
            "ResultURL": self.callback_url,
        })
        accepted = str(data.get("ResponseCode")) == "0"
        return RefundResult(
            transaction_id=data.get("ConversationID") if accepted else None,
            success=accepted,
            raw=data
        )

    def refund(self, phone_number, amount, original_reference, reason):
        return self._b2c(phone_number, amount, f"Refund: {reason}", original_reference)

    def disburse(self, phone_number, amount, reference):
        return self._b2c(phone_number, amount, "Loan disbursement", reference)

    def parse_callback(self, payload, headers=None):
        return parse_stk_callback(payload)

    def close(self):
        self._client.close()


class FlutterwaveProvider(PaymentProvider):
    """
    Flutterwave client: mobile money charges, transfers for refunds and
    disbursements, webhooks authenticated by the shared ``verif-hash``
    """

    name = "flutterwave"

    def __init__(self, base_url: str, secret_key: str, secret_hash: str = "",
                 currency: str = "KES", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.secret_hash = secret_hash
        self.currency = currency
        self._client = httpx.Client(timeout=timeout)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.post(
            f"{self.base_url}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {self.secret_key}"}
        )
        if response.status_code not in (200, 201):
            logger.warning(f"Flutterwave returned {response.status_code}: {response.text}")
            raise ProviderError(f"Flutterwave request failed with status {response.status_code}")
        return response.json()

    def charge(self, phone_number, amount, reference, method):
        data = self._post("/charges?type=mpesa", {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": self.currency,
            "phone_number": phone_number,
            "email": f"{phone_number}@customers.invalid",
        })
        if data.get("status") != "success":
            raise ProviderError(data.get("message") or "Payment initialization failed", details=data)
        return ChargeResult(transaction_id=reference, synchronous=False, raw=data)

    def _transfer(self, phone_number: str, amount: Decimal, reference: str, narration: str) -> RefundResult:
        data = self._post("/transfers", {
            "account_bank": "MPS",
            "account_number": phone_number,
            "amount": str(amount),
            "currency": self.currency,
            "reference": reference,
            "narration": narration,
        })
        accepted = data.get("status") == "success"
        transfer_id = (data.get("data") or {}).get("id")
        return RefundResult(
            transaction_id=str(transfer_id) if accepted and transfer_id is not None else None,
            success=accepted,
            raw=data
        )

    def refund(self, phone_number, amount, original_reference, reason):
        return self._transfer(phone_number, amount, f"refund-{original_reference}", f"Refund: {reason}")

    def disburse(self, phone_number, amount, reference):
        return self._transfer(phone_number, amount, reference, "Loan disbursement")

    def parse_callback(self, payload, headers=None):
        return parse_flutterwave_webhook(payload, headers, self.secret_hash)

    def close(self):
        self._client.close()


def parse_stk_callback(payload: Mapping[str, Any]) -> Optional[CallbackResult]:
    """
    Normalize an M-Pesa STK push callback

    ``Body.stkCallback`` carries ``ResultCode`` (0 is success),
    ``CheckoutRequestID`` and, on success, ``CallbackMetadata.Item`` name/value
    pairs including ``Amount`` and ``MpesaReceiptNumber``.
    """
    stk = (payload.get("Body") or {}).get("stkCallback")
    if not stk or not stk.get("CheckoutRequestID"):
        return None

    items = {
        item.get("Name"): item.get("Value")
        for item in (stk.get("CallbackMetadata") or {}).get("Item", [])
    }
    amount = items.get("Amount")
    receipt = items.get("MpesaReceiptNumber")
    return CallbackResult(
        transaction_reference=stk["CheckoutRequestID"],
        success=str(stk.get("ResultCode")) == "0",
        amount=to_amount(amount) if amount is not None else None,
        receipt_number=str(receipt) if receipt is not None else None,
        raw=dict(payload)
    )


def parse_flutterwave_webhook(payload: Mapping[str, Any], headers: Optional[Mapping[str, str]] = None,
                              secret_hash: str = "") -> Optional[CallbackResult]:
    """
    Normalize a Flutterwave webhook

    When ``secret_hash`` is set the ``verif-hash`` header (or body field)
    must match it. Statuses other than successful/failed carry no result.

    Raises:
        PermissionDenied: signature mismatch
    """
    if secret_hash:
        signature = None
        if headers:
            signature = {k.lower(): v for k, v in headers.items()}.get("verif-hash")
        signature = signature or payload.get("verif-hash")
        if signature != secret_hash:
            raise PermissionDenied("Invalid webhook signature")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    reference = data.get("tx_ref")
    status = data.get("status")
    if not reference or status not in ("successful", "failed"):
        return None
    amount = data.get("amount")
    flw_id = data.get("id")
    return CallbackResult(
        transaction_reference=reference,
        success=status == "successful",
        amount=to_amount(amount) if amount is not None else None,
        receipt_number=str(flw_id) if flw_id is not None else None,
        raw=dict(payload)
    )


_METHOD_DESCRIPTIONS = {
    PaymentMethod.MOBILE_MONEY_PUSH: ("Mobile money (STK push)", "Approve the prompt sent to your phone"),
    PaymentMethod.MOBILE_MONEY_DIRECT_DEBIT: ("Mobile money direct debit", "Charged immediately from your wallet"),
    PaymentMethod.CARD: ("Card payment", "Visa, Mastercard and other cards"),
    PaymentMethod.BANK_TRANSFER: ("Bank transfer", "Confirmed once the transfer clears"),
    PaymentMethod.MOCK: ("Test payment", "Development only; always succeeds"),
}


class PaymentGateway:
    """
    Routes payment calls to providers by method, bounded by a timeout

    Every call runs on a worker thread and is abandoned after
    ``timeout_seconds``; the provider may still complete it afterwards,
    which is why callers treat ``ProviderTimeout`` like any other failure
    and never retry automatically.
    """

    def __init__(self, providers: Dict[PaymentMethod, PaymentProvider],
                 timeout_seconds: float = 30.0, max_workers: int = 8):
        if not providers:
            raise ValueError("At least one payment provider is required")
        self.providers = dict(providers)
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="payment")

    def provider_for(self, method: PaymentMethod) -> PaymentProvider:
        provider = self.providers.get(method)
        if provider is None:
            raise ValidationError(f"Payment method {method.value} is not available")
        return provider

    def _call(self, operation: str, fn: Callable, *args) -> Any:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            future.cancel()
            logger.error(f"Payment {operation} timed out after {self.timeout_seconds}s")
            raise ProviderTimeout(f"Payment provider did not respond to {operation} in time")
        except LendingError:
            raise
        except httpx.HTTPError as e:
            logger.error(f"Payment {operation} transport error: {e}")
            raise ProviderError(f"Payment provider unreachable: {e}")
        except Exception as e:
            logger.error(f"Payment {operation} failed: {e}")
            raise ProviderError(f"Payment {operation} failed: {e}")

    def charge(self, method: PaymentMethod, phone_number: str, amount: Decimal,
               reference: str) -> ChargeResult:
        provider = self.provider_for(method)
        return self._call("charge", provider.charge, phone_number, amount, reference, method)

    def refund(self, method: PaymentMethod, phone_number: str, amount: Decimal,
               original_reference: str, reason: str) -> RefundResult:
        provider = self.provider_for(method)
        return self._call("refund", provider.refund, phone_number, amount, original_reference, reason)

    def disburse(self, method: PaymentMethod, phone_number: str, amount: Decimal,
                 reference: str) -> RefundResult:
        provider = self.provider_for(method)
        return self._call("disburse", provider.disburse, phone_number, amount, reference)

    def available_methods(self) -> List[Dict[str, Any]]:
        methods = []
        for method in PaymentMethod:
            if method not in self.providers:
                continue
            name, description = _METHOD_DESCRIPTIONS[method]
            methods.append({
                "id": method.value,
                "name": name,
                "description": description,
                "provider": self.providers[method].name,
                "synchronous": method.is_synchronous,
            })
        return methods

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        seen = set()
        for provider in self.providers.values():
            if id(provider) not in seen:
                seen.add(id(provider))
                provider.close()
