"""
Lending System Container

Builds every component from configuration and wires them together.
"""

from typing import Dict, Optional

from .admin import AdminDecisionEngine
from .audit import AuditTrail
from .config import LendingConfig, get_config
from .events import EventDispatcher
from .loans import LoanStateMachine
from .logging_config import get_logger
from .notifications import NotificationService, WebhookChannel
from .payments import (
    FlutterwaveProvider, MockPaymentProvider, MpesaStkPushProvider,
    PaymentGateway, PaymentMethod, PaymentProvider
)
from .settings import SystemSettings
from .storage import StorageInterface, create_storage
from .transactions import TransactionLedger
from .users import UserManager


class LendingSystem:
    """Micro-lending core with all components initialized"""

    def __init__(self, config: Optional[LendingConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 providers: Optional[Dict[PaymentMethod, PaymentProvider]] = None,
                 background_events: Optional[bool] = None):
        self.config = config or get_config()
        self.logger = get_logger("microlending.system")

        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)

        if background_events is None:
            background_events = self.config.background_events
        self.events = EventDispatcher(background=background_events)

        self.audit_trail = AuditTrail(self.storage)
        self.settings = SystemSettings(self.storage, self.config)
        self.users = UserManager(self.storage)
        self.ledger = TransactionLedger(self.storage)
        self.gateway = PaymentGateway(
            providers or self._create_providers(),
            timeout_seconds=self.config.payment_timeout_seconds,
            max_workers=self.config.payment_worker_threads
        )
        self.loans = LoanStateMachine(
            self.storage, self.users, self.settings, self.ledger, self.gateway, self.events
        )
        self.admin = AdminDecisionEngine(
            self.loans,
            self.audit_trail if self.config.enable_audit_logging else None,
            self.settings,
            self.events
        )

        self.notifications = NotificationService(
            self.storage, self.users,
            webhook=WebhookChannel(self.config.notification_webhook_url)
            if self.config.notification_webhook_url else None,
            currency=self.config.default_currency
        )
        if self.config.enable_notifications:
            self.notifications.register(self.events)

    def _create_providers(self) -> Dict[PaymentMethod, PaymentProvider]:
        """Build providers based on configuration"""
        mock = MockPaymentProvider()
        if self.config.mock_payments:
            return {method: mock for method in PaymentMethod}

        providers: Dict[PaymentMethod, PaymentProvider] = {PaymentMethod.MOCK: mock}
        if self.config.mpesa_base_url:
            mpesa = MpesaStkPushProvider(
                base_url=self.config.mpesa_base_url,
                api_key=self.config.mpesa_api_key,
                shortcode=self.config.mpesa_shortcode,
                callback_url=self.config.mpesa_callback_url,
                timeout=self.config.payment_timeout_seconds
            )
            providers[PaymentMethod.MOBILE_MONEY_PUSH] = mpesa
        if self.config.flutterwave_secret_key:
            flutterwave = FlutterwaveProvider(
                base_url=self.config.flutterwave_base_url,
                secret_key=self.config.flutterwave_secret_key,
                secret_hash=self.config.flutterwave_secret_hash,
                currency=self.config.default_currency,
                timeout=self.config.payment_timeout_seconds
            )
            providers.setdefault(PaymentMethod.MOBILE_MONEY_PUSH, flutterwave)
            providers[PaymentMethod.BANK_TRANSFER] = flutterwave
        return providers

    def close(self) -> None:
        self.events.close()
        self.gateway.close()
        self.storage.close()


_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Global system instance, created on first use"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system


def set_lending_system(system: Optional[LendingSystem]) -> None:
    global _lending_system
    _lending_system = system
