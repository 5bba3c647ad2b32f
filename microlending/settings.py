"""
System Settings Module

Key/value settings with defaults, and the ``LoanSettings`` snapshot that the
eligibility evaluator and the loan state machine receive. Operations resolve
the snapshot once and use it throughout, so a concurrent settings change
never splits one operation across two fee schedules.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .config import LendingConfig, get_config
from .errors import NotFound, PermissionDenied, ValidationError
from .logging_config import get_logger, log_action
from .money import percentage_of, to_amount
from .storage import StorageInterface, StorageRecord


MIN_LOAN_AMOUNT = "minLoanAmount"
MAX_LOAN_AMOUNT = "maxLoanAmount"
APPLICATION_FEE = "applicationFee"
APPLICATION_FEE_PERCENTAGE = "applicationFeePercentage"

_NUMERIC_KEYS = (MIN_LOAN_AMOUNT, MAX_LOAN_AMOUNT, APPLICATION_FEE, APPLICATION_FEE_PERCENTAGE)


@dataclass(frozen=True)
class LoanSettings:
    """Immutable snapshot of the settings a loan operation depends on"""
    min_loan_amount: Decimal
    max_loan_amount: Decimal
    application_fee: Decimal
    application_fee_percentage: Optional[Decimal] = None
    currency: str = "KES"

    def fee_for(self, amount: Decimal) -> Decimal:
        """Processing fee for a loan of ``amount``; a percentage overrides the fixed fee"""
        if self.application_fee_percentage is not None:
            return percentage_of(amount, self.application_fee_percentage)
        return self.application_fee


@dataclass
class SystemSetting(StorageRecord):
    """One stored setting"""
    key: str
    value: Any
    description: str = ""
    category: str = "general"
    is_editable: bool = True
    last_modified_by: Optional[str] = None


class SystemSettings:
    """Settings store backed by the ``system_settings`` table"""

    def __init__(self, storage: StorageInterface, config: Optional[LendingConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = "system_settings"
        self.logger = get_logger("microlending.settings")
        self._seed_defaults()

    def _defaults(self) -> List[Tuple[str, Any, str]]:
        return [
            (MIN_LOAN_AMOUNT, self.config.default_min_loan_amount, "Smallest loan a user may apply for"),
            (MAX_LOAN_AMOUNT, self.config.default_max_loan_amount, "Largest loan a user may apply for"),
            (APPLICATION_FEE, self.config.default_application_fee, "Fixed processing fee"),
            (APPLICATION_FEE_PERCENTAGE, None, "Percentage fee; overrides the fixed fee when set"),
        ]

    def _seed_defaults(self) -> None:
        now = datetime.now(timezone.utc)
        for key, value, description in self._defaults():
            if self.storage.load(self.table_name, key) is None:
                setting = SystemSetting(
                    id=key, created_at=now, updated_at=now,
                    key=key, value=value, description=description, category="loans"
                )
                self.storage.save(self.table_name, key, setting.to_dict())

    def get(self, key: str, default: Any = None) -> Any:
        data = self.storage.load(self.table_name, key)
        if data is None:
            return default
        return data.get('value', default)

    def list_settings(self) -> Dict[str, List[SystemSetting]]:
        """All settings grouped by category"""
        grouped: Dict[str, List[SystemSetting]] = {}
        for data in self.storage.load_all(self.table_name):
            setting = SystemSetting.from_dict(data)
            grouped.setdefault(setting.category, []).append(setting)
        for settings in grouped.values():
            settings.sort(key=lambda s: s.key)
        return grouped

    def resolve(self) -> LoanSettings:
        """Resolve the loan settings snapshot used by one operation"""
        percentage = self.get(APPLICATION_FEE_PERCENTAGE)
        return LoanSettings(
            min_loan_amount=to_amount(self.get(MIN_LOAN_AMOUNT, self.config.default_min_loan_amount)),
            max_loan_amount=to_amount(self.get(MAX_LOAN_AMOUNT, self.config.default_max_loan_amount)),
            application_fee=to_amount(self.get(APPLICATION_FEE, self.config.default_application_fee)),
            application_fee_percentage=Decimal(str(percentage)) if percentage not in (None, "") else None,
            currency=self.config.default_currency
        )

    def update(self, key: str, value: Any, actor_id: Optional[str] = None) -> Tuple[Any, Any]:
        """
        Change one setting

        Args:
            key: Setting key
            value: New value
            actor_id: Admin making the change

        Returns:
            (old_value, new_value) for the audit record

        Raises:
            NotFound: unknown key
            PermissionDenied: setting is not editable
            ValidationError: value is not acceptable for the key
        """
        with self.storage.atomic():
            data = self.storage.load(self.table_name, key)
            if data is None:
                raise NotFound(f"Setting {key} not found")
            setting = SystemSetting.from_dict(data)
            if not setting.is_editable:
                raise PermissionDenied(f"Setting {key} cannot be modified")

            new_value = self._validate(key, value)
            old_value = setting.value
            setting.value = new_value
            setting.last_modified_by = actor_id
            setting.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, key, setting.to_dict())

            # Bounds must stay coherent after the write
            snapshot = self.resolve()
            if snapshot.min_loan_amount > snapshot.max_loan_amount:
                raise ValidationError("minLoanAmount cannot exceed maxLoanAmount")

        log_action(
            self.logger, "info", f"Setting updated: {key}",
            user_id=actor_id, action="update_setting", resource=f"setting:{key}",
            extra={"old_value": old_value, "new_value": new_value}
        )
        return old_value, new_value

    def _validate(self, key: str, value: Any) -> Any:
        if key not in _NUMERIC_KEYS:
            return value
        if value is None and key == APPLICATION_FEE_PERCENTAGE:
            return None
        try:
            amount = to_amount(value)
        except ValueError as e:
            raise ValidationError(str(e))
        if amount < 0:
            raise ValidationError(f"{key} must not be negative")
        if key == APPLICATION_FEE_PERCENTAGE and amount > 100:
            raise ValidationError("applicationFeePercentage must be between 0 and 100")
        return str(amount)
