"""
Tests for the system settings store and the loan settings snapshot
"""

import pytest
from decimal import Decimal

from microlending.config import LendingConfig
from microlending.errors import NotFound, PermissionDenied, ValidationError
from microlending.settings import (
    APPLICATION_FEE, APPLICATION_FEE_PERCENTAGE, MAX_LOAN_AMOUNT, MIN_LOAN_AMOUNT,
    LoanSettings, SystemSetting, SystemSettings
)
from microlending.storage import InMemoryStorage


class TestLoanSettings:

    def test_fixed_fee(self):
        settings = LoanSettings(Decimal("1000"), Decimal("500000"), Decimal("50.00"))
        assert settings.fee_for(Decimal("20000")) == Decimal("50.00")

    def test_percentage_overrides_fixed_fee(self):
        settings = LoanSettings(Decimal("1000"), Decimal("500000"), Decimal("50.00"), Decimal("1.5"))
        assert settings.fee_for(Decimal("10001")) == Decimal("150.02")

    def test_snapshot_is_frozen(self):
        settings = LoanSettings(Decimal("1000"), Decimal("500000"), Decimal("50.00"))
        with pytest.raises(AttributeError):
            settings.application_fee = Decimal("1")


class TestSystemSettings:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.settings = SystemSettings(self.storage, LendingConfig(storage_backend="memory", default_application_fee="75"))

    def test_defaults_are_seeded(self):
        snapshot = self.settings.resolve()

        assert snapshot.min_loan_amount == Decimal("1000.00")
        assert snapshot.max_loan_amount == Decimal("500000.00")
        assert snapshot.application_fee == Decimal("75.00")
        assert snapshot.application_fee_percentage is None
        assert snapshot.currency == "KES"

        grouped = self.settings.list_settings()
        assert [s.key for s in grouped["loans"]] == sorted(
            [MIN_LOAN_AMOUNT, MAX_LOAN_AMOUNT, APPLICATION_FEE, APPLICATION_FEE_PERCENTAGE]
        )

    def test_seeding_keeps_existing_values(self):
        self.settings.update(APPLICATION_FEE, "120")
        reopened = SystemSettings(self.storage, LendingConfig(storage_backend="memory"))
        assert reopened.resolve().application_fee == Decimal("120.00")

    def test_update_returns_old_and_new(self):
        old_value, new_value = self.settings.update(APPLICATION_FEE, 100, actor_id="admin-1")

        assert old_value == "75"
        assert new_value == "100.00"
        assert self.settings.get(APPLICATION_FEE) == "100.00"
        stored = SystemSetting.from_dict(self.storage.load("system_settings", APPLICATION_FEE))
        assert stored.last_modified_by == "admin-1"

    def test_percentage_can_be_cleared(self):
        self.settings.update(APPLICATION_FEE_PERCENTAGE, "2")
        assert self.settings.resolve().application_fee_percentage == Decimal("2.00")

        self.settings.update(APPLICATION_FEE_PERCENTAGE, None)
        assert self.settings.resolve().application_fee_percentage is None

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            self.settings.update(APPLICATION_FEE, "abc")
        with pytest.raises(ValidationError):
            self.settings.update(APPLICATION_FEE, "-5")
        with pytest.raises(ValidationError):
            self.settings.update(APPLICATION_FEE_PERCENTAGE, "150")

    def test_bounds_stay_coherent(self):
        with pytest.raises(ValidationError):
            self.settings.update(MIN_LOAN_AMOUNT, "600000")
        assert self.settings.resolve().min_loan_amount == Decimal("1000.00")

    def test_unknown_key(self):
        with pytest.raises(NotFound):
            self.settings.update("interestRate", "5")

    def test_read_only_setting(self):
        setting = SystemSetting.from_dict(self.storage.load("system_settings", MAX_LOAN_AMOUNT))
        setting.is_editable = False
        self.storage.save("system_settings", MAX_LOAN_AMOUNT, setting.to_dict())

        with pytest.raises(PermissionDenied):
            self.settings.update(MAX_LOAN_AMOUNT, "100000")
