"""
Fee Service Tests
Bank-transfer strategies, incoming threshold, bill payment bounds,
data margin bookkeeping and the maintenance fee skip rule
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from config import Config
from services.fee_service import FeeService, FeeServiceType


class TestBankTransferFee:
    """Flat and tiered outbound transfer fees"""

    def test_flat_fee_is_added_to_the_amount(self):
        breakdown = FeeService.calculate(FeeServiceType.BANK_TRANSFER, Decimal("1000"), strategy="flat")

        assert breakdown.total_fee == Decimal("15.00"), f"Expected ₦15 flat fee, got {breakdown.total_fee}"
        assert breakdown.total_amount == Decimal("1015.00")
        assert breakdown.policy == "bank_transfer_flat"

    @pytest.mark.parametrize("amount,expected_fee", [
        ("500", "15"),
        ("10000", "15"),
        ("10000.01", "25"),
        ("50000", "25"),
        ("50001", "50"),
        ("1000000", "50"),
    ])
    def test_tiered_schedule(self, amount, expected_fee):
        breakdown = FeeService.calculate("bank_transfer", amount, strategy="tiered")
        assert breakdown.total_fee == Decimal(expected_fee), f"{amount} should cost ₦{expected_fee}"

    def test_configured_strategy_is_the_default(self):
        with patch.object(Config, 'TRANSFER_FEE_STRATEGY', 'tiered'):
            breakdown = FeeService.calculate(FeeServiceType.BANK_TRANSFER, Decimal("60000"))
        assert breakdown.total_fee == Decimal("50.00")

    def test_unknown_strategy_falls_back_to_flat(self):
        breakdown = FeeService.calculate(FeeServiceType.BANK_TRANSFER, Decimal("60000"), strategy="bogus")
        assert breakdown.total_fee == Decimal("15.00")

    def test_breakdown_serializes_for_transaction_metadata(self):
        data = FeeService.calculate(FeeServiceType.BANK_TRANSFER, Decimal("1000"), strategy="flat").to_dict()
        assert data["totalFee"] == "15.00"
        assert data["totalAmount"] == "1015.00"
        assert data["service"] == "bank_transfer"


class TestOtherServices:
    """Incoming transfers, bills, data, airtime and maintenance"""

    def test_incoming_transfer_free_up_to_threshold(self):
        assert FeeService.calculate(FeeServiceType.INCOMING_TRANSFER, Decimal("1000")).total_fee == Decimal("0")

    def test_incoming_transfer_percentage_above_threshold(self):
        breakdown = FeeService.calculate(FeeServiceType.INCOMING_TRANSFER, Decimal("2000"))
        assert breakdown.total_fee == Decimal("10.00"), "0.5% of ₦2,000 is ₦10"

    @pytest.mark.parametrize("service,amount,expected", [
        (FeeServiceType.ELECTRICITY, "1000", "25.00"),      # 15 -> raised to minimum
        (FeeServiceType.ELECTRICITY, "10000", "150.00"),
        (FeeServiceType.ELECTRICITY, "100000", "500.00"),   # 1500 -> capped
        (FeeServiceType.CABLE, "5000", "100.00"),
        (FeeServiceType.WATER, "500", "25.00"),
        (FeeServiceType.INTERNET, "50000", "500.00"),
    ])
    def test_utility_fees_respect_bounds(self, service, amount, expected):
        assert FeeService.calculate(service, amount).total_fee == Decimal(expected)

    def test_data_margin_is_recorded_not_charged(self):
        breakdown = FeeService.calculate(
            FeeServiceType.DATA, Decimal("600"), selling_price=Decimal("600"), retail_price=Decimal("550")
        )
        assert breakdown.total_fee == Decimal("0")
        assert breakdown.total_amount == Decimal("600.00"), "User pays the selling price only"
        assert breakdown.details["margin"] == "50.00"

    def test_airtime_is_free_for_the_user(self):
        breakdown = FeeService.calculate(FeeServiceType.AIRTIME, Decimal("500"))
        assert breakdown.total_fee == Decimal("0")
        assert breakdown.total_amount == Decimal("500.00")

    def test_internal_transfer_is_free(self):
        assert FeeService.calculate(FeeServiceType.INTERNAL_TRANSFER, "5000").total_fee == Decimal("0")

    def test_maintenance_fee_charged_when_balance_covers_it(self):
        breakdown = FeeService.calculate(FeeServiceType.MAINTENANCE, Decimal("5000"), balance=Decimal("5000"))
        assert breakdown.total_fee == Decimal("100.00")
        assert breakdown.policy == "maintenance_monthly"

    def test_maintenance_fee_skipped_on_low_balance(self):
        breakdown = FeeService.calculate(FeeServiceType.MAINTENANCE, Decimal("50"), balance=Decimal("50"))
        assert breakdown.total_fee == Decimal("0")
        assert breakdown.policy == "maintenance_skipped_low_balance"

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            FeeService.calculate(FeeServiceType.BANK_TRANSFER, Decimal("-1"))
