"""
Bill Payment Tests
Electricity companies, meters, convenience fees, chat parsing and
the hold-then-settle rule
"""

from decimal import Decimal

import pytest

from models import TransactionStatus
from services.bill_payment_service import (
    bill_quote, normalize_disco, parse_bill_request, pay_electricity_bill, validate_meter
)
from utils.exception_handler import InsufficientFunds, ProviderRejected, ValidationError
from tests.wallet_test_foundation import ledger_balance, load_transaction, sent_texts, wallet_balance


class TestBillRequest:
    """Discos, meters and free-text requests"""

    @pytest.mark.parametrize("raw,expected", [
        ("ikeja", "IKEJA"),
        ("IKEDC", "IKEJA"),
        ("port harcourt", "PORT HARCOURT"),
        ("phed", "PORT HARCOURT"),
        ("aedc", "ABUJA"),
    ])
    def test_disco_names(self, raw, expected):
        assert normalize_disco(raw) == expected

    def test_unknown_disco(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_disco("lagos power")
        assert exc_info.value.field == "disco"

    @pytest.mark.parametrize("meter_type,meter_number", [
        ("smart", "45012345678"),
        ("prepaid", "12345"),
        ("postpaid", "4501234567x"),
    ])
    def test_bad_meters(self, meter_type, meter_number):
        with pytest.raises(ValidationError):
            validate_meter(meter_type, meter_number)

    def test_fee_quote(self):
        assert bill_quote("5000") == {
            "amount": Decimal("5000.00"), "fee": Decimal("75.00"), "total": Decimal("5075.00"),
        }
        assert bill_quote("1000")["fee"] == Decimal("25.00"), "Minimum fee applies"

    def test_parse_request(self):
        draft = parse_bill_request("pay 5k electricity ikedc postpaid 45012345678")
        assert draft == {
            "disco": "IKEJA", "meterType": "postpaid", "meterNumber": "45012345678", "amount": "5000.00",
        }

    def test_parse_defaults_to_prepaid(self):
        assert parse_bill_request("electricity eko 2000 0101234567890")["meterType"] == "prepaid"

    def test_parse_without_meter(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_bill_request("pay 5000 electricity ikeja")
        assert exc_info.value.field == "meterNumber"


class TestPayElectricityBill:
    """Reseller outcome drives the ledger"""

    @pytest.mark.asyncio
    async def test_prepaid_payment_returns_token(self, user_factory, mock_bilal, mock_whatsapp):
        user_id = user_factory(balance="10000")

        result = await pay_electricity_bill(
            user_id, "ikeja", "prepaid", "45012345678", "5000", "1234", reference="BILL-T-1"
        )

        assert result["newBalance"] == Decimal("4925.00"), "Bill plus the 1.5% fee"
        assert result["token"] == "1234-5678-9012-3456-7890"
        txn = load_transaction("BILL-T-1")
        assert txn.status == TransactionStatus.COMPLETED.value
        assert txn.category == "utility_bill"
        assert txn.fee == Decimal("75.00")
        assert txn.meta["feeBreakdown"]["policy"] == "electricity_percentage"
        assert ledger_balance(user_id) == Decimal("4925.00")
        mock_bilal.pay_electricity.assert_awaited_once_with(
            "IKEJA", "prepaid", "45012345678", Decimal("5000.00"), request_id="BILL-T-1"
        )
        assert any("Meter token: 1234-5678-9012-3456-7890" in t for t in sent_texts(mock_whatsapp))

    @pytest.mark.asyncio
    async def test_rejection_releases_the_hold(self, user_factory, mock_bilal):
        mock_bilal.pay_electricity.side_effect = ProviderRejected("Invalid meter")
        user_id = user_factory(balance="10000")

        with pytest.raises(ProviderRejected):
            await pay_electricity_bill(
                user_id, "EKO", "postpaid", "45012345678", "5000", "1234", reference="BILL-T-2"
            )

        txn = load_transaction("BILL-T-2")
        assert txn.status == TransactionStatus.FAILED.value
        assert txn.failure_reason == "Invalid meter"
        assert wallet_balance(user_id) == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_fee_counts_towards_funds(self, user_factory, mock_bilal):
        user_id = user_factory(balance="5050")

        with pytest.raises(InsufficientFunds) as exc_info:
            await pay_electricity_bill(
                user_id, "EKO", "prepaid", "45012345678", "5000", "1234", reference="BILL-T-3"
            )

        assert exc_info.value.required == Decimal("5075.00")
        assert load_transaction("BILL-T-3") is None
        mock_bilal.pay_electricity.assert_not_awaited()
