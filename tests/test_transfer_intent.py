"""
Transfer Intent Tests
Chat text to transfer draft: amounts, account numbers, banks and
nickname resolution against saved beneficiaries
"""

from decimal import Decimal

import pytest

from services import beneficiary_service
from services.bank_directory import bank_name_for_code, find_bank_in_text, resolve_institution_code
from services.transfer_intent_service import (
    extract_account_number, extract_nickname, is_transfer_intent, parse_amount_text, resolve_transfer_intent
)
from utils.exception_handler import ProviderUnavailable, ValidationError


class TestParsing:
    """Pure text parsing"""

    @pytest.mark.parametrize("text,expected", [
        ("send 1k to my mum", "1000.00"),
        ("send 2.5k to bro", "2500.00"),
        ("transfer 5,000 to 0123456789 gtb", "5000.00"),
        ("pay ₦750 to landlord", "750.00"),
        ("send 1m to dad", "1000000.00"),
        ("send 3 thousand to sis", "3000.00"),
        ("send 0123456789 gtb 200", "200.00"),
    ])
    def test_amounts(self, text, expected):
        assert parse_amount_text(text) == Decimal(expected), f"{text!r} should parse to {expected}"

    def test_no_amount(self):
        assert parse_amount_text("send money to 0123456789") is None
        assert parse_amount_text("") is None

    def test_account_number(self):
        assert extract_account_number("send 5k to 0123456789 gtb") == "0123456789"
        assert extract_account_number("send 5k to 01234567891") is None, "Eleven digits is not an account"

    @pytest.mark.parametrize("text,nickname", [
        ("send 1k to my mum", "mum"),
        ("send 1k to My Mum please", "mum"),
        ("send 2k to big bro now", "big bro"),
        ("send 5k", None),
    ])
    def test_nickname(self, text, nickname):
        assert extract_nickname(text) == nickname

    def test_transfer_keywords(self):
        assert is_transfer_intent("Send 1k to my mum")
        assert is_transfer_intent("pay landlord 50k")
        assert not is_transfer_intent("balance")


class TestResolveTransferIntent:
    """Drafts resolved against beneficiaries and name enquiry"""

    @pytest.mark.asyncio
    async def test_nickname_beats_account_name_match(self, user_factory):
        user_id = user_factory()
        await beneficiary_service.auto_save(
            user_id, "9072874728", "100004", "ADA MUMUNI", bank_name="Opay", nickname="mum"
        )
        await beneficiary_service.auto_save(user_id, "2233445566", "000058", "Musa Abdulkadir")

        draft = await resolve_transfer_intent(user_id, "send 1k to my mum")

        assert draft["amount"] == "1000.00"
        assert draft["accountNumber"] == "9072874728"
        assert draft["bankCode"] == "100004"
        assert draft["nickname"] == "mum"
        assert draft["beneficiaryId"] is not None
        assert draft["reference"].startswith("TRF")

    @pytest.mark.asyncio
    async def test_account_name_fallback(self, user_factory):
        user_id = user_factory()
        await beneficiary_service.auto_save(user_id, "2233445566", "000058", "Musa Abdulkadir")

        draft = await resolve_transfer_intent(user_id, "send 2k to musa")

        assert draft["accountNumber"] == "2233445566"
        assert draft["accountName"] == "Musa Abdulkadir"
        assert draft["nickname"] == "musa"

    @pytest.mark.asyncio
    async def test_unknown_nickname(self, user_factory):
        user_id = user_factory()

        with pytest.raises(ValidationError) as exc_info:
            await resolve_transfer_intent(user_id, "send 1k to my uncle")

        assert exc_info.value.field == "nickname"
        assert "uncle" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_account_number_with_bank(self, user_factory, mock_rubies):
        user_id = user_factory()

        draft = await resolve_transfer_intent(user_id, "transfer 5,000 to 0123456789 gtbank")

        assert draft["accountNumber"] == "0123456789"
        assert draft["bankCode"] == "000058"
        assert draft["bankName"] == "Guaranty Trust Bank"
        assert draft["accountName"] == "JOHN DOE"
        mock_rubies.name_enquiry.assert_awaited_once_with("0123456789", "000058")

    @pytest.mark.asyncio
    async def test_account_number_without_bank(self, user_factory):
        user_id = user_factory()

        with pytest.raises(ValidationError) as exc_info:
            await resolve_transfer_intent(user_id, "send 5k to 0123456789")

        assert exc_info.value.field == "bankCode"

    @pytest.mark.asyncio
    async def test_missing_amount(self, user_factory):
        user_id = user_factory()
        with pytest.raises(ValidationError) as exc_info:
            await resolve_transfer_intent(user_id, "send to my mum")
        assert exc_info.value.field == "amount"


class TestBankDirectory:
    """Institution-code resolution"""

    @pytest.mark.asyncio
    async def test_six_digit_code_passes_through(self):
        assert await resolve_institution_code("000058") == "000058"

    @pytest.mark.asyncio
    async def test_test_bank_code_mapped(self):
        assert await resolve_institution_code("010") == "000010"

    @pytest.mark.asyncio
    async def test_cbn_code_through_static_table(self):
        assert await resolve_institution_code("058") == "000058"

    @pytest.mark.asyncio
    async def test_provider_bank_list_wins(self, mock_rubies):
        mock_rubies.get_bank_list.return_value = [{"name": "Zenith Bank Plc", "code": "999057"}]
        assert await resolve_institution_code(bank_name="Zenith Bank") == "999057"

    @pytest.mark.asyncio
    async def test_provider_outage_falls_back_to_static(self, mock_rubies):
        mock_rubies.get_bank_list.side_effect = ProviderUnavailable("rubies unavailable")
        assert await resolve_institution_code(bank_name="Kuda") == "000092"

    @pytest.mark.asyncio
    async def test_unknown_bank(self):
        with pytest.raises(ValidationError):
            await resolve_institution_code("999")
        with pytest.raises(ValidationError):
            await resolve_institution_code(bank_name="Bank of Atlantis")

    def test_bank_in_text(self):
        assert find_bank_in_text("send 5k to 0123456789 gtbank") == "Guaranty Trust Bank"
        assert find_bank_in_text("to 0123456789 first bank pls") == "First Bank"
        assert find_bank_in_text("send 5k to mum") is None

    def test_bank_name_for_code(self):
        assert bank_name_for_code("058") == "Guaranty Trust Bank"
        assert bank_name_for_code(None) is None
