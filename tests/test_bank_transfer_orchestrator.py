"""
Bank Transfer Orchestrator Tests
End-to-end outbound transfer: fee, debit, hidden platform-fee sibling,
beneficiary prompt, provider outages and rejections, limits and replays
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from config import Config
from models import TransactionCategory, TransactionStatus
from services.bank_transfer_service import process_bank_transfer
from services import wallet_service
from services.beneficiary_service import auto_save
from jobs.stuck_transaction_sweeper import timeout_stuck_transactions
from utils.conversation_state_helper import get_conversation_state
from utils.exception_handler import (
    AuthError, InsufficientFunds, LimitExceeded, ProviderRejected, ProviderUnavailable, ValidationError
)
from tests.wallet_test_foundation import (
    ledger_balance, load_transaction, sent_texts, user_transactions, wallet_balance
)

TEST_TRANSFER = {"accountNumber": "1001011000", "bankCode": "010", "amount": "1000", "narration": "Rent"}


class TestSuccessfulTransfer:
    """₦1,000 to the test bank from a ₦10,000 wallet"""

    @pytest.mark.asyncio
    async def test_transfer_debits_amount_fee_and_platform_fee(self, user_factory, mock_rubies, mock_whatsapp):
        user_id = user_factory(balance="10000")

        result = await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        assert result["success"] is True
        assert result["status"] == TransactionStatus.COMPLETED.value
        txn = load_transaction(result["reference"])
        assert txn.fee == Decimal("15.00")
        assert txn.total_amount == Decimal("1015.00")
        assert txn.balance_after == Decimal("8985.00"), "Transfer debit is amount + ₦15 fee"
        assert txn.recipient_details["institutionCode"] == "000010"
        assert txn.recipient_details["accountName"] == "JOHN DOE"

        fee = load_transaction(f"PFEE{result['reference']}")
        assert fee is not None, "Platform fee sibling must exist"
        assert fee.category == TransactionCategory.FEE_CHARGE.value
        assert fee.status == TransactionStatus.COMPLETED.value
        assert fee.amount == Decimal("5.00")
        assert fee.parent_reference == result["reference"]
        assert fee.is_visible_to_user is False

        assert wallet_balance(user_id) == Decimal("8980.00")
        assert result["newBalance"] == Decimal("8980.00")

    @pytest.mark.asyncio
    async def test_test_bank_code_is_mapped_for_the_provider(self, user_factory, mock_rubies):
        user_id = user_factory()

        await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        mock_rubies.name_enquiry.assert_awaited_once_with("1001011000", "000010")
        transfer_call = mock_rubies.fund_transfer.await_args_list[0]
        assert transfer_call.kwargs["bank_code"] == "000010"
        assert transfer_call.kwargs["amount"] == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_new_recipient_prompts_save_beneficiary(self, user_factory, mock_whatsapp):
        user_id = user_factory()

        result = await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        assert result["beneficiaryPrompt"] is True
        state = await get_conversation_state(user_id)
        assert state.awaiting_input == "save_beneficiary_confirmation"
        assert state.data["pendingBeneficiary"]["bankCode"] == "000010"
        assert any("as a beneficiary" in text for text in sent_texts(mock_whatsapp))

    @pytest.mark.asyncio
    async def test_saved_recipient_gets_usage_bump_not_prompt(self, user_factory):
        user_id = user_factory()
        await auto_save(user_id, "1001011000", "000010", "JOHN DOE", bank_name="Test Bank", nickname="landlord")

        result = await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        assert result["beneficiaryPrompt"] is False
        assert await get_conversation_state(user_id) is None

    @pytest.mark.asyncio
    async def test_receipt_sent(self, user_factory, mock_whatsapp):
        user_id = user_factory()

        result = await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        receipts = [t for t in sent_texts(mock_whatsapp) if "Transfer Successful" in t]
        assert len(receipts) == 1
        assert result["reference"] in receipts[0]

    @pytest.mark.asyncio
    async def test_replay_with_same_reference_returns_recorded_outcome(self, user_factory, mock_rubies):
        user_id = user_factory()
        transfer = {**TEST_TRANSFER, "reference": "TRF-REPLAY-1"}

        await process_bank_transfer(user_id, dict(transfer), "1234")
        replay = await process_bank_transfer(user_id, dict(transfer), "1234")

        assert replay["replay"] is True
        assert replay["status"] == TransactionStatus.COMPLETED.value
        assert wallet_balance(user_id) == Decimal("8980.00"), "Replay must not debit again"
        # transfer + platform fee only
        assert mock_rubies.fund_transfer.await_count == 2


class TestRejectedTransfers:
    """Nothing is debited when a precondition or the provider says no"""

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, user_factory, mock_rubies):
        user_id = user_factory(balance="900")

        with pytest.raises(InsufficientFunds) as exc_info:
            await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        assert exc_info.value.required == Decimal("1015.00")
        assert exc_info.value.available == Decimal("900.00")
        assert exc_info.value.shortfall == Decimal("115.00")
        assert user_transactions(user_id) == [], "No transaction is created"
        assert wallet_balance(user_id) == Decimal("900.00")
        mock_rubies.fund_transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_pin(self, user_factory, mock_rubies):
        user_id = user_factory()

        with pytest.raises(AuthError):
            await process_bank_transfer(user_id, dict(TEST_TRANSFER), "0000")

        mock_rubies.name_enquiry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_account_number(self, user_factory):
        user_id = user_factory()
        with pytest.raises(ValidationError):
            await process_bank_transfer(user_id, {**TEST_TRANSFER, "accountNumber": "12345"}, "1234")

    @pytest.mark.asyncio
    async def test_below_minimum(self, user_factory):
        user_id = user_factory()
        with pytest.raises(LimitExceeded) as exc_info:
            await process_bank_transfer(user_id, {**TEST_TRANSFER, "amount": "50"}, "1234")
        assert exc_info.value.limit_type == "minimum"

    @pytest.mark.asyncio
    async def test_daily_limit(self, user_factory, transaction_factory):
        user_id = user_factory(balance="100000")
        transaction_factory(user_id, "TRF-EARLIER", amount="4500", status=TransactionStatus.COMPLETED.value)

        with patch.object(Config, 'TRANSFER_DAILY_LIMIT', Decimal("5000")):
            with pytest.raises(LimitExceeded) as exc_info:
                await process_bank_transfer(user_id, dict(TEST_TRANSFER), "1234")

        assert exc_info.value.limit_type == "daily"
        assert exc_info.value.remaining == Decimal("500")

    @pytest.mark.asyncio
    async def test_provider_rejection_fails_transaction(self, user_factory, mock_rubies):
        user_id = user_factory()
        mock_rubies.fund_transfer = AsyncMock(return_value={
            "success": False,
            "status": TransactionStatus.FAILED.value,
            "responseCode": "14",
            "responseMessage": "Invalid account",
            "providerReference": None,
            "sessionId": None,
            "raw": {},
        })

        with pytest.raises(ProviderRejected) as exc_info:
            await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-REJ-1"}, "1234")

        assert exc_info.value.response_code == "14"
        txn = load_transaction("TRF-REJ-1")
        assert txn.status == TransactionStatus.FAILED.value
        assert txn.failure_reason == "Invalid account"
        assert wallet_balance(user_id) == Decimal("10000.00")
        assert load_transaction("PFEETRF-REJ-1") is None, "No platform fee on a failed transfer"


class TestFundsHeldInFlight:
    """The transfer total is held while the provider call is outstanding"""

    @pytest.mark.asyncio
    async def test_competing_debit_cannot_spend_held_funds(self, user_factory, mock_rubies):
        user_id = user_factory(balance="1500")
        rejected = []

        async def pay_out(**kwargs):
            reference = kwargs["reference"]
            if reference == "TRF-RACE-1":
                try:
                    await wallet_service.debit_wallet(user_id, "1000", "Card payment", reference="CARD-1")
                except InsufficientFunds as e:
                    rejected.append(e)
            return {
                "success": True, "status": TransactionStatus.COMPLETED.value, "responseCode": "00",
                "responseMessage": "Approved", "providerReference": f"RB-{reference}",
                "sessionId": f"S-{reference}", "raw": {},
            }

        mock_rubies.fund_transfer = AsyncMock(side_effect=pay_out)

        result = await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-RACE-1"}, "1234")

        assert result["status"] == TransactionStatus.COMPLETED.value
        assert len(rejected) == 1
        assert rejected[0].available == Decimal("485.00")
        assert load_transaction("CARD-1") is None
        txn = load_transaction("TRF-RACE-1")
        assert txn.balance_before == Decimal("1500.00")
        assert txn.balance_after == Decimal("485.00")
        assert wallet_balance(user_id) == Decimal("480.00"), "Transfer, fee and platform fee"
        assert ledger_balance(user_id) == Decimal("480.00")

    @pytest.mark.asyncio
    async def test_rejection_releases_the_hold(self, user_factory, mock_rubies):
        user_id = user_factory(balance="10000")
        mock_rubies.fund_transfer = AsyncMock(side_effect=ProviderRejected("Do not honor", response_code="14"))

        with pytest.raises(ProviderRejected):
            await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-REL-1"}, "1234")

        assert load_transaction("TRF-REL-1").held_amount is None
        assert wallet_balance(user_id) == Decimal("10000.00")
        assert ledger_balance(user_id) == Decimal("10000.00")


class TestProviderOutage:
    """A transport failure leaves the transfer pending for the sweeper"""

    @pytest.mark.asyncio
    async def test_outage_leaves_pending_then_times_out(self, user_factory, mock_rubies):
        user_id = user_factory()
        mock_rubies.fund_transfer = AsyncMock(side_effect=ProviderUnavailable("rubies unavailable: timeout"))

        with pytest.raises(ProviderUnavailable):
            await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-OUT-1"}, "1234")

        txn = load_transaction("TRF-OUT-1")
        assert txn.status == TransactionStatus.PENDING.value
        assert txn.held_amount == Decimal("1015.00")
        assert wallet_balance(user_id) == Decimal("8985.00"), "Funds stay held while the outcome is unknown"
        assert ledger_balance(user_id) == Decimal("10000.00"), "Nothing is settled yet"

        # nothing is old enough yet
        assert await timeout_stuck_transactions(max_age_minutes=30) == 0
        assert await timeout_stuck_transactions(max_age_minutes=0) == 1

        txn = load_transaction("TRF-OUT-1")
        assert txn.status == TransactionStatus.FAILED.value
        assert txn.failure_reason == "Transaction timeout"
        assert wallet_balance(user_id) == Decimal("10000.00")
        assert ledger_balance(user_id) == Decimal("10000.00")
        assert load_transaction("TRF-OUT-1").held_amount is None

    @pytest.mark.asyncio
    async def test_in_flight_answer_records_processing(self, user_factory, mock_rubies, mock_whatsapp):
        user_id = user_factory()
        mock_rubies.fund_transfer = AsyncMock(return_value={
            "success": False,
            "status": TransactionStatus.PROCESSING.value,
            "responseCode": "-1",
            "responseMessage": "In progress",
            "providerReference": "RB-1",
            "sessionId": "S-1",
            "raw": {},
        })

        result = await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-FLIGHT"}, "1234")

        assert result["success"] is False
        assert result["status"] == TransactionStatus.PROCESSING.value
        assert result["newBalance"] == Decimal("8985.00")
        assert wallet_balance(user_id) == Decimal("8985.00"), "Held until the provider settles"
        assert ledger_balance(user_id) == Decimal("10000.00")
        assert any("being processed" in t for t in sent_texts(mock_whatsapp))

    @pytest.mark.asyncio
    async def test_platform_fee_failure_does_not_undo_transfer(self, user_factory, mock_rubies):
        user_id = user_factory()
        answers = [
            {"success": True, "status": "completed", "responseCode": "00", "responseMessage": "Approved",
             "providerReference": "RB-MAIN", "sessionId": "S", "raw": {}},
            ProviderUnavailable("rubies unavailable"),
        ]
        mock_rubies.fund_transfer = AsyncMock(side_effect=answers)

        result = await process_bank_transfer(user_id, {**TEST_TRANSFER, "reference": "TRF-FEEFAIL"}, "1234")

        assert result["success"] is True
        assert result["platformFee"]["status"] == TransactionStatus.FAILED.value
        assert load_transaction("PFEETRF-FEEFAIL").status == TransactionStatus.FAILED.value
        assert wallet_balance(user_id) == Decimal("8985.00")
