"""
Chat Router Tests
Free-text messages end to end: intents, pending questions, cancellation,
onboarding hand-off and the save-beneficiary dialogue
"""

from decimal import Decimal

import pytest

from handlers.message_router import route_text_message
from services import beneficiary_service
from utils.conversation_state_helper import AwaitingInput, get_conversation_state
from utils.exception_handler import ProviderUnavailable
from tests.wallet_test_foundation import TEST_PHONE, active_beneficiaries, sent_texts, wallet_balance


class TestIntents:
    """Messages from an onboarded user with nothing pending"""

    @pytest.mark.asyncio
    async def test_balance(self, user_factory, mock_whatsapp):
        user_factory(virtual_account="9000000001")

        reply = await route_text_message(TEST_PHONE, "what's my balance?")

        assert reply.startswith("💰 Your balance is *₦10,000.00*")
        assert "9000000001" in reply
        assert sent_texts(mock_whatsapp) == [reply], "The reply is delivered on the chat channel"

    @pytest.mark.asyncio
    async def test_help_for_unrecognised_text(self, user_factory):
        user_factory()
        reply = await route_text_message(TEST_PHONE, "good morning")
        assert "Here's what I can do" in reply

    @pytest.mark.asyncio
    async def test_beneficiary_list(self, user_factory):
        user_id = user_factory()
        await beneficiary_service.auto_save(
            user_id, "9072874728", "100004", "ADA MUMUNI", bank_name="Opay", nickname="mum"
        )

        reply = await route_text_message(TEST_PHONE, "my beneficiaries")

        assert reply.startswith("📇 Your saved beneficiaries:")
        assert "mum - ADA MUMUNI (Opay, ***4728)" in reply

    @pytest.mark.asyncio
    async def test_data_without_flow_configured(self, user_factory):
        user_factory()
        reply = await route_text_message(TEST_PHONE, "buy data")
        assert reply == "Data purchase is not available right now. Please try again later."

    @pytest.mark.asyncio
    async def test_unknown_nickname_explained(self, user_factory):
        user_factory()
        reply = await route_text_message(TEST_PHONE, "send 1k to my uncle")
        assert "uncle" in reply


class TestChatTransfer:
    """Transfer confirmed by replying with the PIN"""

    @pytest.mark.asyncio
    async def test_send_to_saved_nickname(self, user_factory, mock_whatsapp):
        user_id = user_factory()
        await beneficiary_service.auto_save(
            user_id, "9072874728", "100004", "ADA MUMUNI", bank_name="Opay", nickname="mum"
        )

        question = await route_text_message(TEST_PHONE, "send 1k to my mum")

        assert question.startswith("💸 Send ₦1,000.00 to *ADA MUMUNI*")
        assert question.endswith("Reply with your 4-digit PIN to confirm, or *CANCEL*.")
        state = await get_conversation_state(user_id)
        assert state.awaiting_input == AwaitingInput.PIN_FOR_TRANSFER.value

        assert await route_text_message(TEST_PHONE, "1234") is None

        assert wallet_balance(user_id) == Decimal("8980.00")
        assert not any("💾 Save" in t for t in sent_texts(mock_whatsapp)), "Saved recipients are not offered again"
        saved = await beneficiary_service.find_by_nickname(user_id, "mum")
        assert saved["totalTransactions"] == 1

    @pytest.mark.asyncio
    async def test_wrong_pin_keeps_question_open(self, user_factory):
        user_id = user_factory()
        await beneficiary_service.auto_save(user_id, "9072874728", "100004", "ADA MUMUNI", nickname="mum")
        await route_text_message(TEST_PHONE, "send 1k to my mum")

        reply = await route_text_message(TEST_PHONE, "9999")

        assert reply == "Incorrect PIN. 2 attempt(s) left."
        state = await get_conversation_state(user_id)
        assert state.awaiting_input == AwaitingInput.PIN_FOR_TRANSFER.value
        assert wallet_balance(user_id) == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_new_recipient_saved_with_nickname(self, user_factory, mock_whatsapp):
        user_id = user_factory()
        await route_text_message(TEST_PHONE, "send 2k to 0123456789 gtbank")
        await route_text_message(TEST_PHONE, "1234")

        assert any("💾 Save JOHN DOE" in t for t in sent_texts(mock_whatsapp))

        ask = await route_text_message(TEST_PHONE, "yes")
        assert ask.startswith("What should I call JOHN DOE?")

        done = await route_text_message(TEST_PHONE, "landlord")
        assert done == "💾 Saved! Next time just say *send 5k to my landlord*."

        [beneficiary] = active_beneficiaries(user_id)
        assert beneficiary.nickname == "landlord"
        assert beneficiary.bank_code == "000058"
        assert await get_conversation_state(user_id) is None

    @pytest.mark.asyncio
    async def test_declining_the_save(self, user_factory):
        user_id = user_factory()
        await route_text_message(TEST_PHONE, "send 2k to 0123456789 gtbank")
        await route_text_message(TEST_PHONE, "1234")

        assert await route_text_message(TEST_PHONE, "no") == "👍 No problem."
        assert active_beneficiaries(user_id) == []


class TestChatPurchases:
    """Airtime and electricity confirmed by replying with the PIN"""

    @pytest.mark.asyncio
    async def test_airtime_for_another_line(self, user_factory, mock_bilal, mock_whatsapp):
        user_id = user_factory()

        ask = await route_text_message(TEST_PHONE, "buy 500 airtime for 08031234567")
        assert ask.startswith("📱 Buy ₦500.00 MTN airtime for 08031234567?")
        state = await get_conversation_state(user_id)
        assert state.awaiting_input == AwaitingInput.PIN_FOR_AIRTIME.value

        assert await route_text_message(TEST_PHONE, "1234") is None

        assert wallet_balance(user_id) == Decimal("9500.00")
        assert await get_conversation_state(user_id) is None
        assert any("Airtime Purchase Successful" in t for t in sent_texts(mock_whatsapp))

    @pytest.mark.asyncio
    async def test_electricity_is_not_a_bank_transfer(self, user_factory, mock_bilal, mock_rubies):
        user_id = user_factory()

        ask = await route_text_message(TEST_PHONE, "pay 5000 electricity ikeja prepaid 45012345678")
        assert "Fee: ₦75.00 - Total: ₦5,075.00" in ask

        await route_text_message(TEST_PHONE, "1234")

        assert wallet_balance(user_id) == Decimal("4925.00")
        mock_bilal.pay_electricity.assert_awaited_once()
        mock_rubies.fund_transfer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_pin_keeps_purchase_open(self, user_factory, mock_bilal):
        user_id = user_factory()
        await route_text_message(TEST_PHONE, "buy 500 airtime for 08031234567")

        reply = await route_text_message(TEST_PHONE, "9999")

        assert reply == "Incorrect PIN. 2 attempt(s) left."
        state = await get_conversation_state(user_id)
        assert state.awaiting_input == AwaitingInput.PIN_FOR_AIRTIME.value
        mock_bilal.purchase_airtime.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outage_explains_the_hold(self, user_factory, mock_bilal):
        mock_bilal.purchase_airtime.side_effect = ProviderUnavailable("bilal unavailable")
        user_id = user_factory()
        await route_text_message(TEST_PHONE, "buy 500 airtime for 08031234567")

        reply = await route_text_message(TEST_PHONE, "1234")

        assert reply.startswith("⏳")
        assert wallet_balance(user_id) == Decimal("9500.00")


class TestCancellation:
    """CANCEL clears any pending question"""

    @pytest.mark.asyncio
    async def test_cancel_pending_transfer(self, user_factory):
        user_id = user_factory()
        await route_text_message(TEST_PHONE, "send 2k to 0123456789 gtbank")

        reply = await route_text_message(TEST_PHONE, "CANCEL")

        assert reply == "✅ Cancelled. What would you like to do next?"
        assert await get_conversation_state(user_id) is None
        assert wallet_balance(user_id) == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, user_factory):
        user_factory()
        reply = await route_text_message(TEST_PHONE, "cancel")
        assert reply.startswith("There's nothing to cancel")


class TestAccountStatus:
    """New, half-onboarded and banned users"""

    @pytest.mark.asyncio
    async def test_first_message_opens_onboarding_flow(self, mock_whatsapp):
        reply = await route_text_message("08099999999", "hi", whatsapp_name="Tunde")

        assert reply is None
        mock_whatsapp.send_flow.assert_awaited_once()
        kwargs = mock_whatsapp.send_flow.await_args.kwargs
        assert mock_whatsapp.send_flow.await_args.args[0] == "+2348099999999"
        assert kwargs["screen"] == "PERSONAL_DETAILS"
        assert kwargs["flow_token"].startswith("flow_")

    @pytest.mark.asyncio
    async def test_pin_set_but_account_pending(self, user_factory):
        user_factory(onboarded=False)
        reply = await route_text_message(TEST_PHONE, "balance")
        assert reply.startswith("⏳ Your account number is still being set up")

    @pytest.mark.asyncio
    async def test_banned_user(self, user_factory):
        user_factory(is_banned=True)
        reply = await route_text_message(TEST_PHONE, "balance")
        assert reply == "❌ Your account is restricted. Please contact support."
