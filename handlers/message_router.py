"""
Chat Message Router - routes WhatsApp text based on conversation state

Order of precedence:
1. "cancel" clears any pending question
2. A pending question (awaitingInput) receives the reply
3. Users who have not finished onboarding are sent the onboarding flow
4. New intents: balance, buy data, airtime, electricity, beneficiaries, transfer, help
"""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from services import beneficiary_service, onboarding_service, wallet_service
from services.airtime_service import is_airtime_intent, parse_airtime_request, purchase_airtime
from services.bill_payment_service import bill_quote, is_bill_intent, parse_bill_request, pay_electricity_bill
from services.bank_transfer_service import process_bank_transfer
from services.flow_token_service import create_flow_session
from services.transfer_intent_service import is_transfer_intent, resolve_transfer_intent
from services.whatsapp_service import get_whatsapp_service
from utils.conversation_state_helper import (
    AwaitingInput, ConversationState, clear_conversation_state, get_conversation_state, set_conversation_state
)
from utils.exception_handler import AuthError, ProviderUnavailable, safe_chat_handler
from utils.pin_security import mask_phone, validate_pin_format

logger = logging.getLogger(__name__)

TRANSFER_INTENT = "bank_transfer"
AIRTIME_INTENT = "airtime_purchase"
BILL_INTENT = "utility_bill"
YES_WORDS = {"yes", "y", "yeah", "yep", "ok", "okay", "sure", "save"}
NO_WORDS = {"no", "n", "nope", "nah", "skip", "don't", "dont"}


def _naira(value) -> str:
    return f"₦{Decimal(str(value)):,.2f}"


def help_text() -> str:
    return (
        f"👋 Here's what I can do on {Config.PLATFORM_NAME}:\n\n"
        "• *balance* - check your wallet balance\n"
        "• *send 5k to my mum* - transfer to a saved beneficiary\n"
        "• *send 2000 to 0123456789 GTBank* - transfer to any bank account\n"
        "• *buy data* - buy a data bundle\n"
        "• *buy 500 airtime for 08031234567* - top up any line\n"
        "• *pay 5000 electricity ikeja prepaid 45012345678* - pay for light\n"
        "• *beneficiaries* - see your saved recipients\n"
        "• *cancel* - stop what you're doing\n\n"
        f"Need help? Contact {Config.SUPPORT_CONTACT}."
    )


class ChatRouter:
    """Central router for chat text - one entry point per inbound message"""

    @staticmethod
    async def route_text_message(
        phone_number: str, text: str, whatsapp_name: Optional[str] = None
    ) -> Optional[str]:
        """Handle one message; the reply (if any) is sent and returned"""
        text = (text or "").strip()
        user = await onboarding_service.get_or_create_user(phone_number, whatsapp_name)
        logger.info(f"💬 CHAT_MESSAGE: user={user['id']} phone={mask_phone(user['phoneNumber'])} len={len(text)}")

        reply = await ChatRouter._handle(user, text)
        if reply:
            await get_whatsapp_service().send_text(user["phoneNumber"], reply)
        return reply

    @staticmethod
    @safe_chat_handler
    async def _handle(user: Dict[str, Any], text: str) -> Optional[str]:
        if user["isBanned"]:
            logger.warning(f"🚫 BANNED_USER_MESSAGE: user={user['id']}")
            return "❌ Your account is restricted. Please contact support."

        lowered = text.lower()
        state = await get_conversation_state(user["id"], user["phoneNumber"])

        if lowered == "cancel":
            if state is not None:
                await clear_conversation_state(user["id"])
                logger.info(f"🛑 CONVERSATION_CANCELLED: user={user['id']} intent={state.intent}")
                return "✅ Cancelled. What would you like to do next?"
            return "There's nothing to cancel. Type *help* to see what I can do."

        if state is not None and state.awaiting_input:
            handler = AWAITING_HANDLERS.get(state.awaiting_input)
            if handler is not None:
                return await handler(user, state, text)
            logger.warning(f"⚠️ UNKNOWN_AWAITING_INPUT: user={user['id']} awaiting={state.awaiting_input}")
            await clear_conversation_state(user["id"])

        if user["onboardingStep"] != "completed":
            return await ChatRouter._continue_onboarding(user)

        if lowered in ("balance", "bal", "my balance") or "balance" in lowered:
            return await ChatRouter._balance(user)
        if re.search(r"\b(buy|get)\b.*\bdata\b", lowered) or lowered == "data":
            return await ChatRouter._start_data_purchase(user)
        if is_bill_intent(text):
            return await ChatRouter._start_bill_payment(user, text)
        if is_airtime_intent(text):
            return await ChatRouter._start_airtime_purchase(user, text)
        if "beneficiar" in lowered or lowered in ("contacts", "saved"):
            return await ChatRouter._beneficiaries(user)
        if is_transfer_intent(text):
            return await ChatRouter._start_transfer(user, text)
        return help_text()

    # ===== ONBOARDING =====

    @staticmethod
    async def _continue_onboarding(user: Dict[str, Any]) -> Optional[str]:
        if user["hasPin"]:
            return "⏳ Your account number is still being set up. We'll message you as soon as it's ready."

        flow_token = await create_flow_session(
            user["id"], Config.WHATSAPP_ONBOARDING_FLOW_ID, "chat", {"flowType": "onboarding"}
        )
        sent = await get_whatsapp_service().send_flow(
            user["phoneNumber"],
            flow_id=Config.WHATSAPP_ONBOARDING_FLOW_ID,
            flow_token=flow_token,
            cta="Get started",
            body=f"Welcome to {Config.PLATFORM_NAME}! Let's set up your wallet - it takes about 2 minutes.",
            screen="PERSONAL_DETAILS",
            header="Open your account",
        )
        if not sent:
            return "We couldn't open the sign-up form right now. Please try again in a moment."
        return None

    # ===== INTENTS =====

    @staticmethod
    async def _balance(user: Dict[str, Any]) -> str:
        summary = await wallet_service.get_wallet_summary(user["id"])
        lines = [f"💰 Your balance is *{_naira(summary['balance'])}*"]
        if summary["virtualAccountNumber"]:
            lines.append(
                f"\nFund your wallet: {summary['virtualAccountNumber']} ({summary['virtualAccountBank']})"
            )
        return "\n".join(lines)

    @staticmethod
    async def _beneficiaries(user: Dict[str, Any]) -> str:
        saved = await beneficiary_service.suggestions(user["id"], limit=10)
        if not saved:
            return "You have no saved beneficiaries yet. They're saved after your first transfer to an account."
        lines = ["📇 Your saved beneficiaries:"]
        for b in saved:
            label = f"{b['nickname']} - " if b["nickname"] else ""
            star = "⭐ " if b["isFavorite"] else ""
            lines.append(f"{star}{label}{b['name']} ({b['bankName'] or b['bankCode']}, ***{b['accountNumber'][-4:]})")
        return "\n".join(lines)

    @staticmethod
    async def _start_data_purchase(user: Dict[str, Any]) -> Optional[str]:
        if not Config.WHATSAPP_DATA_PURCHASE_FLOW_ID:
            return "Data purchase is not available right now. Please try again later."
        flow_token = await create_flow_session(
            user["id"], Config.WHATSAPP_DATA_PURCHASE_FLOW_ID, "chat", {"flowType": "data_purchase"}
        )
        await get_whatsapp_service().send_flow(
            user["phoneNumber"],
            flow_id=Config.WHATSAPP_DATA_PURCHASE_FLOW_ID,
            flow_token=flow_token,
            cta="Buy data",
            body="📶 Choose a network, number and bundle.",
            screen="NETWORK_SELECT",
        )
        return None

    @staticmethod
    async def _start_transfer(user: Dict[str, Any], text: str) -> Optional[str]:
        draft = await resolve_transfer_intent(user["id"], text)
        # durable before the question goes out
        await set_conversation_state(user["id"], ConversationState(
            intent=TRANSFER_INTENT,
            awaiting_input=AwaitingInput.PIN_FOR_TRANSFER.value,
            context="chat",
            step="confirm",
            data={"transfer": draft},
        ))

        summary = f"{_naira(draft['amount'])} to *{draft['accountName']}* ({draft['bankName']})"
        if Config.WHATSAPP_TRANSFER_PIN_FLOW_ID:
            flow_token = await create_flow_session(
                user["id"], Config.WHATSAPP_TRANSFER_PIN_FLOW_ID, "chat",
                {"flowType": "transfer_pin", "transfer": draft},
            )
            await get_whatsapp_service().send_flow(
                user["phoneNumber"],
                flow_id=Config.WHATSAPP_TRANSFER_PIN_FLOW_ID,
                flow_token=flow_token,
                cta="Enter PIN",
                body=f"💸 Confirm transfer of {summary}. Or reply with your PIN here, or CANCEL.",
                screen="PIN_VERIFY",
                data={"amount": draft["amount"], "accountName": draft["accountName"], "bankName": draft["bankName"]},
            )
            return None
        return f"💸 Send {summary}?\n\nReply with your 4-digit PIN to confirm, or *CANCEL*."

    @staticmethod
    async def _start_airtime_purchase(user: Dict[str, Any], text: str) -> str:
        draft = parse_airtime_request(text, user["phoneNumber"])
        await set_conversation_state(user["id"], ConversationState(
            intent=AIRTIME_INTENT,
            awaiting_input=AwaitingInput.PIN_FOR_AIRTIME.value,
            context="chat",
            step="confirm",
            data={"airtime": draft},
        ))
        return (
            f"📱 Buy {_naira(draft['amount'])} {draft['network']} airtime for {draft['phone']}?\n\n"
            "Reply with your 4-digit PIN to confirm, or *CANCEL*."
        )

    @staticmethod
    async def _start_bill_payment(user: Dict[str, Any], text: str) -> str:
        draft = parse_bill_request(text)
        quote = bill_quote(draft["amount"])
        await set_conversation_state(user["id"], ConversationState(
            intent=BILL_INTENT,
            awaiting_input=AwaitingInput.PIN_FOR_BILL.value,
            context="chat",
            step="confirm",
            data={"bill": draft},
        ))
        return (
            f"⚡ Pay {_naira(quote['amount'])} {draft['disco'].title()} electricity "
            f"({draft['meterType']}) for meter {draft['meterNumber']}?\n"
            f"Fee: {_naira(quote['fee'])} - Total: {_naira(quote['total'])}\n\n"
            "Reply with your 4-digit PIN to confirm, or *CANCEL*."
        )


# ===== PENDING-QUESTION HANDLERS =====

async def _pin_for_transfer(user: Dict[str, Any], state: ConversationState, text: str) -> Optional[str]:
    draft = state.data.get("transfer")
    if not draft:
        await clear_conversation_state(user["id"])
        return "That transfer has expired. Please start again."

    pin = validate_pin_format(text)
    # the orchestrator may ask a new question (save beneficiary) once it completes
    await clear_conversation_state(user["id"])
    try:
        await process_bank_transfer(user["id"], draft, pin)
    except AuthError:
        await set_conversation_state(user["id"], state)
        raise
    return None


async def _save_beneficiary_confirmation(user: Dict[str, Any], state: ConversationState, text: str) -> str:
    answer = text.strip().lower()
    pending = state.data.get("pendingBeneficiary") or {}
    if answer in YES_WORDS:
        await set_conversation_state(user["id"], ConversationState(
            intent=state.intent,
            awaiting_input=AwaitingInput.BENEFICIARY_NICKNAME.value,
            context=state.context,
            data={"pendingBeneficiary": pending},
        ))
        return f"What should I call {pending.get('accountName')}? e.g. *mum*, *landlord*. Reply *skip* for no nickname."
    if answer in NO_WORDS:
        await clear_conversation_state(user["id"])
        return "👍 No problem."
    return "Please reply *YES* to save this beneficiary or *NO* to skip."


async def _beneficiary_nickname(user: Dict[str, Any], state: ConversationState, text: str) -> str:
    pending = state.data.get("pendingBeneficiary") or {}
    nickname = text.strip()
    if nickname.lower() in NO_WORDS:
        nickname = None
    elif len(nickname) > 64:
        return "That nickname is too long. Please use 64 characters or fewer."

    saved = await beneficiary_service.auto_save(
        user["id"],
        pending["accountNumber"],
        pending["bankCode"],
        pending.get("accountName"),
        bank_name=pending.get("bankName"),
        nickname=nickname,
        amount=pending.get("amount"),
    )
    await clear_conversation_state(user["id"])
    if saved["nickname"]:
        return f"💾 Saved! Next time just say *send 5k to my {saved['nickname']}*."
    return f"💾 Saved {saved['name']} to your beneficiaries."


async def _virtual_account_otp(user: Dict[str, Any], state: ConversationState, text: str) -> Optional[str]:
    await onboarding_service.submit_virtual_account_otp(user["id"], user["phoneNumber"], text)
    await onboarding_service.complete_virtual_account(user["id"], user["phoneNumber"], state.data["reference"])
    return None


async def _pin_for_purchase(user: Dict[str, Any], state: ConversationState, text: str, purchase) -> Optional[str]:
    pin = validate_pin_format(text)
    await clear_conversation_state(user["id"])
    try:
        await purchase(pin)
    except AuthError:
        await set_conversation_state(user["id"], state)
        raise
    except ProviderUnavailable:
        return (
            "⏳ We couldn't reach the provider right now. Your purchase is pending; "
            "if it doesn't go through, the held amount returns to your balance."
        )
    return None


async def _pin_for_airtime(user: Dict[str, Any], state: ConversationState, text: str) -> Optional[str]:
    draft = state.data.get("airtime")
    if not draft:
        await clear_conversation_state(user["id"])
        return "That airtime purchase has expired. Please start again."
    return await _pin_for_purchase(user, state, text, lambda pin: purchase_airtime(
        user["id"], draft["network"], draft["phone"], draft["amount"], pin
    ))


async def _pin_for_bill(user: Dict[str, Any], state: ConversationState, text: str) -> Optional[str]:
    draft = state.data.get("bill")
    if not draft:
        await clear_conversation_state(user["id"])
        return "That bill payment has expired. Please start again."
    return await _pin_for_purchase(user, state, text, lambda pin: pay_electricity_bill(
        user["id"], draft["disco"], draft["meterType"], draft["meterNumber"], draft["amount"], pin
    ))


AWAITING_HANDLERS = {
    AwaitingInput.PIN_FOR_TRANSFER.value: _pin_for_transfer,
    AwaitingInput.PIN_FOR_AIRTIME.value: _pin_for_airtime,
    AwaitingInput.PIN_FOR_BILL.value: _pin_for_bill,
    AwaitingInput.SAVE_BENEFICIARY_CONFIRMATION.value: _save_beneficiary_confirmation,
    AwaitingInput.BENEFICIARY_NICKNAME.value: _beneficiary_nickname,
    AwaitingInput.VIRTUAL_ACCOUNT_OTP.value: _virtual_account_otp,
}


route_text_message = ChatRouter.route_text_message
