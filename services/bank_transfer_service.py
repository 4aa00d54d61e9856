"""
Bank Transfer Service - outbound NIP transfer orchestration

process_bank_transfer() runs, in order: PIN check, name enquiry, limits,
fee, balance guard (with provider balance resync), pending transaction
holding the funds, provider fund transfer, settlement + completion,
platform-fee sibling, beneficiary touch and receipt.

Provider outages leave the transaction pending, funds still held, for the
sweeper; provider rejections fail it and release the hold. There are no
automatic retries at this layer: a retry with the same reference returns
the recorded outcome.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from config import Config
from database import run_in_transaction
from models import TransactionCategory, TransactionStatus, TransactionType
from services import beneficiary_service, wallet_service
from services.bank_directory import bank_name_for_code, resolve_institution_code
from services.fee_service import FeeService, FeeServiceType
from services.receipt_service import receipt_service
from services.rubies_service import get_rubies_service
from services.wallet_service import (
    WalletService, generate_reference, start_of_day, start_of_month, to_money, transaction_to_dict
)
from services.whatsapp_service import get_whatsapp_service
from utils.background_task_runner import run_io_task
from utils.conversation_state_helper import AwaitingInput, ConversationState, set_conversation_state
from utils.exception_handler import (
    ChatWalletError, InsufficientFunds, LimitExceeded, ProviderRejected, ProviderUnavailable,
    StatePersistenceFailed, ValidationError, WalletFrozen
)
from utils.pin_security import authenticate_transaction_pin

logger = logging.getLogger(__name__)

ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{10}$")
PLATFORM_FEE_PREFIX = "PFEE"

SAVE_BENEFICIARY_INTENT = "save_beneficiary_prompt"


def parse_amount(value) -> Decimal:
    try:
        amount = to_money(str(value).replace(",", "").replace("₦", "").strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value}", field="amount")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.", field="amount")
    return amount


def _transfer_totals(session, user_id: str) -> Dict[str, Decimal]:
    ledger = WalletService(session)
    return {
        "daily": ledger.transfer_total_since(user_id, start_of_day()),
        "monthly": ledger.transfer_total_since(user_id, start_of_month()),
    }


async def enforce_limits(user_id: str, amount: Decimal) -> Dict[str, Decimal]:
    """
    Raises:
        LimitExceeded: per-transfer min/max, daily or monthly cap
    """
    if amount < Config.TRANSFER_MIN_AMOUNT:
        raise LimitExceeded(
            "minimum", Config.TRANSFER_MIN_AMOUNT, Decimal("0"),
            message=f"The minimum transfer is ₦{Config.TRANSFER_MIN_AMOUNT:,.2f}.",
        )
    if amount > Config.TRANSFER_MAX_AMOUNT:
        raise LimitExceeded(
            "maximum", Config.TRANSFER_MAX_AMOUNT, Config.TRANSFER_MAX_AMOUNT,
            message=f"The maximum single transfer is ₦{Config.TRANSFER_MAX_AMOUNT:,.2f}.",
        )

    totals = await run_io_task(run_in_transaction, lambda s: _transfer_totals(s, user_id))
    if totals["daily"] + amount > Config.TRANSFER_DAILY_LIMIT:
        raise LimitExceeded("daily", Config.TRANSFER_DAILY_LIMIT, Config.TRANSFER_DAILY_LIMIT - totals["daily"])
    if totals["monthly"] + amount > Config.TRANSFER_MONTHLY_LIMIT:
        raise LimitExceeded(
            "monthly", Config.TRANSFER_MONTHLY_LIMIT, Config.TRANSFER_MONTHLY_LIMIT - totals["monthly"]
        )
    return totals


async def guard_balance(user_id: str, wallet: Dict[str, Any], total: Decimal) -> Decimal:
    """
    Local balance check, then the provider's view of the virtual account for
    provisioned wallets; a lower provider balance is synced down first.
    """
    balance = wallet["balance"]
    if balance < total:
        raise InsufficientFunds(required=total, available=balance)

    account = wallet.get("virtualAccountNumber")
    if not account or total < Config.BALANCE_SYNC_THRESHOLD:
        return balance

    try:
        provider_balance = await get_rubies_service().wallet_balance_enquiry(account)
    except (ProviderUnavailable, ProviderRejected) as e:
        logger.warning(f"⚠️ BALANCE_ENQUIRY_SKIPPED: user={user_id} reason={e.message}")
        return balance

    if provider_balance < balance:
        synced = await wallet_service.resync_balance_from_provider(user_id, provider_balance)
        balance = synced["new_balance"]
        if balance < total:
            raise InsufficientFunds(required=total, available=balance)
    return balance


def _result(txn, new_balance=None, **extra) -> Dict[str, Any]:
    txn_dict = txn if isinstance(txn, dict) else transaction_to_dict(txn)
    result = {
        "success": txn_dict["status"] == TransactionStatus.COMPLETED.value,
        "status": txn_dict["status"],
        "reference": txn_dict["reference"],
        "transaction": txn_dict,
        "newBalance": new_balance,
    }
    result.update(extra)
    return result


async def process_bank_transfer(
    user_id: str,
    transfer: Dict[str, Any],
    pin: str,
    notify: bool = True,
) -> Dict[str, Any]:
    """
    Send money from the user's wallet to a bank account.

    Args:
        transfer: {accountNumber, bankCode, bankName?, amount, narration?, reference?}

    Returns:
        {success, status, reference, transaction, newBalance, accountName,
         platformFee, beneficiaryPrompt}

    Raises:
        ValidationError, AuthError, LimitExceeded, InsufficientFunds, WalletFrozen,
        ProviderRejected (transaction failed), ProviderUnavailable (transaction pending)
    """
    account_number = str(transfer.get("accountNumber") or "").strip()
    if not ACCOUNT_NUMBER_PATTERN.match(account_number):
        raise ValidationError("Account number must be 10 digits.", field="accountNumber")
    amount = parse_amount(transfer.get("amount"))
    narration = (transfer.get("narration") or "").strip() or f"Transfer via {Config.PLATFORM_NAME}"

    # 1. Authenticate
    await authenticate_transaction_pin(user_id, pin)

    reference = transfer.get("reference")
    if reference:
        existing = await wallet_service.get_transaction(reference)
        if existing is not None:
            if existing.user_id != user_id:
                raise ValidationError(f"Reference {reference} belongs to another user", field="reference")
            logger.info(f"🔁 TRANSFER_REPLAY: user={user_id} ref={reference} status={existing.status}")
            return _result(existing, existing.balance_after, replay=True)

    wallet = await wallet_service.get_wallet_summary(user_id)
    if wallet["isFrozen"]:
        raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet['freezeReason']}", user_id=user_id)

    # 2. Name enquiry
    bank_code = str(transfer.get("bankCode") or "").strip()
    institution_code = await resolve_institution_code(bank_code, transfer.get("bankName"))
    enquiry = await get_rubies_service().name_enquiry(account_number, institution_code)
    account_name = enquiry["accountName"]
    bank_name = enquiry.get("bankName") or transfer.get("bankName") or bank_name_for_code(bank_code) or bank_code

    # 3. Limits
    await enforce_limits(user_id, amount)

    # 4. Fee
    breakdown = FeeService.calculate(FeeServiceType.BANK_TRANSFER, amount)

    # 5. Balance guard
    await guard_balance(user_id, wallet, breakdown.total_amount)

    # 6. Pending transaction, with the total held against the balance
    recipient = {
        "accountNumber": account_number,
        "accountName": account_name,
        "bankCode": bank_code,
        "institutionCode": institution_code,
        "bankName": bank_name,
        "narration": narration,
    }
    txn = await wallet_service.create_transaction(user_id, {
        "reference": reference or generate_reference("TRF"),
        "type": TransactionType.DEBIT.value,
        "category": TransactionCategory.BANK_TRANSFER.value,
        "amount": amount,
        "fee": breakdown.total_fee,
        "description": f"Transfer to {account_name} ({bank_name})",
        "recipient_details": recipient,
        "metadata": {"feeBreakdown": breakdown.to_dict(), "nameEnquirySessionId": enquiry.get("sessionId")},
        "reserve": True,
    })
    reference = txn.reference

    # 7. Provider fund transfer
    try:
        outcome = await get_rubies_service().fund_transfer(
            amount=amount,
            account_number=account_number,
            bank_code=institution_code,
            bank_name=bank_name,
            account_name=account_name,
            narration=narration,
            reference=reference,
            debit_account_number=wallet.get("virtualAccountNumber"),
            debit_account_name=wallet.get("virtualAccountName"),
        )
    except ProviderUnavailable as e:
        logger.error(f"⏳ TRANSFER_PENDING: user={user_id} ref={reference} provider unavailable: {e.message}")
        raise
    except ProviderRejected as e:
        await wallet_service.update_transaction_status(
            reference, TransactionStatus.FAILED.value, failure_reason=e.message
        )
        logger.warning(f"❌ TRANSFER_FAILED: user={user_id} ref={reference} reason={e.message}")
        raise

    if outcome["status"] == TransactionStatus.FAILED.value:
        reason = outcome.get("responseMessage") or f"Provider response {outcome.get('responseCode')}"
        await wallet_service.update_transaction_status(
            reference, TransactionStatus.FAILED.value, failure_reason=reason
        )
        logger.warning(f"❌ TRANSFER_FAILED: user={user_id} ref={reference} code={outcome.get('responseCode')}")
        raise ProviderRejected(
            f"Transfer {reference} rejected: {reason}",
            response_code=outcome.get("responseCode"),
            user_message=f"Your transfer of ₦{amount:,.2f} to {account_name} failed: {reason}. You have not been charged.",
        )

    if outcome["status"] != TransactionStatus.COMPLETED.value:
        reconciled = await wallet_service.reconcile_from_provider(reference, {**outcome, "source": "fund_transfer"})
        logger.info(f"⏳ TRANSFER_IN_FLIGHT: user={user_id} ref={reference} status={outcome['status']}")
        if notify:
            await get_whatsapp_service().send_text(
                wallet["phoneNumber"],
                f"⏳ Your transfer of ₦{amount:,.2f} to {account_name} is being processed. "
                f"We'll notify you once it completes.\nReference: {reference}",
            )
        held = await wallet_service.get_wallet_summary(user_id)
        return _result(reconciled["transaction"], held["balance"], accountName=account_name,
                       platformFee=None, beneficiaryPrompt=False)

    # 8. Debit and complete atomically
    completed = await wallet_service.update_transaction_status(
        reference,
        TransactionStatus.COMPLETED.value,
        provider_reference=outcome.get("providerReference"),
        session_id=outcome.get("sessionId"),
    )
    new_balance = to_money(completed.balance_after)
    logger.info(
        f"✅ TRANSFER_COMPLETED: user={user_id} ref={reference} amount={amount} fee={breakdown.total_fee} "
        f"balance={new_balance}"
    )

    return await finalize_completed_transfer(
        user_id, transaction_to_dict(completed), wallet["phoneNumber"], notify=notify
    )


async def finalize_completed_transfer(
    user_id: str, txn: Dict[str, Any], phone_number: str, notify: bool = True
) -> Dict[str, Any]:
    """Steps after completion: platform fee, beneficiary touch, receipt. Also used by reconciliation."""
    recipient = txn.get("recipientDetails") or {}
    amount = Decimal(str(txn["amount"]))

    # 9. Platform-fee sibling
    fee_result = await charge_platform_fee(user_id, txn)

    # 10. Beneficiary touch
    prompted = False
    touched = await beneficiary_service.record_usage(
        user_id, recipient.get("accountNumber"), recipient.get("institutionCode") or recipient.get("bankCode"), amount
    )
    if touched is None and notify:
        prompted = await prompt_save_beneficiary(user_id, phone_number, recipient, amount)

    summary = await wallet_service.get_wallet_summary(user_id)
    new_balance = summary["balance"]

    # 11. Receipt
    if notify:
        await receipt_service.send_receipt(phone_number, txn, new_balance)

    return _result(
        txn, new_balance,
        accountName=recipient.get("accountName"),
        platformFee=fee_result,
        beneficiaryPrompt=prompted,
    )


async def charge_platform_fee(user_id: str, parent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Hidden ₦5 fee_charge sibling of a completed transfer, sent to the platform
    account. Never raises: failures are logged for operators.
    """
    parent_reference = parent["reference"]
    fee_reference = f"{PLATFORM_FEE_PREFIX}{parent_reference}"
    fee_amount = to_money(Config.PLATFORM_FEE_AMOUNT)
    if fee_amount <= 0:
        return None

    try:
        fee_txn = await wallet_service.create_transaction(user_id, {
            "reference": fee_reference,
            "type": TransactionType.DEBIT.value,
            "category": TransactionCategory.FEE_CHARGE.value,
            "amount": fee_amount,
            "fee": 0,
            "description": "Platform fee",
            "parent_reference": parent_reference,
            "recipient_details": {
                "accountNumber": Config.PLATFORM_FEE_ACCOUNT_NUMBER,
                "accountName": Config.PLATFORM_FEE_ACCOUNT_NAME,
                "bankCode": Config.PLATFORM_FEE_BANK_CODE,
            },
            "metadata": {
                "isInternal": True,
                "isVisibleToUser": False,
                "isPlatformFee": True,
                "parentTransactionReference": parent_reference,
            },
        })
        if fee_txn.status != TransactionStatus.PENDING.value:
            return {"reference": fee_reference, "status": fee_txn.status}

        await wallet_service.reserve_funds(fee_reference)
        wallet = await wallet_service.get_wallet_summary(user_id)

        outcome = await get_rubies_service().fund_transfer(
            amount=fee_amount,
            account_number=Config.PLATFORM_FEE_ACCOUNT_NUMBER,
            bank_code=Config.PLATFORM_FEE_BANK_CODE,
            bank_name=Config.PLATFORM_NAME,
            account_name=Config.PLATFORM_FEE_ACCOUNT_NAME,
            narration=f"Platform fee {parent_reference}",
            reference=fee_reference,
            debit_account_number=wallet.get("virtualAccountNumber"),
            debit_account_name=wallet.get("virtualAccountName"),
        )
        if outcome["status"] != TransactionStatus.COMPLETED.value:
            raise ProviderRejected(
                f"Platform fee transfer answered {outcome.get('responseCode')}: {outcome.get('responseMessage')}",
                response_code=outcome.get("responseCode"),
            )

        fee_txn = await wallet_service.update_transaction_status(
            fee_reference,
            TransactionStatus.COMPLETED.value,
            provider_reference=outcome.get("providerReference"),
            session_id=outcome.get("sessionId"),
        )
        logger.info(f"💰 PLATFORM_FEE_CHARGED: parent={parent_reference} ref={fee_reference} amount={fee_amount}")
        return {"reference": fee_reference, "status": fee_txn.status}

    except ChatWalletError as e:
        logger.error(
            f"❌ PLATFORM_FEE_FAILED: parent={parent_reference} user={user_id} ref={fee_reference} "
            f"category={e.code} cause={e.message}"
        )
        await _fail_fee_quietly(fee_reference, e.message)
        return {"reference": fee_reference, "status": TransactionStatus.FAILED.value, "error": e.code}


async def _fail_fee_quietly(fee_reference: str, reason: str) -> None:
    try:
        existing = await wallet_service.get_transaction(fee_reference)
        if existing is not None and existing.status == TransactionStatus.PENDING.value:
            await wallet_service.update_transaction_status(
                fee_reference, TransactionStatus.FAILED.value, failure_reason=reason
            )
    except ChatWalletError as e:
        logger.error(f"❌ PLATFORM_FEE_STATUS_UPDATE_FAILED: ref={fee_reference} cause={e.message}")


async def prompt_save_beneficiary(
    user_id: str, phone_number: str, recipient: Dict[str, Any], amount: Decimal
) -> bool:
    """Ask whether to save a new recipient; the state must be durable before the question is sent"""
    state = ConversationState(
        intent=SAVE_BENEFICIARY_INTENT,
        awaiting_input=AwaitingInput.SAVE_BENEFICIARY_CONFIRMATION.value,
        context="bank_transfer",
        data={
            "pendingBeneficiary": {
                "accountNumber": recipient.get("accountNumber"),
                "accountName": recipient.get("accountName"),
                "bankCode": recipient.get("institutionCode") or recipient.get("bankCode"),
                "bankName": recipient.get("bankName"),
                "amount": str(amount),
            }
        },
    )
    try:
        await set_conversation_state(user_id, state)
    except StatePersistenceFailed as e:
        logger.error(f"❌ BENEFICIARY_PROMPT_SKIPPED: user={user_id} cause={e.message}")
        return False

    await get_whatsapp_service().send_text(
        phone_number,
        f"💾 Save {recipient.get('accountName')} ({recipient.get('bankName')}) as a beneficiary "
        f"for faster transfers next time?\nReply *YES* or *NO*.",
    )
    return True
