"""
Rubies Webhook Handler

Two kinds of event arrive on POST /webhook/rubies:
1. Transfer status updates keyed by our reference; the response code decides
   the target status and the ledger's reconciliation rules decide whether it
   applies (a late or repeated answer never moves a transaction backwards)
2. Virtual account credits: money received on a user's account number,
   credited once per provider reference

Every event passes through the webhook event ledger so a provider retry of an
event we already processed is answered from the stored result.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, HTTPException, Request, Header

from config import Config
from models import TransactionCategory, TransactionStatus
from services import bank_transfer_service, wallet_service
from services.fee_service import FeeService, FeeServiceType
from services.rubies_service import get_rubies_service, status_for_response_code
from services.wallet_service import transaction_to_dict
from services.webhook_idempotency_service import (
    WebhookEventInfo, WebhookProvider, process_webhook_with_idempotency
)
from services.whatsapp_service import get_whatsapp_service
from utils.exception_handler import ChatWalletError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

CREDIT_EVENT_TYPES = {"credit", "cr", "virtual_account.credit", "inflow", "incoming_transfer"}


def _reference(event: Dict[str, Any]) -> Optional[str]:
    return event.get("reference") or event.get("contractReference") or event.get("paymentReference")


def is_credit_event(event: Dict[str, Any]) -> bool:
    kind = str(event.get("eventType") or event.get("type") or event.get("drCr") or "").lower()
    if kind in CREDIT_EVENT_TYPES:
        return True
    return bool(event.get("creditAccount") or event.get("virtualAccountNumber"))


def event_id_for(event: Dict[str, Any]) -> str:
    """Credits are identified by the provider's reference, status updates by our reference and code"""
    if is_credit_event(event):
        return f"credit:{event.get('sessionId') or event.get('paymentReference') or _reference(event)}"
    return f"status:{_reference(event)}:{event.get('responseCode')}"


# ===== STATUS UPDATES =====

async def handle_transfer_status(event: Dict[str, Any]) -> Dict[str, Any]:
    reference = _reference(event)
    code = event.get("responseCode")
    target = status_for_response_code(code)
    if target is None:
        logger.warning(
            f"⚠️ WEBHOOK_UNKNOWN_CODE: ref={reference} code={code} message={event.get('responseMessage')}"
        )
        return {"action": "ignored", "reason": "unknown_response_code", "responseCode": code}
    if not reference:
        logger.warning(f"⚠️ WEBHOOK_NO_REFERENCE: code={code}")
        return {"action": "ignored", "reason": "missing_reference"}

    outcome = {
        "status": target,
        "responseCode": code,
        "responseMessage": event.get("responseMessage"),
        "providerReference": event.get("providerReference") or event.get("paymentReference"),
        "sessionId": event.get("sessionId"),
        "failureReason": event.get("responseMessage") if target == TransactionStatus.FAILED.value else None,
        "source": "webhook",
    }
    try:
        result = await wallet_service.reconcile_from_provider(reference, outcome)
    except ValidationError:
        logger.warning(f"⚠️ WEBHOOK_UNKNOWN_REFERENCE: ref={reference} code={code}")
        return {"action": "ignored", "reason": "unknown_reference", "reference": reference}

    txn = transaction_to_dict(result["transaction"])
    if result["changed"]:
        await _after_status_change(result["transaction"].user_id, txn)
    return {
        "action": "updated" if result["changed"] else "unchanged",
        "reference": reference,
        "previousStatus": result["previous_status"],
        "status": txn["status"],
    }


async def _after_status_change(user_id: str, txn: Dict[str, Any]) -> None:
    if txn["category"] != TransactionCategory.BANK_TRANSFER.value:
        return
    summary = await wallet_service.get_wallet_summary(user_id)
    if txn["status"] == TransactionStatus.COMPLETED.value:
        logger.info(f"✅ TRANSFER_SETTLED_BY_WEBHOOK: user={user_id} ref={txn['reference']}")
        await bank_transfer_service.finalize_completed_transfer(user_id, txn, summary["phoneNumber"])
    elif txn["status"] == TransactionStatus.FAILED.value:
        await get_whatsapp_service().send_text(
            summary["phoneNumber"],
            f"❌ Your transfer of ₦{txn['amount']:,.2f} (ref {txn['reference']}) failed: "
            f"{txn.get('failureReason') or 'declined by the bank'}. You have not been charged.",
        )


# ===== INCOMING CREDITS =====

async def handle_incoming_credit(event: Dict[str, Any]) -> Dict[str, Any]:
    account_number = event.get("creditAccount") or event.get("virtualAccountNumber") or event.get("accountNumber")
    provider_reference = event.get("sessionId") or event.get("paymentReference") or _reference(event)
    try:
        amount = Decimal(str(event.get("amount")))
    except (InvalidOperation, TypeError):
        amount = None
    if amount is None or not amount.is_finite() or amount <= 0:
        logger.error(f"❌ CREDIT_INVALID_AMOUNT: account=***{str(account_number)[-4:]} amount={event.get('amount')}")
        return {"action": "ignored", "reason": "invalid_amount"}

    user_id = await wallet_service.find_user_id_by_virtual_account(str(account_number or ""))
    if user_id is None:
        logger.warning(f"⚠️ CREDIT_UNKNOWN_ACCOUNT: account=***{str(account_number)[-4:]} ref={provider_reference}")
        return {"action": "ignored", "reason": "unknown_account"}

    sender = event.get("originatorAccountName") or event.get("senderName") or "bank transfer"
    credit = await wallet_service.credit_wallet(
        user_id,
        amount,
        f"Transfer from {sender}",
        category=TransactionCategory.INCOMING_TRANSFER.value,
        provider_reference=provider_reference,
        metadata={
            "sender": {
                "name": sender,
                "accountNumber": event.get("originatorAccountNumber") or event.get("senderAccountNumber"),
                "bank": event.get("originatorBank") or event.get("senderBank"),
            },
            "narration": event.get("narration"),
        },
    )
    txn = transaction_to_dict(credit["transaction"])
    if credit["duplicate"]:
        return {"action": "duplicate", "reference": txn["reference"]}

    new_balance = credit["new_balance"]
    if Config.INCOMING_TRANSFER_FEE_ENABLED:
        new_balance = await _charge_incoming_fee(user_id, txn) or new_balance

    summary = await wallet_service.get_wallet_summary(user_id)
    await get_whatsapp_service().send_text(
        summary["phoneNumber"],
        f"💰 You received ₦{amount:,.2f} from {sender}.\nNew balance: ₦{Decimal(str(new_balance)):,.2f}",
    )
    return {"action": "credited", "reference": txn["reference"], "amount": str(amount)}


async def _charge_incoming_fee(user_id: str, credit: Dict[str, Any]) -> Optional[Decimal]:
    breakdown = FeeService.calculate(FeeServiceType.INCOMING_TRANSFER, credit["amount"])
    if breakdown.total_fee <= 0:
        return None
    try:
        result = await wallet_service.debit_wallet(
            user_id,
            breakdown.total_fee,
            "Incoming transfer fee",
            category=TransactionCategory.FEE_CHARGE.value,
            reference=f"INFEE-{credit['reference']}",
            parent_reference=credit["reference"],
            metadata={"feeBreakdown": breakdown.to_dict(), "parentTransactionReference": credit["reference"]},
        )
    except ChatWalletError as e:
        logger.error(
            f"❌ INCOMING_FEE_FAILED: user={user_id} parent={credit['reference']} category={e.code} cause={e.message}"
        )
        return None
    return result["new_balance"]


# ===== ROUTE =====

@router.post("/webhook/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    x_webhook_signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
):
    if provider.lower() != WebhookProvider.RUBIES.value:
        raise HTTPException(status_code=404, detail=f"Unknown provider {provider}")

    raw_body = await request.body()
    if not get_rubies_service().verify_webhook_signature(raw_body, x_webhook_signature or x_signature):
        logger.warning(f"🚫 WEBHOOK_SIGNATURE_REJECTED: provider={provider} bytes={len(raw_body)}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = orjson.loads(raw_body)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    credit = is_credit_event(event)
    info = WebhookEventInfo(
        provider=WebhookProvider.RUBIES,
        event_id=event_id_for(event),
        event_type="credit" if credit else "transfer_status",
        reference_id=_reference(event),
        payload=event,
    )
    handler = handle_incoming_credit if credit else handle_transfer_status
    result = await process_webhook_with_idempotency(info, handler, event)

    return {
        "status": "duplicate" if result.duplicate else "processed",
        "processed": not result.duplicate,
        "result": result.result_data,
    }
