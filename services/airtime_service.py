"""
Airtime Purchase Service
VTU top-ups through the Bilal reseller, between ₦50 and ₦50,000.

The amount is held against the balance when the pending transaction is
inserted and settles when the reseller confirms the top-up. Airtime carries
no user fee; the per-purchase margin is only recorded in metadata.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from models import TransactionCategory, TransactionStatus, TransactionType
from services import wallet_service
from services.bilal_service import get_bilal_service
from services.data_plan_service import normalize_network
from services.fee_service import FeeService, FeeServiceType
from services.receipt_service import receipt_service
from services.transfer_intent_service import parse_amount_text
from services.wallet_service import generate_reference, transaction_to_dict
from utils.exception_handler import (
    InsufficientFunds, ProviderRejected, ProviderUnavailable, ValidationError, WalletFrozen
)
from utils.input_validation import InputValidator
from utils.pin_security import authenticate_transaction_pin, mask_phone

logger = logging.getLogger(__name__)

MIN_AIRTIME = Decimal("50")
MAX_AIRTIME = Decimal("50000")

NETWORK_PREFIXES = {
    "MTN": ("0803", "0806", "0703", "0706", "0813", "0816", "0810", "0814", "0903", "0906"),
    "AIRTEL": ("0802", "0808", "0708", "0812", "0701", "0902", "0907", "0901", "0904"),
    "GLO": ("0805", "0807", "0705", "0815", "0811", "0905"),
    "9MOBILE": ("0809", "0818", "0817", "0909", "0908"),
}

AIRTIME_INTENT = re.compile(r"\b(?:airtime|recharge)\b", re.IGNORECASE)
PHONE_IN_TEXT = re.compile(r"(?<!\d)(?:\+?234|0)[789][01]\d{8}(?!\d)")
NETWORK_IN_TEXT = re.compile(r"\b(mtn|airtel|glo|9mobile|etisalat)\b", re.IGNORECASE)


def detect_network(phone: str) -> str:
    """Network from the number's prefix; ported numbers need an explicit network"""
    prefix = phone[:4]
    for network, prefixes in NETWORK_PREFIXES.items():
        if prefix in prefixes:
            return network
    raise ValidationError(
        f"Can't tell the network for {phone}. Please add it, e.g. *buy 500 airtime for {phone} mtn*.",
        field="network",
    )


def validate_airtime_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError):
        raise ValidationError("Invalid airtime amount.", field="amount")
    if not value.is_finite() or value < MIN_AIRTIME:
        raise ValidationError(f"Minimum airtime amount is ₦{MIN_AIRTIME:,.0f}.", field="amount")
    if value > MAX_AIRTIME:
        raise ValidationError(f"Maximum airtime amount is ₦{MAX_AIRTIME:,.0f}.", field="amount")
    return value


def is_airtime_intent(text: str) -> bool:
    return bool(AIRTIME_INTENT.search(text or ""))


def parse_airtime_request(text: str, own_phone: str) -> Dict[str, Any]:
    """
    "buy 500 airtime for 08031234567 mtn" -> {amount, phone, network}.
    Without a number the top-up goes to the sender's own line.
    """
    amount = parse_amount_text(text)
    if amount is None:
        raise ValidationError("How much airtime? e.g. *buy 500 airtime*.", field="amount")
    amount = validate_airtime_amount(amount)

    match = PHONE_IN_TEXT.search(text or "")
    phone = InputValidator.validate_nigerian_mobile(match.group(0) if match else own_phone)

    named = NETWORK_IN_TEXT.search(text or "")
    network = normalize_network(named.group(1)) if named else detect_network(phone)
    return {"amount": str(amount), "phone": phone, "network": network}


async def purchase_airtime(
    user_id: str,
    network: str,
    phone: str,
    amount,
    pin: str,
    reference: Optional[str] = None,
    notify: bool = True,
) -> Dict[str, Any]:
    """
    Top up `phone` with `amount` naira of airtime.

    Returns:
        {"transaction": {...}, "newBalance": Decimal}

    Raises:
        ValidationError, AuthError, InsufficientFunds, WalletFrozen,
        ProviderRejected (transaction failed), ProviderUnavailable (transaction left pending with the funds held)
    """
    phone = InputValidator.validate_nigerian_mobile(phone)
    network = normalize_network(network)
    amount = validate_airtime_amount(amount)

    await authenticate_transaction_pin(user_id, pin)

    wallet = await wallet_service.get_wallet_summary(user_id)
    if wallet["isFrozen"]:
        raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet['freezeReason']}", user_id=user_id)

    breakdown = FeeService.calculate(FeeServiceType.AIRTIME, amount)
    if wallet["balance"] < breakdown.total_amount:
        raise InsufficientFunds(required=breakdown.total_amount, available=wallet["balance"])

    txn = await wallet_service.create_transaction(user_id, {
        "reference": reference or generate_reference("AIR"),
        "type": TransactionType.DEBIT.value,
        "category": TransactionCategory.AIRTIME_PURCHASE.value,
        "amount": amount,
        "fee": breakdown.total_fee,
        "description": f"{network} airtime ₦{amount:,.2f} for {phone}",
        "metadata": {
            "network": network,
            "phoneNumber": phone,
            "bookedMargin": breakdown.details["bookedMargin"],
            "feeBreakdown": breakdown.to_dict(),
        },
        "reserve": True,
    })
    reference = txn.reference
    if txn.status != TransactionStatus.PENDING.value:
        logger.info(f"🔁 AIRTIME_PURCHASE_REPLAY: ref={reference} status={txn.status}")
        return {"transaction": transaction_to_dict(txn), "newBalance": wallet["balance"]}

    logger.info(
        f"📱 AIRTIME_PURCHASE_STARTED: user={user_id} ref={reference} {network} "
        f"to={mask_phone(phone)} amount={amount}"
    )

    try:
        result = await get_bilal_service().purchase_airtime(network, phone, amount, request_id=reference)
    except ProviderRejected as e:
        await wallet_service.update_transaction_status(
            reference, TransactionStatus.FAILED.value, failure_reason=e.message
        )
        logger.warning(f"❌ AIRTIME_PURCHASE_FAILED: user={user_id} ref={reference} reason={e.message}")
        raise
    except ProviderUnavailable as e:
        logger.error(f"⏳ AIRTIME_PURCHASE_PENDING: user={user_id} ref={reference} provider unavailable: {e.message}")
        raise

    txn = await wallet_service.update_transaction_status(
        reference,
        TransactionStatus.COMPLETED.value,
        provider_reference=str(result.get("requestId") or reference),
        metadata={"reseller": result},
    )

    new_balance = Decimal(str(txn.balance_after))
    txn_dict = transaction_to_dict(txn)
    logger.info(f"✅ AIRTIME_PURCHASE_COMPLETED: user={user_id} ref={reference} balance={new_balance}")

    if notify:
        await receipt_service.send_receipt(wallet["phoneNumber"], txn_dict, new_balance)
    return {"transaction": txn_dict, "newBalance": new_balance}
