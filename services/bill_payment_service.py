"""
Bill Payment Service
Electricity bills through the Bilal reseller, ₦100 to ₦100,000 per payment.

The convenience fee comes from FeeService.utility_fee. Amount plus fee is
held when the pending transaction is inserted and settles when the reseller
confirms; prepaid meters get their token on the receipt.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from models import TransactionCategory, TransactionStatus, TransactionType
from services import wallet_service
from services.bilal_service import DISCO_IDS, get_bilal_service
from services.fee_service import FeeService, FeeServiceType
from services.receipt_service import receipt_service
from services.transfer_intent_service import parse_amount_text
from services.wallet_service import generate_reference, transaction_to_dict
from utils.exception_handler import (
    InsufficientFunds, ProviderRejected, ProviderUnavailable, ValidationError, WalletFrozen
)
from utils.pin_security import authenticate_transaction_pin

logger = logging.getLogger(__name__)

MIN_BILL = Decimal("100")
MAX_BILL = Decimal("100000")
METER_TYPES = ("prepaid", "postpaid")

DISCO_ALIASES = {
    "IKEDC": "IKEJA",
    "EKEDC": "EKO",
    "KEDCO": "KANO",
    "PHED": "PORT HARCOURT",
    "PH": "PORT HARCOURT",
    "PORTHARCOURT": "PORT HARCOURT",
    "JED": "JOS",
    "JEDC": "JOS",
    "IBEDC": "IBADAN",
    "EEDC": "ENUGU",
    "KAEDCO": "KADUNA",
    "AEDC": "ABUJA",
    "BEDC": "BENIN",
}

BILL_INTENT = re.compile(r"\b(electricity|light\s+bill|nepa|meter|prepaid|postpaid)\b", re.IGNORECASE)
METER_IN_TEXT = re.compile(r"(?<![\d,])(\d{10,13})(?![\d,])")
METER_TYPE_IN_TEXT = re.compile(r"\b(prepaid|postpaid)\b", re.IGNORECASE)
DISCO_IN_TEXT = re.compile(
    r"\b(" + "|".join(sorted((re.escape(name) for name in [*DISCO_IDS, *DISCO_ALIASES]), key=len, reverse=True))
    + r")\b",
    re.IGNORECASE,
)


def normalize_disco(disco: Optional[str]) -> str:
    value = " ".join((disco or "").upper().replace("-", " ").split())
    value = DISCO_ALIASES.get(value.replace(" ", ""), DISCO_ALIASES.get(value, value))
    if value not in DISCO_IDS:
        raise ValidationError(f"Unsupported electricity company: {disco}", field="disco")
    return value


def validate_meter(meter_type: Optional[str], meter_number: Optional[str]) -> tuple:
    meter_type = (meter_type or "").strip().lower()
    if meter_type not in METER_TYPES:
        raise ValidationError('Meter type must be either "prepaid" or "postpaid".', field="meterType")
    meter_number = re.sub(r"[\s-]", "", meter_number or "")
    if not meter_number.isdigit() or not 10 <= len(meter_number) <= 13:
        raise ValidationError("Meter number must be 10 to 13 digits.", field="meterNumber")
    return meter_type, meter_number


def validate_bill_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError):
        raise ValidationError("Invalid bill amount.", field="amount")
    if not value.is_finite() or value < MIN_BILL:
        raise ValidationError(f"Minimum bill amount is ₦{MIN_BILL:,.0f}.", field="amount")
    if value > MAX_BILL:
        raise ValidationError(f"Maximum bill amount is ₦{MAX_BILL:,.0f}.", field="amount")
    return value


def is_bill_intent(text: str) -> bool:
    return bool(BILL_INTENT.search(text or ""))


def parse_bill_request(text: str) -> Dict[str, Any]:
    """"pay 5k electricity ikeja prepaid 45012345678" -> {disco, meterType, meterNumber, amount}"""
    text = text or ""
    meter = METER_IN_TEXT.search(text)
    if not meter:
        raise ValidationError(
            "Which meter? e.g. *pay 5000 electricity ikeja prepaid 45012345678*.", field="meterNumber"
        )
    disco = DISCO_IN_TEXT.search(text)
    if not disco:
        raise ValidationError(
            "Which electricity company? e.g. Ikeja, Eko, Abuja, Ibadan.", field="disco"
        )
    amount = parse_amount_text(text[:meter.start()] + " " + text[meter.end():])
    if amount is None:
        raise ValidationError("How much? e.g. *pay 5000 electricity ikeja prepaid 45012345678*.", field="amount")

    named_type = METER_TYPE_IN_TEXT.search(text)
    meter_type, meter_number = validate_meter(named_type.group(1) if named_type else "prepaid", meter.group(1))
    return {
        "disco": normalize_disco(disco.group(1)),
        "meterType": meter_type,
        "meterNumber": meter_number,
        "amount": str(validate_bill_amount(amount)),
    }


def bill_quote(amount) -> Dict[str, Decimal]:
    breakdown = FeeService.utility_fee(FeeServiceType.ELECTRICITY, validate_bill_amount(amount))
    return {"amount": breakdown.amount, "fee": breakdown.total_fee, "total": breakdown.total_amount}


async def pay_electricity_bill(
    user_id: str,
    disco: str,
    meter_type: str,
    meter_number: str,
    amount,
    pin: str,
    reference: Optional[str] = None,
    notify: bool = True,
) -> Dict[str, Any]:
    """
    Pay an electricity bill.

    Returns:
        {"transaction": {...}, "newBalance": Decimal, "token": Optional[str]}

    Raises:
        ValidationError, AuthError, InsufficientFunds, WalletFrozen,
        ProviderRejected (transaction failed), ProviderUnavailable (transaction left pending with the funds held)
    """
    disco = normalize_disco(disco)
    meter_type, meter_number = validate_meter(meter_type, meter_number)
    amount = validate_bill_amount(amount)

    await authenticate_transaction_pin(user_id, pin)

    wallet = await wallet_service.get_wallet_summary(user_id)
    if wallet["isFrozen"]:
        raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet['freezeReason']}", user_id=user_id)

    breakdown = FeeService.utility_fee(FeeServiceType.ELECTRICITY, amount)
    if wallet["balance"] < breakdown.total_amount:
        raise InsufficientFunds(required=breakdown.total_amount, available=wallet["balance"])

    txn = await wallet_service.create_transaction(user_id, {
        "reference": reference or generate_reference("BILL"),
        "type": TransactionType.DEBIT.value,
        "category": TransactionCategory.UTILITY_BILL.value,
        "amount": amount,
        "fee": breakdown.total_fee,
        "description": f"{disco.title()} electricity ({meter_type}) for meter {meter_number}",
        "metadata": {
            "service": FeeServiceType.ELECTRICITY.value,
            "disco": disco,
            "meterType": meter_type,
            "meterNumber": meter_number,
            "feeBreakdown": breakdown.to_dict(),
        },
        "reserve": True,
    })
    reference = txn.reference
    if txn.status != TransactionStatus.PENDING.value:
        logger.info(f"🔁 BILL_PAYMENT_REPLAY: ref={reference} status={txn.status}")
        return {
            "transaction": transaction_to_dict(txn),
            "newBalance": wallet["balance"],
            "token": (txn.meta or {}).get("token"),
        }

    logger.info(
        f"⚡ BILL_PAYMENT_STARTED: user={user_id} ref={reference} disco={disco} type={meter_type} "
        f"meter=***{meter_number[-4:]} amount={amount} fee={breakdown.total_fee}"
    )

    try:
        result = await get_bilal_service().pay_electricity(
            disco, meter_type, meter_number, amount, request_id=reference
        )
    except ProviderRejected as e:
        await wallet_service.update_transaction_status(
            reference, TransactionStatus.FAILED.value, failure_reason=e.message
        )
        logger.warning(f"❌ BILL_PAYMENT_FAILED: user={user_id} ref={reference} reason={e.message}")
        raise
    except ProviderUnavailable as e:
        logger.error(f"⏳ BILL_PAYMENT_PENDING: user={user_id} ref={reference} provider unavailable: {e.message}")
        raise

    token = result.get("token")
    txn = await wallet_service.update_transaction_status(
        reference,
        TransactionStatus.COMPLETED.value,
        provider_reference=str(result.get("requestId") or reference),
        metadata={"reseller": result, "token": token},
    )

    new_balance = Decimal(str(txn.balance_after))
    txn_dict = transaction_to_dict(txn)
    logger.info(f"✅ BILL_PAYMENT_COMPLETED: user={user_id} ref={reference} balance={new_balance}")

    if notify:
        await receipt_service.send_receipt(wallet["phoneNumber"], txn_dict, new_balance)
    return {"transaction": txn_dict, "newBalance": new_balance, "token": token}
