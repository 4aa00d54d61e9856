"""
Data Purchase Service
Sells data bundles from the plan catalogue through the Bilal reseller.

The transaction is inserted pending with the effective selling price held
against the balance; the debit settles, atomically with completion, only
after the reseller confirms delivery. A reseller rejection marks the
transaction failed and releases the hold.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from models import TransactionCategory, TransactionStatus, TransactionType
from services import wallet_service
from services.bilal_service import get_bilal_service
from services.data_plan_service import normalize_network, price_plan
from services.fee_service import FeeService, FeeServiceType
from services.receipt_service import receipt_service
from services.wallet_service import generate_reference, transaction_to_dict
from utils.exception_handler import (
    InsufficientFunds, ProviderRejected, ProviderUnavailable, WalletFrozen
)
from utils.input_validation import InputValidator
from utils.pin_security import authenticate_transaction_pin, mask_phone

logger = logging.getLogger(__name__)

def validate_recipient_phone(phone: Optional[str]) -> str:
    """Local 11-digit mobile number; +234/234 prefixes are normalised first"""
    return InputValidator.validate_nigerian_mobile(phone)


async def purchase_data(
    user_id: str,
    network: str,
    phone: str,
    plan_id,
    pin: str,
    reference: Optional[str] = None,
    notify: bool = True,
) -> Dict[str, Any]:
    """
    Buy a data bundle for `phone`.

    Returns:
        {"transaction": {...}, "newBalance": Decimal, "plan": {...}}

    Raises:
        ValidationError, AuthError, InsufficientFunds, WalletFrozen,
        ProviderRejected (transaction failed), ProviderUnavailable (transaction left pending with the funds held)
    """
    phone = validate_recipient_phone(phone)
    network = normalize_network(network)
    plan = await price_plan(network, plan_id)

    await authenticate_transaction_pin(user_id, pin)

    wallet = await wallet_service.get_wallet_summary(user_id)
    if wallet["isFrozen"]:
        raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet['freezeReason']}", user_id=user_id)

    selling = Decimal(str(plan["sellingPrice"]))
    retail = Decimal(str(plan["retailPrice"]))
    breakdown = FeeService.calculate(
        FeeServiceType.DATA, selling, selling_price=selling, retail_price=retail
    )
    if wallet["balance"] < breakdown.total_amount:
        raise InsufficientFunds(required=breakdown.total_amount, available=wallet["balance"])

    txn = await wallet_service.create_transaction(user_id, {
        "reference": reference or generate_reference("DATA"),
        "type": TransactionType.DEBIT.value,
        "category": TransactionCategory.DATA_PURCHASE.value,
        "amount": selling,
        "fee": 0,
        "description": f"{network} {plan['title']} data for {phone}",
        "metadata": {
            "network": network,
            "planId": plan["id"],
            "planTitle": f"{plan['title']} ({plan['validity']})",
            "phoneNumber": phone,
            "retailPrice": str(retail),
            "sellingPrice": str(selling),
            "margin": breakdown.details["margin"],
            "feeBreakdown": breakdown.to_dict(),
        },
        "reserve": True,
    })
    reference = txn.reference
    if txn.status != TransactionStatus.PENDING.value:
        logger.info(f"🔁 DATA_PURCHASE_REPLAY: ref={reference} status={txn.status}")
        return {"transaction": transaction_to_dict(txn), "newBalance": wallet["balance"], "plan": plan}

    logger.info(
        f"📶 DATA_PURCHASE_STARTED: user={user_id} ref={reference} {network} plan={plan['id']} "
        f"to={mask_phone(phone)} price={selling}"
    )

    try:
        result = await get_bilal_service().purchase_data(network, phone, plan["id"], request_id=reference)
    except ProviderRejected as e:
        await wallet_service.update_transaction_status(
            reference, TransactionStatus.FAILED.value, failure_reason=e.message
        )
        logger.warning(f"❌ DATA_PURCHASE_FAILED: user={user_id} ref={reference} reason={e.message}")
        raise
    except ProviderUnavailable as e:
        logger.error(f"⏳ DATA_PURCHASE_PENDING: user={user_id} ref={reference} provider unavailable: {e.message}")
        raise

    txn = await wallet_service.update_transaction_status(
        reference,
        TransactionStatus.COMPLETED.value,
        provider_reference=str(result.get("requestId") or reference),
        metadata={"reseller": result},
    )

    new_balance = Decimal(str(txn.balance_after))
    txn_dict = transaction_to_dict(txn)
    logger.info(f"✅ DATA_PURCHASE_COMPLETED: user={user_id} ref={reference} balance={new_balance}")

    if notify:
        await receipt_service.send_receipt(wallet["phoneNumber"], txn_dict, new_balance)
    return {"transaction": txn_dict, "newBalance": new_balance, "plan": plan}
