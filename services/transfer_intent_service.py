"""
Transfer Intent Resolver
Turns chat text such as "send 1k to my mum" or "transfer 5,000 to 0123456789
gtb" into a transfer draft: amount, destination account and bank, resolved
account name and a pre-assigned reference used as the idempotency key once
the user confirms with their PIN.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from services import beneficiary_service
from services.bank_directory import find_bank_in_text, resolve_institution_code
from services.rubies_service import get_rubies_service
from services.wallet_service import generate_reference
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

TRANSFER_KEYWORDS = re.compile(r"\b(send|transfer|pay|give|move)\b", re.IGNORECASE)

AMOUNT_PATTERN = re.compile(
    r"(?<![\d.])(?:₦|ngn\s*|n(?=\d))?"
    r"(\d{1,3}(?:,\d{3})+|\d+)(\.\d+)?"
    r"(?:\s*(k|m|thousand|million)\b)?",
    re.IGNORECASE,
)
ACCOUNT_NUMBER_IN_TEXT = re.compile(r"(?<!\d)(\d{10})(?!\d)")
NICKNAME_PATTERN = re.compile(r"\bto\s+(?:my\s+)?([a-z][a-z' .-]*)", re.IGNORECASE)

MULTIPLIERS = {"k": 1000, "thousand": 1000, "m": 1_000_000, "million": 1_000_000}
STOP_WORDS = {"please", "pls", "now", "today", "abeg", "account", "bank"}


def is_transfer_intent(text: str) -> bool:
    return bool(TRANSFER_KEYWORDS.search(text or ""))


def parse_amount_text(text: str) -> Optional[Decimal]:
    """
    First money amount in free text: 1k, 2.5k, 1m, 5,000, ₦500, 500 naira.
    Ten-digit runs are account numbers and never amounts.
    """
    for match in AMOUNT_PATTERN.finditer(text or ""):
        digits, fraction, unit = match.group(1), match.group(2) or "", match.group(3)
        plain = digits.replace(",", "")
        if len(plain) >= 10 and not unit:
            continue
        try:
            value = Decimal(plain + fraction)
        except InvalidOperation:
            continue
        if unit:
            value *= MULTIPLIERS[unit.lower()]
        if value > 0:
            return value.quantize(Decimal("0.01"))
    return None


def extract_account_number(text: str) -> Optional[str]:
    match = ACCOUNT_NUMBER_IN_TEXT.search(text or "")
    return match.group(1) if match else None


def extract_nickname(text: str) -> Optional[str]:
    """"send 1k to my mum" -> "mum"; trailing amounts and filler words are dropped"""
    match = NICKNAME_PATTERN.search(text or "")
    if not match:
        return None
    words = []
    for word in match.group(1).split():
        cleaned = word.strip(".'-").lower()
        if not cleaned or cleaned in STOP_WORDS or AMOUNT_PATTERN.fullmatch(cleaned):
            break
        words.append(cleaned)
    nickname = " ".join(words)
    return nickname or None


async def resolve_transfer_intent(user_id: str, text: str) -> Dict[str, Any]:
    """
    Build a transfer draft from chat text.

    Returns:
        {amount, accountNumber, bankCode, bankName, accountName, beneficiaryId,
         nickname, narration, reference}

    Raises:
        ValidationError: amount or destination missing, or nickname unknown
    """
    amount = parse_amount_text(text)
    if amount is None:
        raise ValidationError("How much would you like to send? e.g. *send 5k to my mum*", field="amount")

    account_number = extract_account_number(text)
    draft: Dict[str, Any] = {"amount": str(amount), "beneficiaryId": None, "nickname": None}

    if account_number:
        bank_name = find_bank_in_text(text)
        if not bank_name:
            raise ValidationError(
                f"Which bank is {account_number}? e.g. *send 5k to {account_number} GTBank*", field="bankCode"
            )
        institution_code = await resolve_institution_code(bank_name=bank_name)
        enquiry = await get_rubies_service().name_enquiry(account_number, institution_code)
        draft.update({
            "accountNumber": account_number,
            "bankCode": institution_code,
            "bankName": enquiry.get("bankName") or bank_name,
            "accountName": enquiry["accountName"],
        })
    else:
        nickname = extract_nickname(text)
        if not nickname:
            raise ValidationError(
                "Who should I send it to? Give a saved name or an account number and bank.", field="accountNumber"
            )
        beneficiary = await beneficiary_service.find_by_nickname(user_id, nickname)
        if beneficiary is None:
            raise ValidationError(
                f"I couldn't find '{nickname}' in your saved beneficiaries. "
                f"Send the account number and bank instead.",
                field="nickname",
            )
        draft.update({
            "accountNumber": beneficiary["accountNumber"],
            "bankCode": beneficiary["bankCode"],
            "bankName": beneficiary["bankName"],
            "accountName": beneficiary["name"],
            "beneficiaryId": beneficiary["id"],
            "nickname": beneficiary["nickname"] or nickname,
        })

    draft["narration"] = None
    draft["reference"] = generate_reference("TRF")
    logger.info(
        f"🧭 TRANSFER_INTENT_RESOLVED: user={user_id} amount={amount} "
        f"account=***{draft['accountNumber'][-4:]} via={'beneficiary' if draft['beneficiaryId'] else 'account'}"
    )
    return draft
