"""
Bank directory: institution-code resolution for outbound transfers

The provider wants 6-digit NIP institution codes. Chat input and saved
beneficiaries often carry a 3-digit CBN code or a bank name instead, so codes
are resolved in order: provider bank list (cached), then the static tables.
"""

import logging
import re
from typing import Dict, List, Optional

from services.rubies_service import get_rubies_service
from utils.exception_handler import ValidationError, ProviderUnavailable, ProviderRejected

logger = logging.getLogger(__name__)

# Sandbox test bank used by the provider's dev environment
TEST_BANK_CBN_CODE = "010"
TEST_BANK_INSTITUTION_CODE = "000010"

# 3-digit CBN code -> bank name
CBN_BANK_NAMES: Dict[str, str] = {
    "044": "Access Bank",
    "023": "Citibank",
    "050": "Ecobank",
    "084": "Enterprise Bank",
    "070": "Fidelity Bank",
    "011": "First Bank",
    "214": "First City Monument Bank",
    "058": "Guaranty Trust Bank",
    "030": "Heritage Bank",
    "301": "Jaiz Bank",
    "082": "Keystone Bank",
    "076": "Polaris Bank",
    "101": "Providus Bank",
    "221": "Stanbic IBTC Bank",
    "068": "Standard Chartered Bank",
    "232": "Sterling Bank",
    "032": "Union Bank",
    "033": "United Bank for Africa",
    "215": "Unity Bank",
    "035": "Wema Bank",
    "057": "Zenith Bank",
    "010": "Test Bank",
}

# Lower-case bank name or alias -> 6-digit institution code
STATIC_INSTITUTION_CODES: Dict[str, str] = {
    "access": "000014", "access bank": "000014",
    "citibank": "000023", "citi bank": "000023",
    "ecobank": "000050", "eco bank": "000050",
    "enterprise": "000084", "enterprise bank": "000084",
    "fidelity": "000070", "fidelity bank": "000070",
    "first": "000016", "first bank": "000016", "firstbank": "000016", "fbn": "000016",
    "first bank of nigeria": "000016",
    "fcmb": "000214", "first city monument bank": "000214",
    "gtb": "000058", "gtbank": "000058", "guaranty trust": "000058", "guaranty trust bank": "000058",
    "heritage": "000030", "heritage bank": "000030",
    "jaiz": "000119", "jaiz bank": "000119",
    "keystone": "000082", "keystone bank": "000082",
    "polaris": "000107", "polaris bank": "000107",
    "providus": "000106", "providus bank": "000106",
    "stanbic": "000221", "stanbic ibtc": "000221", "stanbic ibtc bank": "000221", "ibtc": "000221",
    "standard chartered": "000068", "standard chartered bank": "000068",
    "sterling": "000232", "sterling bank": "000232",
    "union": "000032", "union bank": "000032",
    "uba": "000033", "united bank for africa": "000033",
    "unity": "000215", "unity bank": "000215",
    "wema": "000035", "wema bank": "000035", "alat": "000094",
    "zenith": "000057", "zenith bank": "000057",
    "opay": "000090", "palmpay": "000091", "kuda": "000092", "carbon": "000093",
    "vbank": "000095", "v bank": "000095", "rubies": "000096", "moniepoint": "000104",
    "9psb": "000105", "fairmoney": "000099", "vfd": "000121", "titan trust": "000108",
    "test": TEST_BANK_INSTITUTION_CODE, "test bank": TEST_BANK_INSTITUTION_CODE,
}

# Aliases as typed in chat -> display name
BANK_ALIASES: Dict[str, str] = {
    "gtb": "Guaranty Trust Bank", "gtbank": "Guaranty Trust Bank", "guaranty": "Guaranty Trust Bank",
    "fbn": "First Bank", "firstbank": "First Bank", "first bank": "First Bank",
    "uba": "United Bank for Africa", "fcmb": "First City Monument Bank",
    "access": "Access Bank", "zenith": "Zenith Bank", "fidelity": "Fidelity Bank",
    "wema": "Wema Bank", "alat": "Wema Bank", "union": "Union Bank", "sterling": "Sterling Bank",
    "stanbic": "Stanbic IBTC Bank", "keystone": "Keystone Bank", "ecobank": "Ecobank",
    "polaris": "Polaris Bank", "heritage": "Heritage Bank", "providus": "Providus Bank",
    "opay": "Opay", "palmpay": "PalmPay", "kuda": "Kuda Bank", "moniepoint": "Moniepoint",
    "carbon": "Carbon", "vbank": "VBank", "rubies": "Rubies MFB", "test bank": "Test Bank",
}

_SIX_DIGITS = re.compile(r"^\d{6}$")
_THREE_DIGITS = re.compile(r"^\d{3}$")


def find_bank_in_text(text: str) -> Optional[str]:
    """Return the display name of the first bank alias mentioned in free text"""
    lowered = f" {text.lower()} "
    # longest alias first so "first bank" wins over "first"
    for alias in sorted(BANK_ALIASES, key=len, reverse=True):
        if re.search(rf"\b{re.escape(alias)}\b", lowered):
            return BANK_ALIASES[alias]
    return None


def bank_name_for_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    if _THREE_DIGITS.match(code):
        return CBN_BANK_NAMES.get(code)
    for name, institution in STATIC_INSTITUTION_CODES.items():
        if institution == code and " " in name:
            return name.title()
    return None


def _static_code_for_name(name: str) -> Optional[str]:
    lowered = name.lower().strip()
    if lowered in STATIC_INSTITUTION_CODES:
        return STATIC_INSTITUTION_CODES[lowered]
    for key in sorted(STATIC_INSTITUTION_CODES, key=len, reverse=True):
        if len(key) > 3 and key in lowered:
            return STATIC_INSTITUTION_CODES[key]
    return None


def _dynamic_code_for_name(name: str, banks: List[Dict[str, str]]) -> Optional[str]:
    lowered = name.lower().strip()
    for bank in banks:
        if (bank.get("name") or "").lower() == lowered:
            return bank.get("code")
    for bank in banks:
        bank_name = (bank.get("name") or "").lower()
        if bank_name and (lowered in bank_name or bank_name in lowered):
            return bank.get("code")
    return None


async def resolve_institution_code(bank_code: Optional[str] = None, bank_name: Optional[str] = None) -> str:
    """
    Resolve a 6-digit institution code from a CBN code and/or a bank name.

    Raises:
        ValidationError: when neither input maps to a known institution
    """
    code = (bank_code or "").strip()
    if _SIX_DIGITS.match(code):
        return code
    if code == TEST_BANK_CBN_CODE:
        return TEST_BANK_INSTITUTION_CODE

    name = bank_name or (CBN_BANK_NAMES.get(code) if _THREE_DIGITS.match(code) else None)
    if not name:
        raise ValidationError(f"Unknown bank code: {bank_code}", field="bankCode")

    try:
        banks = await get_rubies_service().get_bank_list()
        resolved = _dynamic_code_for_name(name, banks)
        if resolved:
            logger.debug(f"🏦 Bank {name!r} resolved from provider list: {resolved}")
            return resolved
    except (ProviderUnavailable, ProviderRejected) as e:
        logger.warning(f"⚠️ BANK_LIST_UNAVAILABLE: falling back to static table for {name!r}: {e}")

    resolved = _static_code_for_name(name)
    if resolved:
        logger.info(f"🏦 Bank {name!r} resolved from static table: {resolved}")
        return resolved

    raise ValidationError(f"Could not resolve a bank code for {name}", field="bankCode")
