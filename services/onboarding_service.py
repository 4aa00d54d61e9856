"""
Onboarding Service
User registration by WhatsApp number, personal details, BVN capture, PIN
setup with wallet creation, and two-step virtual account provisioning
(initiate, then complete with the OTP the provider sends to the customer).
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from database import run_in_transaction
from models import KycStatus, OnboardingStep, User, Wallet, utcnow
from services.rubies_service import get_rubies_service
from services.session_store import get_session_store, otp_key
from services.whatsapp_service import get_whatsapp_service
from utils.background_task_runner import run_io_task
from utils.conversation_state_helper import (
    AwaitingInput, ConversationState, clear_conversation_state, set_conversation_state
)
from utils.exception_handler import (
    ChatWalletError, ProviderRejected, ProviderUnavailable, UserNotFound, ValidationError, WalletNotFound
)
from utils.input_validation import InputValidator
from utils.pin_security import hash_pin, mask_phone, validate_pin_format

logger = logging.getLogger(__name__)

BVN_PATTERN = re.compile(r"^\d{11}$")
OTP_PATTERN = re.compile(r"^\d{4,8}$")

ONBOARDING_INTENT = "onboarding"


def normalize_phone_number(phone: str) -> str:
    """E.164: 08012345678 / 2348012345678 -> +2348012345678"""
    return InputValidator.validate_phone(phone)


def validate_bvn(bvn: Optional[str]) -> str:
    bvn = (bvn or "").strip()
    if not BVN_PATTERN.match(bvn):
        raise ValidationError("BVN must be exactly 11 digits.", field="bvn")
    return bvn


def _parse_date_of_birth(value: Optional[str]) -> Optional[str]:
    """dd/mm/yyyy, yyyy-mm-dd or epoch millis (flow DatePicker) -> yyyy-mm-dd"""
    if not value:
        return None
    value = str(value).strip()
    if value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
    for fmt in ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y"):
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    raise ValidationError("Date of birth must look like DD/MM/YYYY.", field="dateOfBirth")


def _parse_gender(value: Optional[str]) -> Optional[str]:
    lowered = (value or "").strip().lower()
    if not lowered:
        return None
    if "female" in lowered or lowered == "f":
        return "female"
    if "male" in lowered or lowered == "m":
        return "male"
    return "other"


def user_to_dict(user: User) -> Dict[str, Any]:
    wallet = user.wallet
    return {
        "id": user.id,
        "phoneNumber": user.phone_number,
        "fullName": user.full_name,
        "onboardingStep": user.onboarding_step,
        "kycStatus": user.kyc_status,
        "isBanned": user.is_banned,
        "hasPin": bool(user.pin_hash),
        "virtualAccountNumber": wallet.virtual_account_number if wallet else None,
        "virtualAccountBank": wallet.virtual_account_bank if wallet else None,
    }


class OnboardingService:
    """Onboarding steps bound to one SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def _user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found", user_id=user_id)
        return user

    def get_or_create_user(self, phone_number: str, whatsapp_name: Optional[str] = None) -> User:
        phone_number = normalize_phone_number(phone_number)
        user = self.db.execute(select(User).where(User.phone_number == phone_number)).scalar_one_or_none()
        if user is None:
            user = User(phone_number=phone_number, whatsapp_name=whatsapp_name)
            self.db.add(user)
            self.db.flush()
            logger.info(f"👤 USER_REGISTERED: id={user.id} phone={mask_phone(phone_number)}")
        elif whatsapp_name and user.whatsapp_name != whatsapp_name:
            user.whatsapp_name = whatsapp_name
        user.last_seen_at = utcnow()
        return user

    def save_personal_details(self, user_id: str, details: Dict[str, Any]) -> User:
        first_name = (details.get("firstName") or "").strip()
        last_name = (details.get("lastName") or "").strip()
        if not first_name:
            raise ValidationError("First name is required.", field="firstName")
        if not last_name:
            raise ValidationError("Last name is required.", field="lastName")

        user = self._user(user_id)
        user.first_name = first_name
        user.last_name = last_name
        user.middle_name = (details.get("middleName") or "").strip() or None
        user.email = (details.get("email") or "").strip() or None
        user.gender = _parse_gender(details.get("gender"))
        user.date_of_birth = _parse_date_of_birth(details.get("dateOfBirth"))
        user.onboarding_step = OnboardingStep.BVN.value
        self.db.flush()
        logger.info(f"📝 ONBOARDING_DETAILS_SAVED: user={user_id}")
        return user

    def record_bvn(self, user_id: str, bvn: str) -> User:
        bvn = validate_bvn(bvn)
        user = self._user(user_id)
        user.bvn_last4 = bvn[-4:]
        user.onboarding_step = OnboardingStep.PIN_SETUP.value
        self.db.flush()
        logger.info(f"🪪 ONBOARDING_BVN_CAPTURED: user={user_id} bvn=***{bvn[-4:]}")
        return user

    def set_pin_and_create_wallet(self, user_id: str, pin: str, confirm_pin: str) -> Wallet:
        """PIN hash, wallet creation and KYC pending in one unit; idempotent on the wallet"""
        pin = validate_pin_format(pin, field="pin")
        if pin != (confirm_pin or "").strip():
            raise ValidationError("PINs do not match. Please try again.", field="confirmPin")

        user = self._user(user_id)
        user.pin_hash = hash_pin(pin)
        user.pin_attempts = 0
        user.pin_locked_until = None
        user.onboarding_step = OnboardingStep.PIN_SETUP.value
        user.kyc_status = KycStatus.PENDING.value

        wallet = self.db.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(user_id=user_id)
            self.db.add(wallet)
            logger.info(f"👛 WALLET_CREATED: user={user_id}")
        self.db.flush()
        return wallet

    def set_kyc_result(self, user_id: str, verified: bool) -> User:
        user = self._user(user_id)
        user.bvn_verified = verified
        user.kyc_status = KycStatus.VERIFIED.value if verified else KycStatus.REJECTED.value
        self.db.flush()
        return user

    def provisioning_details(self, user_id: str) -> Dict[str, Any]:
        user = self._user(user_id)
        return {
            "firstName": user.first_name,
            "lastName": user.last_name,
            "gender": (user.gender or "male").capitalize(),
        }

    def store_virtual_account_reference(self, user_id: str, reference: str) -> Wallet:
        wallet = self.db.execute(
            select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            raise WalletNotFound(f"Wallet for user {user_id} not found", user_id=user_id)
        wallet.virtual_account_reference = reference
        self.db.flush()
        return wallet

    def store_virtual_account(self, user_id: str, account: Dict[str, Any]) -> Wallet:
        """Attach the provisioned account and complete onboarding"""
        wallet = self.db.execute(
            select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            raise WalletNotFound(f"Wallet for user {user_id} not found", user_id=user_id)
        wallet.virtual_account_number = account["accountNumber"]
        wallet.virtual_account_name = account.get("accountName")
        wallet.virtual_account_bank = account.get("bankName")
        wallet.virtual_account_reference = account.get("reference") or wallet.virtual_account_reference
        self._user(user_id).onboarding_step = OnboardingStep.COMPLETED.value
        self.db.flush()
        logger.info(f"🏦 VIRTUAL_ACCOUNT_PROVISIONED: user={user_id} account=***{account['accountNumber'][-4:]}")
        return wallet


def _unit(fn):
    return run_io_task(run_in_transaction, lambda s: fn(OnboardingService(s)))


async def get_or_create_user(phone_number: str, whatsapp_name: Optional[str] = None) -> Dict[str, Any]:
    return await _unit(lambda svc: user_to_dict(svc.get_or_create_user(phone_number, whatsapp_name)))


async def save_personal_details(user_id: str, details: Dict[str, Any]) -> None:
    await _unit(lambda svc: svc.save_personal_details(user_id, details))


async def record_bvn(user_id: str, bvn: str) -> None:
    await _unit(lambda svc: svc.record_bvn(user_id, bvn))


async def complete_onboarding(user_id: str, pin: str, confirm_pin: str, bvn: Optional[str] = None) -> Dict[str, Any]:
    """
    Final onboarding screen: hash the PIN, create the wallet, mark KYC pending
    and validate the BVN with the provider. Virtual account provisioning is
    started in the background when the BVN is known.
    """
    await _unit(lambda svc: svc.set_pin_and_create_wallet(user_id, pin, confirm_pin))
    logger.info(f"🔐 ONBOARDING_PIN_SET: user={user_id}")

    kyc_status = KycStatus.PENDING.value
    if bvn:
        bvn = validate_bvn(bvn)
        try:
            await get_rubies_service().validate_bvn(bvn)
            await _unit(lambda svc: svc.set_kyc_result(user_id, True))
            kyc_status = KycStatus.VERIFIED.value
        except ProviderRejected as e:
            await _unit(lambda svc: svc.set_kyc_result(user_id, False))
            kyc_status = KycStatus.REJECTED.value
            logger.warning(f"⚠️ KYC_BVN_REJECTED: user={user_id} cause={e.message}")
        except ProviderUnavailable as e:
            logger.warning(f"⚠️ KYC_BVN_DEFERRED: user={user_id} cause={e.message}")

    return {"userId": user_id, "kycStatus": kyc_status}


async def provision_virtual_account(user_id: str, bvn: str) -> Dict[str, Any]:
    """
    Step one of provisioning. The provider texts an OTP to the customer; the
    conversation is left awaiting it so the chat reply completes step two.
    """
    user = await _unit(lambda svc: user_to_dict(svc._user(user_id)))
    if user["virtualAccountNumber"]:
        return {"status": "exists", "accountNumber": user["virtualAccountNumber"]}

    details = await _unit(lambda svc: svc.provisioning_details(user_id))
    if not details["firstName"] or not details["lastName"]:
        raise ValidationError("Personal details are incomplete.", field="firstName")

    initiated = await get_rubies_service().initiate_virtual_account({
        "userId": user_id,
        "bvn": validate_bvn(bvn),
        "firstName": details["firstName"],
        "lastName": details["lastName"],
        "gender": details["gender"],
        "phoneNumber": "0" + user["phoneNumber"][4:] if user["phoneNumber"].startswith("+234") else user["phoneNumber"],
    })
    await _unit(lambda svc: svc.store_virtual_account_reference(user_id, initiated["reference"]))

    await set_conversation_state(user_id, ConversationState(
        intent=ONBOARDING_INTENT,
        awaiting_input=AwaitingInput.VIRTUAL_ACCOUNT_OTP.value,
        context="virtual_account",
        data={"reference": initiated["reference"]},
    ))
    await get_whatsapp_service().send_text(
        user["phoneNumber"],
        "📲 We've sent a one-time code to your phone number to activate your account. "
        "Reply with the code here.",
    )
    logger.info(f"🏦 VIRTUAL_ACCOUNT_OTP_REQUESTED: user={user_id} ref={initiated['reference']}")
    return {"status": "otp_required", "reference": initiated["reference"]}


async def submit_virtual_account_otp(user_id: str, phone_number: str, otp: str) -> None:
    """Chat reply carrying the provisioning OTP; kept under otp:{phone} until used"""
    otp = (otp or "").strip()
    if not OTP_PATTERN.match(otp):
        raise ValidationError("Please reply with the numeric code we sent you.", field="otp")
    await get_session_store().set(otp_key(phone_number), {"otp": otp}, ttl=Config.OTP_TTL)


async def complete_virtual_account(user_id: str, phone_number: str, reference: str) -> Dict[str, Any]:
    """Step two: exchange the stored OTP for the account number and notify the user"""
    store = get_session_store()
    stored = await store.get(otp_key(phone_number))
    if not stored or not stored.get("otp"):
        raise ValidationError("Your code has expired. Please request a new one.", field="otp")

    account = await get_rubies_service().complete_virtual_account(reference, stored["otp"])
    await store.delete(otp_key(phone_number))
    await _unit(lambda svc: svc.store_virtual_account(user_id, {**account, "reference": reference}))
    await clear_conversation_state(user_id)

    await get_whatsapp_service().send_text(
        phone_number,
        f"🎉 Your {Config.PLATFORM_NAME} account is ready!\n\n"
        f"Account number: {account['accountNumber']}\n"
        f"Bank: {account.get('bankName')}\n"
        f"Name: {account.get('accountName')}\n\n"
        f"Transfer money into this account to fund your wallet.",
    )
    return account


async def start_virtual_account_provisioning(user_id: str, bvn: str) -> None:
    """Background entry point; failures reach the user as a chat message"""
    try:
        await provision_virtual_account(user_id, bvn)
    except ChatWalletError as e:
        logger.error(f"❌ VIRTUAL_ACCOUNT_FAILED: user={user_id} category={e.code} cause={e.message}")
        user = await _unit(lambda svc: user_to_dict(svc._user(user_id)))
        await get_whatsapp_service().send_text(
            user["phoneNumber"],
            f"⚠️ We couldn't set up your account number yet: {e.user_message} "
            f"Contact {Config.SUPPORT_CONTACT} if this continues.",
        )
