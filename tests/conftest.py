"""
Shared fixtures for the ChatWallet test suite

Key Components:
1. In-memory SQLite database bound to the shared session factory (one
   connection shared across worker threads, schema rebuilt per test)
2. In-process short-TTL store swapped in for every test
3. Provider mocks (Rubies, Bilal, WhatsApp) installed as the module singletons
   so no test ever reaches the network
4. Factories for onboarded users, wallets and ledger rows
"""

import os

# Settings are read at import time; pin them before any project import
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FLOW_SECRET_KEY", "test-flow-secret")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from database import SessionLocal, managed_session
from models import (
    Base, KycStatus, OnboardingStep, Transaction, TransactionStatus, TransactionType, User, Wallet, utcnow
)
from services import bilal_service, rubies_service, whatsapp_service
from services.session_store import InMemoryTTLStore, SessionStore, set_session_store
from utils import background_task_runner
from utils.pin_security import hash_pin
from tests.wallet_test_foundation import TEST_PHONE, TEST_PIN

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SessionLocal.configure(bind=TEST_ENGINE)

# Hashing a PIN costs ~100k PBKDF2 rounds; hash the common one once
_PIN_HASHES: Dict[str, str] = {}


def _pin_hash(pin: str) -> str:
    if pin not in _PIN_HASHES:
        _PIN_HASHES[pin] = hash_pin(pin)
    return _PIN_HASHES[pin]


@pytest.fixture(autouse=True)
def test_db():
    """Fresh schema for every test"""
    Base.metadata.create_all(TEST_ENGINE)
    yield TEST_ENGINE
    Base.metadata.drop_all(TEST_ENGINE)


@pytest.fixture(autouse=True)
def session_store():
    store = SessionStore(InMemoryTTLStore())
    set_session_store(store)
    yield store
    set_session_store(None)


@pytest.fixture(autouse=True)
def inline_background_tasks(monkeypatch):
    """Background work is awaited inline so assertions see its effects"""
    monkeypatch.setattr(background_task_runner._global_runner, "is_test", True)


def _fund_transfer_answer(**kwargs) -> Dict[str, Any]:
    reference = kwargs["reference"]
    return {
        "success": True,
        "status": TransactionStatus.COMPLETED.value,
        "responseCode": "00",
        "responseMessage": "Approved",
        "providerReference": f"RB-{reference}",
        "sessionId": f"S-{reference}",
        "raw": {"responseCode": "00"},
    }


@pytest.fixture(autouse=True)
def mock_rubies(monkeypatch):
    """Rubies client double; fund transfers succeed unless a test says otherwise"""
    rubies = MagicMock(name="RubiesService")
    rubies.name_enquiry = AsyncMock(side_effect=lambda account_number, bank_code: {
        "accountName": "JOHN DOE",
        "accountNumber": account_number,
        "bankCode": bank_code,
        "bankName": None,
        "sessionId": "NE-1",
    })
    rubies.fund_transfer = AsyncMock(side_effect=_fund_transfer_answer)
    rubies.get_bank_list = AsyncMock(return_value=[])
    rubies.transaction_status_query = AsyncMock(return_value=None)
    rubies.wallet_balance_enquiry = AsyncMock(return_value=Decimal("1000000"))
    rubies.validate_bvn = AsyncMock(return_value={"verified": True, "data": {}})
    rubies.initiate_virtual_account = AsyncMock(return_value={"reference": "VA_TEST_1", "otpRequired": True})
    rubies.complete_virtual_account = AsyncMock(return_value={
        "accountNumber": "9000000001",
        "accountName": "ADA OBI",
        "bankName": "RUBIES MFB",
        "bankCode": "090175",
        "reference": "VA_TEST_1",
    })
    rubies.verify_webhook_signature = Mock(return_value=True)
    monkeypatch.setattr(rubies_service, "_rubies_service", rubies)
    return rubies


@pytest.fixture(autouse=True)
def mock_bilal(monkeypatch):
    bilal = MagicMock(name="BilalService")
    bilal.purchase_data = AsyncMock(side_effect=lambda network, phone, plan_id, request_id: {
        "requestId": request_id,
        "amount": "550",
        "network": network,
        "dataPlan": "1GB",
        "phoneNumber": phone,
        "message": "Successful",
    })
    bilal.purchase_airtime = AsyncMock(side_effect=lambda network, phone, amount, request_id: {
        "requestId": request_id,
        "amount": str(amount),
        "discount": "0",
        "network": network,
        "phoneNumber": phone,
        "message": "Successful",
    })
    bilal.pay_electricity = AsyncMock(side_effect=lambda disco, meter_type, meter_number, amount, request_id: {
        "requestId": request_id,
        "amount": str(amount),
        "charges": "0",
        "disco": disco,
        "meterType": meter_type,
        "meterNumber": meter_number,
        "token": "1234-5678-9012-3456-7890" if meter_type == "prepaid" else None,
        "message": "Successful",
    })
    monkeypatch.setattr(bilal_service, "_bilal_service", bilal)
    return bilal


@pytest.fixture(autouse=True)
def mock_whatsapp(monkeypatch):
    whatsapp = MagicMock(name="WhatsAppService")
    whatsapp.send_text = AsyncMock(return_value=True)
    whatsapp.send_image = AsyncMock(return_value=True)
    whatsapp.send_flow = AsyncMock(return_value=True)
    whatsapp.mark_as_read = AsyncMock(return_value=True)
    monkeypatch.setattr(whatsapp_service, "_whatsapp_service", whatsapp)
    return whatsapp


@pytest.fixture
def user_factory():
    """
    Create an onboarded user with a funded wallet.

    Returns a function; call it with overrides and get the user id back.
    """
    counter = {"n": 0}

    def create(
        phone_number: Optional[str] = None,
        balance="10000",
        pin: Optional[str] = TEST_PIN,
        onboarded: bool = True,
        virtual_account: Optional[str] = None,
        is_frozen: bool = False,
        is_banned: bool = False,
        with_wallet: bool = True,
    ) -> str:
        counter["n"] += 1
        phone_number = phone_number or (TEST_PHONE if counter["n"] == 1 else f"+23480100000{counter['n']:02d}")
        with managed_session() as session:
            user = User(
                phone_number=phone_number,
                whatsapp_name="Ada",
                first_name="Ada",
                last_name="Obi",
                gender="female",
                onboarding_step=OnboardingStep.COMPLETED.value if onboarded else OnboardingStep.INCOMPLETE.value,
                kyc_status=KycStatus.VERIFIED.value if onboarded else KycStatus.INCOMPLETE.value,
                pin_hash=_pin_hash(pin) if pin else None,
                is_banned=is_banned,
            )
            session.add(user)
            session.flush()
            if with_wallet:
                amount = Decimal(str(balance))
                session.add(Wallet(
                    user_id=user.id,
                    balance=amount,
                    ledger_balance=amount,
                    virtual_account_number=virtual_account,
                    virtual_account_bank="RUBIES MFB" if virtual_account else None,
                    virtual_account_name="ADA OBI" if virtual_account else None,
                    is_frozen=is_frozen,
                    freeze_reason="Compliance review" if is_frozen else None,
                ))
            return user.id

    return create


@pytest.fixture
def transaction_factory():
    """Insert a ledger row directly, optionally back-dated"""

    def create(
        user_id: str,
        reference: str,
        amount="1000",
        fee="15",
        status: str = TransactionStatus.PENDING.value,
        category: str = "bank_transfer",
        age_minutes: int = 0,
        recipient_details: Optional[Dict[str, Any]] = None,
    ) -> str:
        amount = Decimal(str(amount))
        fee = Decimal(str(fee))
        created = utcnow() - timedelta(minutes=age_minutes)
        with managed_session() as session:
            session.add(Transaction(
                reference=reference,
                user_id=user_id,
                type=TransactionType.DEBIT.value,
                category=category,
                amount=amount,
                fee=fee,
                total_amount=amount + fee,
                status=status,
                description="Transfer to JOHN DOE",
                recipient_details=recipient_details or {
                    "accountNumber": "1001011000",
                    "accountName": "JOHN DOE",
                    "bankCode": "010",
                    "institutionCode": "000010",
                    "bankName": "Test Bank",
                    "narration": "Rent",
                },
                meta={"isInternal": False, "isVisibleToUser": True, "isPlatformFee": False},
                created_at=created,
                updated_at=created,
            ))
        return reference

    return create
