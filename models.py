"""
ChatWallet Payments Backend - Database Schema
=============================================

Schema for a chat-driven NGN retail wallet:
- Users onboarded over WhatsApp with BVN KYC and a transaction PIN
- One NGN wallet per user, funded through a provider-issued virtual account
- Append-only transaction ledger (bank transfers, data, bills, fees)
- Saved beneficiaries for nickname-based transfers
- Webhook event ledger for provider callback idempotency
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; all columns store naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OnboardingStep(Enum):
    INCOMPLETE = "incomplete"
    PERSONAL_DETAILS = "personal_details"
    BVN = "bvn"
    PIN_SETUP = "pin_setup"
    COMPLETED = "completed"


class KycStatus(Enum):
    INCOMPLETE = "incomplete"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class TransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionCategory(Enum):
    BANK_TRANSFER = "bank_transfer"
    AIRTIME_PURCHASE = "airtime_purchase"
    DATA_PURCHASE = "data_purchase"
    UTILITY_BILL = "utility_bill"
    MAINTENANCE_FEE = "maintenance_fee"
    FEE_CHARGE = "fee_charge"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    INCOMING_TRANSFER = "incoming_transfer"


class TransactionStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_SETTLEMENT = "pending_settlement"
    CANCELLED = "cancelled"


class BeneficiaryCategory(Enum):
    FAMILY = "family"
    FRIEND = "friend"
    BUSINESS = "business"
    OTHER = "other"


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Core user entity - WhatsApp phone number identity"""
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True, index=True)  # E.164
    whatsapp_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    middle_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # YYYY-MM-DD
    gender: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Onboarding and KYC
    onboarding_step: Mapped[str] = mapped_column(String(20), default=OnboardingStep.INCOMPLETE.value, nullable=False)
    kyc_status: Mapped[str] = mapped_column(String(20), default=KycStatus.INCOMPLETE.value, nullable=False)
    bvn_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    bvn_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Transaction PIN (PBKDF2 "salt$hash")
    pin_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    pin_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pin_locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Embedded conversation state {intent, awaitingInput, context, step, data}
    conversation_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="user", uselist=False)
    beneficiaries = relationship("Beneficiary", back_populates="user")

    __table_args__ = (
        CheckConstraint(_in_clause('onboarding_step', OnboardingStep), name='ck_users_onboarding_step'),
        CheckConstraint(_in_clause('kyc_status', KycStatus), name='ck_users_kyc_status'),
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        name = " ".join(p for p in parts if p)
        return name or self.whatsapp_name or "Customer"

    @property
    def is_onboarded(self) -> bool:
        return self.onboarding_step == OnboardingStep.COMPLETED.value


class Wallet(Base):
    """Single NGN wallet per user"""
    __tablename__ = 'wallets'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, unique=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="NGN", nullable=False)

    # Spendable balance and internal ledger total; ledger_balance - balance is any
    # amount lowered by a provider resync and awaiting operator reconciliation
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0.00"), nullable=False)
    ledger_balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0.00"), nullable=False)

    virtual_account_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True, index=True)
    virtual_account_bank: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    virtual_account_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    virtual_account_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_frozen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    freeze_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_positive'),
        CheckConstraint('balance <= ledger_balance', name='ck_wallet_balance_within_ledger'),
    )


class Transaction(Base):
    """Append-only ledger entry"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True, default=new_uuid)
    reference = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)

    type = Column(String(10), nullable=False)
    category = Column(String(30), nullable=False, index=True)
    amount = Column(Numeric(20, 2), nullable=False)
    fee = Column(Numeric(20, 2), default=Decimal("0.00"), nullable=False)
    total_amount = Column(Numeric(20, 2), nullable=False)
    status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)
    description = Column(Text, nullable=True)

    # {accountNumber, accountName, bankCode, bankName, narration}
    recipient_details = Column(JSONType, nullable=True)
    # isInternal, isVisibleToUser, isPlatformFee, parentTransactionReference, feeBreakdown...
    meta = Column("metadata", JSONType, nullable=False, default=dict)

    parent_reference = Column(String(64), ForeignKey('transactions.reference'), nullable=True, index=True)
    provider_reference = Column(String(128), nullable=True, index=True)
    session_id = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)

    balance_before = Column(Numeric(20, 2), nullable=True)
    balance_after = Column(Numeric(20, 2), nullable=True)
    # funds taken from the spendable balance while the provider call is in flight
    held_amount = Column(Numeric(20, 2), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    user = relationship("User")

    __table_args__ = (
        CheckConstraint(_in_clause('type', TransactionType), name='ck_transactions_type'),
        CheckConstraint(_in_clause('category', TransactionCategory), name='ck_transactions_category'),
        CheckConstraint(_in_clause('status', TransactionStatus), name='ck_transactions_status'),
        CheckConstraint('amount >= 0', name='ck_transactions_amount_positive'),
        Index('ix_transactions_user_status_created', 'user_id', 'status', 'created_at'),
        Index('ix_transactions_user_category_created', 'user_id', 'category', 'created_at'),
    )

    @property
    def is_visible_to_user(self) -> bool:
        return (self.meta or {}).get("isVisibleToUser", True)


class Beneficiary(Base):
    """Saved transfer recipient"""
    __tablename__ = 'beneficiaries'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    nickname: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    account_number: Mapped[str] = mapped_column(String(10), nullable=False)
    bank_code: Mapped[str] = mapped_column(String(10), nullable=False)
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(20), default=BeneficiaryCategory.OTHER.value, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    total_transactions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0.00"), nullable=False)
    average_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0.00"), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="beneficiaries")

    __table_args__ = (
        CheckConstraint(_in_clause('category', BeneficiaryCategory), name='ck_beneficiaries_category'),
        Index(
            'uq_beneficiaries_active_account',
            'user_id', 'account_number', 'bank_code',
            unique=True,
            postgresql_where=text('is_active'),
            sqlite_where=text('is_active'),
        ),
        Index('ix_beneficiaries_user_nickname', 'user_id', 'nickname'),
    )


class KVStore(Base):
    """Sparse admin-tunable settings (e.g. data_pricing_overrides)"""
    __tablename__ = 'kv_store'

    key = Column(String(128), primary_key=True)
    value = Column(JSONType, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class WebhookEventLedger(Base):
    """Webhook event ledger for provider callback idempotency"""
    __tablename__ = 'webhook_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    reference_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSONType, nullable=False)
    status = Column(String(20), default='processing', nullable=False, index=True)
    processing_result = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    duplicate_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
        Index('ix_webhook_events_provider_status', 'event_provider', 'status'),
    )
