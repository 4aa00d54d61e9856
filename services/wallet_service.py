"""
Wallet Service - the ledger of record

Every wallet mutation happens inside one database transaction that also
inserts or updates the Transaction row, with the wallet row locked
(SELECT ... FOR UPDATE). Async callers use the module-level coroutines,
which run the sync unit of work in a worker thread.

Debits that wait on a provider hold their total: `balance` drops when the
pending row is inserted, `ledger_balance` follows on completion, and a
failed or cancelled transaction gives the hold back.
"""

import logging
import secrets
import time
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from database import run_in_transaction
from models import (
    User, Wallet, Transaction, TransactionType, TransactionStatus, TransactionCategory, utcnow
)
from utils.background_task_runner import run_io_task
from utils.exception_handler import (
    ValidationError, InsufficientFunds, WalletFrozen, UserNotFound, WalletNotFound
)
from utils.transaction_state_validator import TransactionStateValidator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Statuses that count toward daily/monthly transfer limits
LIMIT_COUNTED_STATUSES = (
    TransactionStatus.PENDING.value,
    TransactionStatus.PROCESSING.value,
    TransactionStatus.COMPLETED.value,
    TransactionStatus.PENDING_SETTLEMENT.value,
)


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_reference(prefix: str = "TXN") -> str:
    """Unique, time-ordered reference: prefix + epoch millis + 6 hex chars"""
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"


def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "reference": txn.reference,
        "userId": txn.user_id,
        "type": txn.type,
        "category": txn.category,
        "amount": float(txn.amount),
        "fee": float(txn.fee or 0),
        "totalAmount": float(txn.total_amount),
        "status": txn.status,
        "description": txn.description,
        "recipientDetails": txn.recipient_details,
        "metadata": txn.meta or {},
        "providerReference": txn.provider_reference,
        "failureReason": txn.failure_reason,
        "createdAt": txn.created_at.isoformat() if txn.created_at else None,
        "processedAt": txn.processed_at.isoformat() if txn.processed_at else None,
    }


class WalletService:
    """Ledger operations bound to one SQLAlchemy session (one atomic unit)"""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------ lookups

    def get_user(self, user_id: str) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found", user_id=user_id)
        return user

    def lock_wallet(self, user_id: str) -> Wallet:
        wallet = self.db.execute(
            select(Wallet).where(Wallet.user_id == user_id).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            self.get_user(user_id)
            raise WalletNotFound(f"Wallet for user {user_id} not found", user_id=user_id)
        return wallet

    def get_transaction(self, reference: str, lock: bool = False) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.reference == reference)
        if lock:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_credit_by_provider_reference(self, provider_reference: str) -> Optional[Transaction]:
        return self.db.execute(
            select(Transaction).where(
                Transaction.provider_reference == provider_reference,
                Transaction.type == TransactionType.CREDIT.value,
            )
        ).scalars().first()

    def find_user_id_by_virtual_account(self, account_number: str) -> Optional[str]:
        return self.db.execute(
            select(Wallet.user_id).where(Wallet.virtual_account_number == account_number)
        ).scalar_one_or_none()

    def wallet_summary(self, user_id: str) -> Dict[str, Any]:
        wallet = self.db.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()
        if wallet is None:
            self.get_user(user_id)
            raise WalletNotFound(f"Wallet for user {user_id} not found", user_id=user_id)
        return {
            "userId": user_id,
            "phoneNumber": wallet.user.phone_number,
            "balance": to_money(wallet.balance),
            "ledgerBalance": to_money(wallet.ledger_balance),
            "isFrozen": wallet.is_frozen,
            "freezeReason": wallet.freeze_reason,
            "virtualAccountNumber": wallet.virtual_account_number,
            "virtualAccountBank": wallet.virtual_account_bank,
            "virtualAccountName": wallet.virtual_account_name,
        }

    # ------------------------------------------------------------ transactions

    def create_transaction(self, user_id: str, fields: Dict[str, Any]) -> Transaction:
        """Insert a pending Transaction; an existing reference is returned as-is"""
        reference = fields.get("reference") or generate_reference(fields.get("reference_prefix", "TXN"))
        existing = self.get_transaction(reference)
        if existing is not None:
            if existing.user_id != user_id:
                raise ValidationError(f"Reference {reference} belongs to another user", field="reference")
            logger.info(f"🔁 TRANSACTION_EXISTS: ref={reference} status={existing.status}")
            return existing

        txn_type = fields.get("type", TransactionType.DEBIT.value)
        category = fields.get("category", TransactionCategory.BANK_TRANSFER.value)
        TransactionType(txn_type)
        TransactionCategory(category)

        amount = to_money(fields["amount"])
        fee = to_money(fields.get("fee", 0))
        if amount <= 0:
            raise ValidationError(f"Amount must be positive: {amount}", field="amount")

        meta = {"isInternal": False, "isVisibleToUser": True, "isPlatformFee": False}
        meta.update(fields.get("metadata") or {})
        parent_reference = fields.get("parent_reference") or meta.get("parentTransactionReference")

        if meta.get("isPlatformFee"):
            parent = self.get_transaction(parent_reference) if parent_reference else None
            if parent is None or not parent.is_visible_to_user:
                raise ValidationError(
                    f"Platform fee {reference} needs a visible parent transaction", field="parentTransactionReference"
                )
            meta["parentTransactionReference"] = parent_reference

        txn = Transaction(
            reference=reference,
            user_id=user_id,
            type=txn_type,
            category=category,
            amount=amount,
            fee=fee,
            total_amount=amount + fee if txn_type == TransactionType.DEBIT.value else amount,
            status=TransactionStatus.PENDING.value,
            description=fields.get("description"),
            recipient_details=fields.get("recipient_details"),
            meta=meta,
            parent_reference=parent_reference,
            provider_reference=fields.get("provider_reference"),
        )
        self.db.add(txn)
        self.db.flush()
        logger.info(
            f"📝 TRANSACTION_CREATED: user={user_id} ref={reference} {txn_type}/{category} "
            f"amount={amount} fee={fee}"
        )
        if fields.get("reserve") and txn_type == TransactionType.DEBIT.value:
            self._hold(self.lock_wallet(user_id), txn)
        return txn

    def reserve_funds(self, reference: str) -> Transaction:
        """Hold a pending debit's total against the spendable balance"""
        txn = self.get_transaction(reference, lock=True)
        if txn is None:
            raise ValidationError(f"Transaction {reference} not found", field="reference")
        if txn.status != TransactionStatus.PENDING.value or txn.held_amount or txn.balance_after is not None:
            return txn
        self._hold(self.lock_wallet(txn.user_id), txn)
        return txn

    def _hold(self, wallet: Wallet, txn: Transaction) -> None:
        """Lower balance by txn.total_amount, leaving ledger_balance; caller holds the wallet lock"""
        if wallet.is_frozen:
            raise WalletFrozen(f"Wallet for user {txn.user_id} is frozen: {wallet.freeze_reason}", user_id=txn.user_id)
        total = to_money(txn.total_amount)
        if wallet.balance < total:
            raise InsufficientFunds(required=total, available=wallet.balance)
        wallet.balance = to_money(wallet.balance) - total
        txn.held_amount = total
        self.db.flush()
        logger.info(f"🔒 FUNDS_HELD: user={txn.user_id} ref={txn.reference} amount={total} balance={wallet.balance}")

    def _release_hold(self, txn: Transaction) -> None:
        if not txn.held_amount:
            return
        wallet = self.lock_wallet(txn.user_id)
        held = to_money(txn.held_amount)
        wallet.balance = to_money(wallet.balance) + held
        txn.held_amount = None
        logger.info(f"🔓 FUNDS_RELEASED: user={txn.user_id} ref={txn.reference} amount={held} balance={wallet.balance}")

    def _apply_debit(self, wallet: Wallet, txn: Transaction) -> Decimal:
        """Decrease the wallet by txn.total_amount, settling any hold; caller holds the wallet lock"""
        total = to_money(txn.total_amount)
        if txn.held_amount:
            # spendable balance already went down when the funds were held
            previous = to_money(wallet.balance) + to_money(txn.held_amount)
            wallet.ledger_balance = to_money(wallet.ledger_balance) - total
            txn.held_amount = None
        else:
            if wallet.balance < total:
                raise InsufficientFunds(required=total, available=wallet.balance)
            previous = to_money(wallet.balance)
            wallet.balance = previous - total
            wallet.ledger_balance = to_money(wallet.ledger_balance) - total
        txn.balance_before = previous
        txn.balance_after = wallet.balance
        return previous

    def update_transaction_status(
        self,
        reference: str,
        new_status: str,
        failure_reason: Optional[str] = None,
        provider_reference: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Monotone status transition; completing an undebited debit debits the wallet in this unit"""
        txn = self.get_transaction(reference, lock=True)
        if txn is None:
            raise ValidationError(f"Transaction {reference} not found", field="reference")

        if not TransactionStateValidator.ensure_transition(txn.status, new_status, reference):
            return txn

        if (
            new_status == TransactionStatus.COMPLETED.value
            and txn.type == TransactionType.DEBIT.value
            and txn.balance_after is None
        ):
            wallet = self.lock_wallet(txn.user_id)
            self._apply_debit(wallet, txn)
        elif new_status in (TransactionStatus.FAILED.value, TransactionStatus.CANCELLED.value):
            self._release_hold(txn)

        previous_status = txn.status
        txn.status = new_status
        if failure_reason:
            txn.failure_reason = failure_reason
        if provider_reference:
            txn.provider_reference = provider_reference
        if session_id:
            txn.session_id = session_id
        if metadata:
            txn.meta = {**(txn.meta or {}), **metadata}
        if new_status != TransactionStatus.PROCESSING.value:
            txn.processed_at = utcnow()
        self.db.flush()

        logger.info(f"🔄 TRANSACTION_STATUS: ref={reference} {previous_status} -> {new_status}")
        return txn

    def reconcile_from_provider(self, reference: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a provider outcome ({status, providerReference, failureReason, sessionId}).
        Applying the same outcome again is a no-op.
        """
        txn = self.get_transaction(reference, lock=True)
        if txn is None:
            raise ValidationError(f"Transaction {reference} not found", field="reference")

        target = outcome["status"]
        previous_status = txn.status
        if previous_status == target:
            logger.info(f"🔁 RECONCILE_NOOP: ref={reference} already {target}")
            return {"transaction": txn, "changed": False, "previous_status": previous_status}

        via_status = previous_status
        if (
            previous_status == TransactionStatus.PENDING.value
            and target == TransactionStatus.PENDING_SETTLEMENT.value
        ):
            via_status = TransactionStatus.PROCESSING.value
        allowed, reason = TransactionStateValidator.validate_transition(via_status, target, reference)
        if not allowed:
            # a stale or out-of-order outcome never moves a transaction backwards
            logger.warning(f"⚠️ RECONCILE_IGNORED: ref={reference} {previous_status} -> {target}: {reason}")
            return {"transaction": txn, "changed": False, "previous_status": previous_status}

        if via_status != previous_status:
            # pending_settlement is only reachable through processing
            self.update_transaction_status(reference, via_status)

        self.update_transaction_status(
            reference,
            target,
            failure_reason=outcome.get("failureReason"),
            provider_reference=outcome.get("providerReference"),
            session_id=outcome.get("sessionId"),
            metadata={"lastProviderOutcome": {k: v for k, v in outcome.items() if k != "raw"}},
        )
        return {"transaction": txn, "changed": True, "previous_status": previous_status}

    # -------------------------------------------------------------- balances

    def credit_wallet(
        self,
        user_id: str,
        amount,
        description: str,
        category: str = TransactionCategory.ADMIN_ADJUSTMENT.value,
        reference: Optional[str] = None,
        provider_reference: Optional[str] = None,
        admin_credit: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError(f"Credit amount must be positive: {amount}", field="amount")

        wallet = self.lock_wallet(user_id)

        if provider_reference:
            existing = self.find_credit_by_provider_reference(provider_reference)
            if existing is not None:
                logger.info(f"🔁 CREDIT_DUPLICATE: provider_ref={provider_reference} ref={existing.reference}")
                return {
                    "transaction": existing,
                    "new_balance": wallet.balance,
                    "previous_balance": wallet.balance,
                    "duplicate": True,
                }

        if wallet.is_frozen and not admin_credit:
            raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet.freeze_reason}", user_id=user_id)

        previous = to_money(wallet.balance)
        wallet.balance = previous + amount
        wallet.ledger_balance = to_money(wallet.ledger_balance) + amount

        meta = {"isInternal": False, "isVisibleToUser": True, "isPlatformFee": False}
        meta.update(metadata or {})
        if admin_credit:
            meta["adminCredit"] = True

        txn = Transaction(
            reference=reference or generate_reference("CR"),
            user_id=user_id,
            type=TransactionType.CREDIT.value,
            category=category,
            amount=amount,
            fee=Decimal("0.00"),
            total_amount=amount,
            status=TransactionStatus.COMPLETED.value,
            description=description,
            meta=meta,
            provider_reference=provider_reference,
            balance_before=previous,
            balance_after=wallet.balance,
            processed_at=utcnow(),
        )
        self.db.add(txn)
        self.db.flush()

        logger.info(
            f"✅ WALLET_CREDITED: user={user_id} ref={txn.reference} amount={amount} "
            f"balance {previous} -> {wallet.balance}"
        )
        return {"transaction": txn, "new_balance": wallet.balance, "previous_balance": previous, "duplicate": False}

    def debit_wallet(
        self,
        user_id: str,
        amount,
        description: str,
        category: str = TransactionCategory.ADMIN_ADJUSTMENT.value,
        transaction_reference: Optional[str] = None,
        reference: Optional[str] = None,
        provider_reference: Optional[str] = None,
        session_id: Optional[str] = None,
        fee=0,
        metadata: Optional[Dict[str, Any]] = None,
        recipient_details: Optional[Dict[str, Any]] = None,
        parent_reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Decrease the wallet balance. With `transaction_reference` the debit is bound
        to that pending Transaction, which moves to completed in the same unit.
        """
        amount = to_money(amount)
        wallet = self.lock_wallet(user_id)
        if wallet.is_frozen:
            raise WalletFrozen(f"Wallet for user {user_id} is frozen: {wallet.freeze_reason}", user_id=user_id)

        if transaction_reference:
            txn = self.get_transaction(transaction_reference, lock=True)
            if txn is None or txn.user_id != user_id:
                raise ValidationError(f"Transaction {transaction_reference} not found", field="transaction_reference")
            if txn.balance_after is not None:
                logger.info(f"🔁 DEBIT_ALREADY_APPLIED: ref={txn.reference}")
                return {
                    "transaction": txn,
                    "new_balance": wallet.balance,
                    "previous_balance": txn.balance_before,
                    "duplicate": True,
                }
            if to_money(txn.total_amount) != amount:
                raise ValidationError(
                    f"Debit amount {amount} does not match {txn.reference} total {txn.total_amount}", field="amount"
                )
            TransactionStateValidator.ensure_transition(txn.status, TransactionStatus.COMPLETED.value, txn.reference)
        else:
            txn = self.create_transaction(user_id, {
                "reference": reference,
                "type": TransactionType.DEBIT.value,
                "category": category,
                "amount": amount - to_money(fee),
                "fee": fee,
                "description": description,
                "metadata": metadata,
                "recipient_details": recipient_details,
                "parent_reference": parent_reference,
            })
            if txn.balance_after is not None:
                return {
                    "transaction": txn,
                    "new_balance": wallet.balance,
                    "previous_balance": txn.balance_before,
                    "duplicate": True,
                }
            TransactionStateValidator.ensure_transition(txn.status, TransactionStatus.COMPLETED.value, txn.reference)

        previous = self._apply_debit(wallet, txn)
        txn.status = TransactionStatus.COMPLETED.value
        txn.processed_at = utcnow()
        if provider_reference:
            txn.provider_reference = provider_reference
        if session_id:
            txn.session_id = session_id
        self.db.flush()

        logger.info(
            f"✅ WALLET_DEBITED: user={user_id} ref={txn.reference} total={txn.total_amount} "
            f"balance {previous} -> {wallet.balance}"
        )
        return {"transaction": txn, "new_balance": wallet.balance, "previous_balance": previous, "duplicate": False}

    def resync_balance_from_provider(self, user_id: str, provider_balance) -> Dict[str, Any]:
        """Lower the spendable balance to the provider's figure when it reports less"""
        provider_balance = to_money(provider_balance)
        wallet = self.lock_wallet(user_id)
        previous = to_money(wallet.balance)
        wallet.last_synced_at = utcnow()
        lowered = provider_balance < previous
        if lowered:
            wallet.balance = max(provider_balance, Decimal("0.00"))
            logger.warning(
                f"⚠️ BALANCE_RESYNC: user={user_id} local={previous} provider={provider_balance} "
                f"ledger={wallet.ledger_balance}"
            )
        self.db.flush()
        return {"lowered": lowered, "previous_balance": previous, "new_balance": wallet.balance}

    def set_frozen(self, user_id: str, frozen: bool, reason: Optional[str] = None) -> Wallet:
        wallet = self.lock_wallet(user_id)
        wallet.is_frozen = frozen
        wallet.freeze_reason = reason if frozen else None
        self.db.flush()
        logger.warning(f"🧊 WALLET_{'FROZEN' if frozen else 'UNFROZEN'}: user={user_id} reason={reason}")
        return wallet

    # ------------------------------------------------------------- reporting

    def transfer_total_since(self, user_id: str, since: datetime) -> Decimal:
        total = self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id,
                Transaction.type == TransactionType.DEBIT.value,
                Transaction.category == TransactionCategory.BANK_TRANSFER.value,
                Transaction.status.in_(LIMIT_COUNTED_STATUSES),
                Transaction.created_at >= since,
            )
        ).scalar_one()
        return to_money(total)

    def list_transactions(self, user_id: str, limit: int = 20, include_hidden: bool = False) -> List[Transaction]:
        rows = self.db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit * 2 if not include_hidden else limit)
        ).scalars().all()
        if not include_hidden:
            rows = [t for t in rows if t.is_visible_to_user][:limit]
        return list(rows)


def start_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: Optional[datetime] = None) -> datetime:
    return start_of_day(now).replace(day=1)


# ---------------------------------------------------------------------------
# Async facade
# ---------------------------------------------------------------------------

async def credit_wallet(user_id: str, amount, description: str, **kwargs) -> Dict[str, Any]:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).credit_wallet(user_id, amount, description, **kwargs)
    )


async def debit_wallet(user_id: str, amount, description: str, **kwargs) -> Dict[str, Any]:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).debit_wallet(user_id, amount, description, **kwargs)
    )


async def create_transaction(user_id: str, fields: Dict[str, Any]) -> Transaction:
    return await run_io_task(run_in_transaction, lambda s: WalletService(s).create_transaction(user_id, fields))


async def update_transaction_status(reference: str, new_status: str, **patch) -> Transaction:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).update_transaction_status(reference, new_status, **patch)
    )


async def reserve_funds(reference: str) -> Transaction:
    return await run_io_task(run_in_transaction, lambda s: WalletService(s).reserve_funds(reference))


async def reconcile_from_provider(reference: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).reconcile_from_provider(reference, outcome)
    )


async def resync_balance_from_provider(user_id: str, provider_balance) -> Dict[str, Any]:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).resync_balance_from_provider(user_id, provider_balance)
    )


async def set_wallet_frozen(user_id: str, frozen: bool, reason: Optional[str] = None) -> Wallet:
    return await run_io_task(run_in_transaction, lambda s: WalletService(s).set_frozen(user_id, frozen, reason))


async def get_wallet_summary(user_id: str) -> Dict[str, Any]:
    return await run_io_task(run_in_transaction, lambda s: WalletService(s).wallet_summary(user_id))


async def list_transactions(user_id: str, limit: int = 20, include_hidden: bool = False) -> List[Dict[str, Any]]:
    return await run_io_task(
        run_in_transaction,
        lambda s: [transaction_to_dict(t) for t in WalletService(s).list_transactions(user_id, limit, include_hidden)],
    )


async def get_transaction(reference: str) -> Optional[Transaction]:
    return await run_io_task(run_in_transaction, lambda s: WalletService(s).get_transaction(reference))


async def find_user_id_by_virtual_account(account_number: str) -> Optional[str]:
    return await run_io_task(
        run_in_transaction, lambda s: WalletService(s).find_user_id_by_virtual_account(account_number)
    )


__all__ = [
    "WalletService", "generate_reference", "transaction_to_dict", "to_money",
    "credit_wallet", "debit_wallet", "create_transaction", "reserve_funds", "update_transaction_status",
    "reconcile_from_provider", "resync_balance_from_provider", "set_wallet_frozen", "get_transaction",
    "get_wallet_summary", "list_transactions", "find_user_id_by_virtual_account", "start_of_day", "start_of_month",
]
