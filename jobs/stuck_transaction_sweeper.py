"""
Stuck Transaction Sweeper
Runs every SWEEPER_INTERVAL_MINUTES:
1. Transaction status query for pending/processing bank transfers older than
   TSQ_MIN_AGE_MINUTES, applied through the ledger's reconciliation rules
2. Pending transactions older than STUCK_TRANSACTION_MINUTES are failed with
   reason "Transaction timeout"
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import Config
from database import run_in_transaction
from models import Transaction, TransactionCategory, TransactionStatus, utcnow
from services import bank_transfer_service, wallet_service
from services.rubies_service import get_rubies_service
from services.session_store import chat_session_key, get_session_store
from services.wallet_service import transaction_to_dict
from services.whatsapp_service import get_whatsapp_service
from utils.background_task_runner import run_io_task
from utils.exception_handler import ChatWalletError, ProviderUnavailable

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Transaction timeout"

PROVIDER_CATEGORIES = (
    TransactionCategory.BANK_TRANSFER.value,
    TransactionCategory.FEE_CHARGE.value,
)


def _stale_transactions(statuses, older_than_minutes: int,
                        categories: Optional[tuple] = None) -> List[Dict[str, Any]]:
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)

    def unit(session):
        stmt = (
            select(Transaction)
            .where(Transaction.status.in_(statuses), Transaction.created_at < cutoff)
            .order_by(Transaction.created_at)
            .limit(200)
        )
        if categories:
            stmt = stmt.where(Transaction.category.in_(categories))
        return [
            {**transaction_to_dict(txn), "userId": txn.user_id, "phoneNumber": txn.user.phone_number}
            for txn in session.execute(stmt).scalars().all()
        ]

    return run_in_transaction(unit)


async def reconcile_pending_with_provider(min_age_minutes: int = None) -> Dict[str, int]:
    """Ask the provider about in-flight transfers and apply any final answer"""
    min_age_minutes = Config.TSQ_MIN_AGE_MINUTES if min_age_minutes is None else min_age_minutes
    candidates = await run_io_task(
        _stale_transactions,
        (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value),
        min_age_minutes,
        PROVIDER_CATEGORIES,
    )
    stats = {"checked": 0, "updated": 0, "errors": 0}
    rubies = get_rubies_service()

    for txn in candidates:
        reference = txn["reference"]
        try:
            outcome = await rubies.transaction_status_query(reference)
        except ProviderUnavailable as e:
            logger.warning(f"⚠️ TSQ_UNAVAILABLE: stopping sweep at ref={reference}: {e.message}")
            break
        except ChatWalletError as e:
            logger.error(f"❌ TSQ_FAILED: ref={reference} category={e.code} cause={e.message}")
            continue
        stats["checked"] += 1
        if not outcome:
            continue

        try:
            result = await wallet_service.reconcile_from_provider(reference, outcome)
            if not result["changed"]:
                continue
            stats["updated"] += 1
            await _after_reconcile(txn, transaction_to_dict(result["transaction"]))
        except ChatWalletError as e:
            stats["errors"] += 1
            logger.error(
                f"❌ RECONCILE_FAILED: user={txn['userId']} ref={reference} category={e.code} cause={e.message}"
            )

    if stats["checked"]:
        logger.info(f"🔍 TSQ_SWEEP: checked={stats['checked']} updated={stats['updated']}")
    return stats


async def _after_reconcile(before: Dict[str, Any], after: Dict[str, Any]) -> None:
    """Completion side effects for user-visible transfers settled by reconciliation"""
    if before["category"] != TransactionCategory.BANK_TRANSFER.value:
        return
    status = after["status"]
    if status == TransactionStatus.COMPLETED.value:
        logger.info(f"✅ TRANSFER_SETTLED_BY_TSQ: user={before['userId']} ref={after['reference']}")
        await bank_transfer_service.finalize_completed_transfer(before["userId"], after, before["phoneNumber"])
    elif status == TransactionStatus.FAILED.value:
        await get_whatsapp_service().send_text(
            before["phoneNumber"],
            f"❌ Your transfer of ₦{after['amount']:,.2f} (ref {after['reference']}) failed: "
            f"{after.get('failureReason') or 'declined by the bank'}. You have not been charged.",
        )


async def timeout_stuck_transactions(max_age_minutes: int = None) -> int:
    """Fail pending transactions older than the timeout, releasing any held funds"""
    max_age_minutes = Config.STUCK_TRANSACTION_MINUTES if max_age_minutes is None else max_age_minutes
    stuck = await run_io_task(_stale_transactions, (TransactionStatus.PENDING.value,), max_age_minutes)
    store = get_session_store()
    timed_out = 0

    for txn in stuck:
        try:
            updated = await wallet_service.update_transaction_status(
                txn["reference"], TransactionStatus.FAILED.value, failure_reason=TIMEOUT_REASON
            )
        except ChatWalletError as e:
            logger.error(
                f"❌ TIMEOUT_FAILED: user={txn['userId']} ref={txn['reference']} category={e.code} cause={e.message}"
            )
            continue
        if updated.status != TransactionStatus.FAILED.value:
            continue
        timed_out += 1
        await store.delete(chat_session_key(txn["phoneNumber"]))
        logger.warning(
            f"⌛ TRANSACTION_TIMEOUT: user={txn['userId']} ref={txn['reference']} "
            f"category={txn['category']} age>{max_age_minutes}m"
        )

    return timed_out


async def run_stuck_transaction_sweeper() -> Dict[str, int]:
    """Scheduler entry point; the timeout pass runs even when the TSQ pass fails"""
    stats = {"checked": 0, "updated": 0, "errors": 0, "timedOut": 0}
    try:
        stats.update(await reconcile_pending_with_provider())
    except Exception as e:
        stats["errors"] += 1
        logger.error(f"❌ TSQ_SWEEP_FAILED: {type(e).__name__}: {e}", exc_info=True)

    try:
        stats["timedOut"] = await timeout_stuck_transactions()
    except Exception as e:
        stats["errors"] += 1
        logger.error(f"❌ TIMEOUT_SWEEP_FAILED: {type(e).__name__}: {e}", exc_info=True)

    if stats["timedOut"]:
        logger.info(f"🧹 STUCK_SWEEP: timed_out={stats['timedOut']}")
    return stats
