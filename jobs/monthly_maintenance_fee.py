"""
Monthly Maintenance Fee Job
On MAINTENANCE_FEE_DAY at MAINTENANCE_FEE_HOUR (scheduler timezone) every
active user whose wallet holds at least the fee is debited once. The
reference MAINT-{yyyymm}-{userId} makes a rerun in the same month a no-op.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select

from database import run_in_transaction
from models import TransactionCategory, User, Wallet
from services import wallet_service
from services.fee_service import FeeService, FeeServiceType
from utils.background_task_runner import run_io_task
from utils.exception_handler import ChatWalletError

logger = logging.getLogger(__name__)


def maintenance_reference(user_id: str, now: datetime) -> str:
    return f"MAINT-{now:%Y%m}-{user_id}"


def _eligible_user_ids() -> List[str]:
    def unit(session):
        return list(session.execute(
            select(User.id)
            .join(Wallet, Wallet.user_id == User.id)
            .where(User.is_active.is_(True), User.is_banned.is_(False), Wallet.is_frozen.is_(False))
        ).scalars().all())
    return run_in_transaction(unit)


async def charge_monthly_maintenance_fees(now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now()
    stats = {"charged": 0, "skipped": 0, "failed": 0}

    for user_id in await run_io_task(_eligible_user_ids):
        summary = await wallet_service.get_wallet_summary(user_id)
        breakdown = FeeService.calculate(FeeServiceType.MAINTENANCE, summary["balance"], balance=summary["balance"])
        if breakdown.total_fee <= 0:
            stats["skipped"] += 1
            continue

        reference = maintenance_reference(user_id, now)
        try:
            result = await wallet_service.debit_wallet(
                user_id,
                breakdown.total_fee,
                f"Monthly maintenance fee {now:%B %Y}",
                category=TransactionCategory.MAINTENANCE_FEE.value,
                reference=reference,
                metadata={"feeBreakdown": breakdown.to_dict(), "period": f"{now:%Y-%m}"},
            )
        except ChatWalletError as e:
            stats["failed"] += 1
            logger.error(
                f"❌ MAINTENANCE_FEE_FAILED: user={user_id} ref={reference} category={e.code} cause={e.message}"
            )
            continue

        if result["duplicate"]:
            stats["skipped"] += 1
        else:
            stats["charged"] += 1

    logger.info(
        f"🧾 MAINTENANCE_FEE_RUN: period={now:%Y-%m} charged={stats['charged']} "
        f"skipped={stats['skipped']} failed={stats['failed']}"
    )
    return stats


async def run_monthly_maintenance_fee() -> Dict[str, int]:
    """Scheduler entry point"""
    try:
        return await charge_monthly_maintenance_fees()
    except Exception as e:
        logger.error(f"❌ MAINTENANCE_FEE_RUN_FAILED: {type(e).__name__}: {e}", exc_info=True)
        return {"charged": 0, "skipped": 0, "failed": 0, "error": 1}
