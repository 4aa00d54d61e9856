"""
Completion Worker
Finishes the money movement parked by a terminal flow screen under
transfer_processing:{userId}:{ts} / data_purchase_processing:{userId}:{ts}.
Outcomes reach the user on the chat channel; the key is deleted when claimed.
"""

import logging
import time
from typing import Any, Dict, Optional

from services import bank_transfer_service, data_purchase_service
from services.flow_token_service import delete_flow_session
from services.session_store import get_session_store
from services.wallet_service import get_wallet_summary
from services.whatsapp_service import get_whatsapp_service
from utils.conversation_state_helper import clear_conversation_state
from utils.exception_handler import ChatWalletError, ProviderUnavailable

logger = logging.getLogger(__name__)

PROCESSING_PREFIXES = ("transfer_processing:", "data_purchase_processing:")

# in-process tasks normally claim a key within milliseconds
RECOVERY_MIN_AGE_SECONDS = 30


def _key_age_seconds(key: str, now: Optional[float] = None) -> float:
    try:
        ts_ms = int(key.rsplit(":", 1)[1])
    except (IndexError, ValueError):
        return 0.0
    return (now if now is not None else time.time()) - ts_ms / 1000


async def _notify_failure(user_id: str, record: Dict[str, Any], error: ChatWalletError) -> None:
    summary = await get_wallet_summary(user_id)
    if isinstance(error, ProviderUnavailable):
        text = (
            "⏳ We couldn't reach the bank right now. Your request is pending and we'll "
            "update you once it settles. You have not been charged twice."
        )
    else:
        text = f"❌ {error.user_message}"
    await get_whatsapp_service().send_text(summary["phoneNumber"], text)


async def _run_transfer(record: Dict[str, Any]) -> Dict[str, Any]:
    user_id = record["userId"]
    # the PIN prompt is answered; the orchestrator may set a new save-beneficiary question
    await clear_conversation_state(user_id)
    return await bank_transfer_service.process_bank_transfer(user_id, record["job"]["transfer"], record["pin"])


async def _run_data_purchase(record: Dict[str, Any]) -> Dict[str, Any]:
    job = record["job"]
    return await data_purchase_service.purchase_data(
        record["userId"],
        job["network"],
        job["phone"],
        job["planId"],
        record["pin"],
        reference=job.get("reference"),
    )


RUNNERS = {
    "transfer": _run_transfer,
    "data_purchase": _run_data_purchase,
}


async def process_processing_key(key: str) -> Optional[Dict[str, Any]]:
    """
    Claim and execute one processing record.

    Returns the orchestrator result, or None when the key was already
    claimed, expired, or the work failed (the user has been told).
    """
    store = get_session_store()
    record = await store.get(key)
    if not record:
        return None
    if not await store.delete(key):
        logger.info(f"🔁 COMPLETION_ALREADY_CLAIMED: key={key}")
        return None

    user_id = record.get("userId")
    kind = record.get("kind")
    runner = RUNNERS.get(kind)
    if runner is None:
        logger.error(f"❌ COMPLETION_UNKNOWN_KIND: key={key} kind={kind}")
        return None

    logger.info(f"⚙️ COMPLETION_STARTED: user={user_id} kind={kind} key={key}")
    try:
        result = await runner(record)
    except ChatWalletError as e:
        logger.error(
            f"❌ COMPLETION_FAILED: user={user_id} kind={kind} ref={record['job'].get('reference') or '-'} "
            f"category={e.code} cause={e.message}"
        )
        await _notify_failure(user_id, record, e)
        return None
    finally:
        if record.get("flowToken"):
            await delete_flow_session(record["flowToken"])

    logger.info(f"✅ COMPLETION_FINISHED: user={user_id} kind={kind} status={_status_of(result)}")
    return result


def _status_of(result: Dict[str, Any]) -> str:
    txn = result.get("transaction") or {}
    return txn.get("status") or result.get("status") or "unknown"


async def recover_processing_keys(min_age_seconds: float = RECOVERY_MIN_AGE_SECONDS) -> int:
    """Pick up processing keys whose in-process task was lost (restart, crash)"""
    store = get_session_store()
    now = time.time()
    recovered = 0
    for prefix in PROCESSING_PREFIXES:
        for key in await store.scan(prefix):
            if _key_age_seconds(key, now) < min_age_seconds:
                continue
            logger.warning(f"🩹 COMPLETION_RECOVERY: key={key}")
            await process_processing_key(key)
            recovered += 1
    return recovered
