"""
Webhook Idempotency Service
Records every provider callback in the webhook event ledger keyed by
(provider, event_id) so replays are acknowledged without being reprocessed.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import orjson
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from database import run_in_transaction
from models import WebhookEventLedger, utcnow
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)


class WebhookProvider(Enum):
    """Supported webhook providers"""
    RUBIES = "rubies"
    WHATSAPP = "whatsapp"


class WebhookEventStatus(Enum):
    """Webhook event processing status"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WebhookEventInfo:
    """Information about a webhook event for processing"""
    provider: WebhookProvider
    event_id: str
    event_type: str
    reference_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@dataclass
class ProcessingResult:
    """Result of webhook processing"""
    success: bool
    duplicate: bool = False
    processing_duration_ms: Optional[int] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


def _claim_event(webhook_info: WebhookEventInfo) -> Dict[str, Any]:
    """
    Insert the ledger row, or report the existing one. A previously failed
    event is reclaimed for retry.
    """
    def unit(session):
        existing = session.execute(
            select(WebhookEventLedger).where(
                WebhookEventLedger.event_provider == webhook_info.provider.value,
                WebhookEventLedger.event_id == webhook_info.event_id,
            ).with_for_update()
        ).scalar_one_or_none()

        if existing is None:
            session.add(WebhookEventLedger(
                event_provider=webhook_info.provider.value,
                event_id=webhook_info.event_id,
                event_type=webhook_info.event_type,
                reference_id=webhook_info.reference_id,
                payload=webhook_info.payload or {},
                status=WebhookEventStatus.PROCESSING.value,
            ))
            session.flush()
            return {"claimed": True, "retry": False}

        if existing.status == WebhookEventStatus.FAILED.value:
            existing.status = WebhookEventStatus.PROCESSING.value
            existing.error_message = None
            return {"claimed": True, "retry": True}

        existing.duplicate_count = (existing.duplicate_count or 0) + 1
        return {
            "claimed": False,
            "status": existing.status,
            "result": existing.processing_result,
        }

    try:
        return run_in_transaction(unit)
    except IntegrityError:
        # concurrent insert of the same event
        return {"claimed": False, "status": WebhookEventStatus.PROCESSING.value, "result": None}


def _finish_event(webhook_info: WebhookEventInfo, status: WebhookEventStatus,
                  result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
    def unit(session):
        event = session.execute(
            select(WebhookEventLedger).where(
                WebhookEventLedger.event_provider == webhook_info.provider.value,
                WebhookEventLedger.event_id == webhook_info.event_id,
            )
        ).scalar_one_or_none()
        if event is None:
            return
        event.status = status.value
        event.processing_result = orjson.dumps(result, default=str).decode() if result is not None else None
        event.error_message = error
        event.completed_at = utcnow()
    run_in_transaction(unit)


async def process_webhook_with_idempotency(
    webhook_info: WebhookEventInfo,
    processing_function: Callable[..., Awaitable[Dict[str, Any]]],
    *args,
    **kwargs,
) -> ProcessingResult:
    """
    Run `processing_function` at most once per (provider, event_id).

    Duplicates return the stored result without calling the function again.
    An exception from the function marks the event failed (so the provider's
    retry is reprocessed) and is re-raised.
    """
    start_time = time.time()
    claim = await run_io_task(_claim_event, webhook_info)

    if not claim["claimed"]:
        logger.info(
            f"🔄 WEBHOOK_DUPLICATE: provider={webhook_info.provider.value} "
            f"event={webhook_info.event_id} previous_status={claim['status']}"
        )
        previous = orjson.loads(claim["result"]) if claim.get("result") else None
        return ProcessingResult(success=True, duplicate=True, result_data=previous)

    if claim["retry"]:
        logger.info(f"🔄 WEBHOOK_RETRY_ALLOWED: provider={webhook_info.provider.value} event={webhook_info.event_id}")

    try:
        result = await processing_function(*args, **kwargs)
    except Exception as e:
        await run_io_task(_finish_event, webhook_info, WebhookEventStatus.FAILED, None, f"{type(e).__name__}: {e}")
        logger.error(
            f"❌ WEBHOOK_PROCESSING_FAILED: provider={webhook_info.provider.value} "
            f"event={webhook_info.event_id} error={e}"
        )
        raise

    await run_io_task(_finish_event, webhook_info, WebhookEventStatus.COMPLETED, result)
    duration_ms = int((time.time() - start_time) * 1000)
    logger.info(
        f"✅ WEBHOOK_PROCESSED: provider={webhook_info.provider.value} "
        f"event={webhook_info.event_id} duration={duration_ms}ms"
    )
    return ProcessingResult(success=True, processing_duration_ms=duration_ms, result_data=result)


def cleanup_old_events(days_to_keep: int = 90) -> int:
    """Delete completed events older than `days_to_keep`"""
    cutoff = utcnow() - timedelta(days=days_to_keep)

    def unit(session):
        result = session.execute(
            delete(WebhookEventLedger).where(
                WebhookEventLedger.status == WebhookEventStatus.COMPLETED.value,
                WebhookEventLedger.created_at < cutoff,
            )
        )
        return result.rowcount or 0

    deleted = run_in_transaction(unit)
    if deleted:
        logger.info(f"🧹 WEBHOOK_EVENTS_CLEANED: deleted={deleted} older_than={days_to_keep}d")
    return deleted
