"""
WhatsApp Cloud API webhook

GET  /webhook/whatsapp - verification handshake (hub.mode / hub.verify_token / hub.challenge)
POST /webhook/whatsapp - inbound messages; text goes to the chat router,
                         interactive flow replies (nfm_reply) are acknowledged
                         because the flow endpoint already did the work

Meta retries deliveries it considers unanswered, so each message id goes
through the webhook event ledger before it is routed.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import orjson
from fastapi import APIRouter, HTTPException, Request, Header, Query
from fastapi.responses import PlainTextResponse

from config import Config
from handlers.message_router import route_text_message
from services.webhook_idempotency_service import (
    WebhookEventInfo, WebhookProvider, process_webhook_with_idempotency
)
from services.whatsapp_service import get_whatsapp_service
from utils.background_task_runner import run_background_task
from utils.pin_security import mask_phone

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_hub_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """X-Hub-Signature-256: sha256=<hex HMAC-SHA256 of the raw body with the app secret>"""
    if not Config.WHATSAPP_APP_SECRET:
        if Config.IS_PRODUCTION:
            logger.critical("🚨 WHATSAPP_APP_SECRET not configured - rejecting webhook")
            return False
        logger.warning("⚠️ WHATSAPP_APP_SECRET not configured - accepting unsigned webhook (development)")
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(Config.WHATSAPP_APP_SECRET.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[7:].lower())


def extract_messages(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten entry[].changes[].value.messages[], attaching the sender's profile name"""
    messages = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                messages.append({**message, "profileName": names.get(message.get("from"))})
    return messages


async def _route_message(message: Dict[str, Any]) -> Dict[str, Any]:
    phone = message.get("from")
    message_type = message.get("type")
    await get_whatsapp_service().mark_as_read(message["id"])

    if message_type == "text":
        text = (message.get("text") or {}).get("body") or ""
        reply = await route_text_message(phone, text, message.get("profileName"))
        return {"routed": "text", "replied": bool(reply)}

    interactive = message.get("interactive") or {}
    if message_type == "interactive" and interactive.get("type") == "nfm_reply":
        logger.info(f"📋 FLOW_REPLY_RECEIVED: phone={mask_phone(phone)} message={message['id']}")
        return {"routed": "nfm_reply"}

    if message_type == "interactive":
        # button and list replies carry their title as text
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        if reply.get("title"):
            await route_text_message(phone, reply["title"], message.get("profileName"))
            return {"routed": "interactive"}

    logger.info(f"📭 UNSUPPORTED_MESSAGE_TYPE: phone={mask_phone(phone)} type={message_type}")
    await get_whatsapp_service().send_text(phone, "Sorry, I can only read text messages for now. Type *help*.")
    return {"routed": "unsupported", "type": message_type}


async def process_inbound_message(message: Dict[str, Any]) -> None:
    info = WebhookEventInfo(
        provider=WebhookProvider.WHATSAPP,
        event_id=message["id"],
        event_type=message.get("type") or "unknown",
        reference_id=message.get("from"),
        payload={"type": message.get("type"), "timestamp": message.get("timestamp")},
    )
    try:
        await process_webhook_with_idempotency(info, _route_message, message)
    except Exception as e:
        logger.error(
            f"❌ WHATSAPP_MESSAGE_FAILED: phone={mask_phone(message.get('from'))} message={message.get('id')} "
            f"error={type(e).__name__}: {e}",
            exc_info=True,
        )


@router.get("/webhook/whatsapp")
async def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    if hub_mode == "subscribe" and Config.WHATSAPP_VERIFY_TOKEN and hmac.compare_digest(
        hub_verify_token or "", Config.WHATSAPP_VERIFY_TOKEN
    ):
        logger.info("✅ WHATSAPP_WEBHOOK_VERIFIED")
        return PlainTextResponse(content=hub_challenge or "")
    logger.warning(f"🚫 WHATSAPP_VERIFY_REJECTED: mode={hub_mode}")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook/whatsapp")
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    raw_body = await request.body()
    if not verify_hub_signature(raw_body, x_hub_signature_256):
        logger.warning(f"🚫 WHATSAPP_SIGNATURE_REJECTED: bytes={len(raw_body)}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = orjson.loads(raw_body)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    messages = extract_messages(payload if isinstance(payload, dict) else {})
    for message in messages:
        if message.get("id") and message.get("from"):
            await run_background_task(process_inbound_message(message))

    # status callbacks (sent/delivered/read) carry no messages and are simply acknowledged
    return {"status": "received", "messages": len(messages)}
