"""
WhatsApp Flow Endpoint - POST /flow/endpoint

Encrypted requests are decrypted, routed through the screen machine and the
answer is returned encrypted as text/plain Base64. A body without the three
encrypted fields is a platform health check.
"""

import logging
from typing import Optional

import orjson
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from config import Config
from services.flow_encryption_service import (
    FlowDecryptionError, decrypt_request, encrypt_response, load_private_key
)
from services.flow_screen_service import PING_RESPONSE, handle_flow_request

logger = logging.getLogger(__name__)

router = APIRouter()

ENCRYPTED_FIELDS = ("encrypted_flow_data", "encrypted_aes_key", "initial_vector")

_private_key = None


def get_private_key():
    """Loaded once per worker; the PEM never changes without a restart"""
    global _private_key
    if _private_key is None:
        _private_key = load_private_key(Config.WHATSAPP_FLOW_PRIVATE_KEY, Config.WHATSAPP_FLOW_PASSPHRASE)
    return _private_key


def reset_private_key() -> None:
    global _private_key
    _private_key = None


@router.post("/flow/endpoint")
async def flow_endpoint(request: Request):
    raw_body = await request.body()
    try:
        body: Optional[dict] = orjson.loads(raw_body) if raw_body else {}
    except orjson.JSONDecodeError:
        body = None

    if not isinstance(body, dict) or not all(body.get(f) for f in ENCRYPTED_FIELDS):
        if isinstance(body, dict) and (body.get("action") or "").lower() == "ping":
            return JSONResponse(content=PING_RESPONSE)
        logger.info("🏥 FLOW_HEALTH_CHECK: unencrypted request")
        return JSONResponse(content={"status": "healthy"})

    try:
        decrypted = decrypt_request(body, get_private_key())
    except FlowDecryptionError as e:
        logger.error(f"❌ FLOW_REQUEST_REJECTED: {e.message}")
        # 421 tells the client to refresh our public key
        return PlainTextResponse(content="Decryption failed", status_code=421)

    response_payload = await handle_flow_request(decrypted.payload)
    logger.info(
        f"🔐 FLOW_RESPONSE: action={decrypted.payload.get('action')} screen={decrypted.payload.get('screen')} "
        f"algo={decrypted.algorithm} flipped_iv={decrypted.used_flipped_iv}"
    )
    return PlainTextResponse(content=encrypt_response(response_payload, decrypted.aes_key, decrypted.iv))
