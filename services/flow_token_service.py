"""
Flow tokens scope one flow session to one user and one intent.

Signed tokens: "{userId}.{timestamp}.{hmac16}" where hmac16 is the first 16
hex chars of HMAC-SHA256(FLOW_SECRET_KEY, "{userId}.{timestamp}").
Server-side tokens: "flow_..." with a session:{token} record in the TTL store.
"""

import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Dict, Optional

from config import Config
from services.session_store import get_session_store, flow_session_key

logger = logging.getLogger(__name__)


def _signature(user_id: str, timestamp: str) -> str:
    message = f"{user_id}.{timestamp}".encode()
    return hmac.new(Config.FLOW_SECRET_KEY.encode(), message, hashlib.sha256).hexdigest()[:16]


def generate_flow_token(user_id: str, now: Optional[float] = None) -> str:
    timestamp = str(int((now if now is not None else time.time()) * 1000))
    return f"{user_id}.{timestamp}.{_signature(user_id, timestamp)}"


async def create_flow_session(user_id: str, flow_id: str, source: str, data: Optional[Dict[str, Any]] = None) -> str:
    """Mint a server-side token whose session carries initial form data"""
    token = f"flow_{secrets.token_urlsafe(16)}"
    await get_session_store().set(
        flow_session_key(token),
        {"userId": user_id, "flowId": flow_id, "source": source, "data": data or {}},
        ttl=Config.FLOW_SESSION_TTL,
    )
    return token


async def verify_flow_token(flow_token: Optional[str]) -> Dict[str, Any]:
    """Returns {valid, userId, flowId, source, sessionData, reason?}"""
    invalid = {"valid": False, "userId": None, "flowId": None, "source": None, "sessionData": None}
    if not flow_token:
        return {**invalid, "reason": "missing"}

    session = await get_session_store().get(flow_session_key(flow_token))

    if flow_token.startswith("flow_"):
        if not session or not session.get("userId"):
            return {**invalid, "reason": "expired"}
        return {
            "valid": True,
            "userId": session["userId"],
            "flowId": session.get("flowId"),
            "source": session.get("source") or "session",
            "sessionData": session.get("data") or {},
        }

    parts = flow_token.split(".")
    if len(parts) != 3:
        return {**invalid, "reason": "malformed"}
    user_id, timestamp, signature = parts
    if not timestamp.isdigit() or not hmac.compare_digest(_signature(user_id, timestamp), signature):
        logger.warning(f"🚨 FLOW_TOKEN_INVALID_SIGNATURE: user={user_id}")
        return {**invalid, "reason": "signature"}

    age_seconds = time.time() - int(timestamp) / 1000
    if age_seconds > Config.FLOW_TOKEN_TTL_HOURS * 3600:
        return {**invalid, "reason": "expired"}

    return {
        "valid": True,
        "userId": user_id,
        "flowId": (session or {}).get("flowId"),
        "source": (session or {}).get("source") or "signed",
        "sessionData": (session or {}).get("data") or {},
    }


async def merge_flow_session(flow_token: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Merge screen data into the session so a terminal screen can resume"""
    store = get_session_store()
    key = flow_session_key(flow_token)
    session = await store.get(key) or {}
    session["data"] = {**(session.get("data") or {}), **data}
    await store.set(key, session, ttl=Config.FLOW_SESSION_TTL)
    return session["data"]


async def delete_flow_session(flow_token: str) -> None:
    await get_session_store().delete(flow_session_key(flow_token))
