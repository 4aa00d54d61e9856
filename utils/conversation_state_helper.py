"""Helper functions for managing conversation state with read-after-write verification"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from config import Config
from database import run_in_transaction, managed_session
from models import User
from services.session_store import get_session_store, chat_session_key
from utils.background_task_runner import run_io_task
from utils.exception_handler import StatePersistenceFailed, UserNotFound

logger = logging.getLogger(__name__)


class AwaitingInput(Enum):
    PIN_FOR_TRANSFER = "pin_for_transfer"
    SAVE_BENEFICIARY_CONFIRMATION = "save_beneficiary_confirmation"
    BENEFICIARY_NICKNAME = "beneficiary_nickname"
    AMOUNT = "amount"
    TRANSFER_CONFIRMATION = "transfer_confirmation"
    VIRTUAL_ACCOUNT_OTP = "virtual_account_otp"
    PIN_FOR_AIRTIME = "pin_for_airtime"
    PIN_FOR_BILL = "pin_for_bill"


@dataclass
class ConversationState:
    """State embedded in User.conversation_state; `awaiting_input` discriminates the pending question"""

    intent: str
    awaiting_input: Optional[str] = None
    context: Optional[str] = None
    step: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "awaitingInput": self.awaiting_input,
            "context": self.context,
            "step": self.step,
            "data": self.data,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["ConversationState"]:
        if not raw or not raw.get("intent"):
            return None
        return cls(
            intent=raw["intent"],
            awaiting_input=raw.get("awaitingInput"),
            context=raw.get("context"),
            step=raw.get("step"),
            data=raw.get("data") or {},
            updated_at=raw.get("updatedAt") or 0,
        )

    def is_expired(self, ttl: int = Config.CHAT_SESSION_TTL) -> bool:
        return time.time() - (self.updated_at or 0) > ttl


def _write_state(user_id: str, payload: Optional[Dict[str, Any]]) -> str:
    def unit(session):
        user = session.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found", user_id=user_id)
        user.conversation_state = payload
        return user.phone_number
    return run_in_transaction(unit)


def _read_state(user_id: str) -> Optional[Dict[str, Any]]:
    with managed_session() as session:
        user = session.get(User, user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found", user_id=user_id)
        return user.conversation_state


async def set_conversation_state(user_id: str, state: ConversationState) -> ConversationState:
    """
    Persist `state` and verify it by reloading the row. Must complete before the
    prompt that expects the user's reply is sent.

    Raises:
        StatePersistenceFailed: `awaitingInput` still unset after one retry
    """
    state.updated_at = time.time()
    payload = state.to_dict()

    phone_number = None
    for attempt in (1, 2):
        phone_number = await run_io_task(_write_state, user_id, payload)
        stored = await run_io_task(_read_state, user_id)
        if stored and stored.get("intent") == state.intent and stored.get("awaitingInput") == state.awaiting_input:
            break
        logger.warning(
            f"⚠️ STATE_VERIFY_FAILED: user={user_id} intent={state.intent} "
            f"awaiting={state.awaiting_input} attempt={attempt}"
        )
    else:
        logger.error(f"❌ STATE_PERSISTENCE_FAILED: user={user_id} intent={state.intent}")
        raise StatePersistenceFailed(
            f"Conversation state for {user_id} not persisted", user_id=user_id, intent=state.intent
        )

    await get_session_store().set(chat_session_key(phone_number), payload, ttl=Config.CHAT_SESSION_TTL)
    logger.debug(f"Set conversation_state intent='{state.intent}' awaiting='{state.awaiting_input}' for user {user_id}")
    return state


async def clear_conversation_state(user_id: str) -> None:
    """Unconditionally null the embedded state and drop the cached copy"""
    phone_number = await run_io_task(_write_state, user_id, None)
    await get_session_store().delete(chat_session_key(phone_number))
    logger.debug(f"Cleared conversation_state for user {user_id}")


async def get_conversation_state(user_id: str, phone_number: Optional[str] = None) -> Optional[ConversationState]:
    """Cached copy when present, else the durable row; expired state is cleared"""
    raw = None
    if phone_number:
        raw = await get_session_store().get(chat_session_key(phone_number))
    if raw is None:
        raw = await run_io_task(_read_state, user_id)

    state = ConversationState.from_dict(raw)
    if state is not None and state.is_expired():
        logger.info(f"⌛ CONVERSATION_TIMEOUT: user={user_id} intent={state.intent}")
        await clear_conversation_state(user_id)
        return None
    return state
