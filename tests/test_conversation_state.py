"""
Conversation State Tests
Durable state on the user row, chat-session cache, expiry and the
short-TTL store underneath
"""

import time

import pytest

from database import managed_session
from models import User
from services.session_store import (
    InMemoryTTLStore, SessionStore, chat_session_key, flow_session_key, transfer_processing_key
)
from utils.conversation_state_helper import (
    AwaitingInput, ConversationState, clear_conversation_state, get_conversation_state, set_conversation_state
)
from utils.exception_handler import UserNotFound
from tests.wallet_test_foundation import TEST_PHONE, load_user


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestConversationState:
    """set / get / clear round trips"""

    @pytest.mark.asyncio
    async def test_set_persists_to_user_row_and_cache(self, user_factory, session_store):
        user_id = user_factory()
        state = ConversationState(
            intent="bank_transfer",
            awaiting_input=AwaitingInput.PIN_FOR_TRANSFER.value,
            data={"draft": {"amount": "1000"}},
        )

        await set_conversation_state(user_id, state)

        stored = load_user(user_id).conversation_state
        assert stored["awaitingInput"] == "pin_for_transfer"
        assert stored["data"]["draft"]["amount"] == "1000"
        cached = await session_store.get(chat_session_key(TEST_PHONE))
        assert cached["intent"] == "bank_transfer"

    @pytest.mark.asyncio
    async def test_get_falls_back_to_row_when_cache_is_empty(self, user_factory, session_store):
        user_id = user_factory()
        await set_conversation_state(user_id, ConversationState(intent="cached", awaiting_input="amount"))
        await session_store.delete(chat_session_key(TEST_PHONE))

        state = await get_conversation_state(user_id, TEST_PHONE)

        assert state is not None, "Durable row must back a missing cache entry"
        assert state.intent == "cached"
        assert state.awaiting_input == "amount"

    @pytest.mark.asyncio
    async def test_clear(self, user_factory, session_store):
        user_id = user_factory()
        await set_conversation_state(user_id, ConversationState(intent="x", awaiting_input="amount"))

        await clear_conversation_state(user_id)

        assert await get_conversation_state(user_id, TEST_PHONE) is None
        assert load_user(user_id).conversation_state is None
        assert await session_store.get(chat_session_key(TEST_PHONE)) is None

    @pytest.mark.asyncio
    async def test_expired_state_is_cleared(self, user_factory):
        user_id = user_factory()
        stale = ConversationState(intent="stale", awaiting_input="amount", updated_at=time.time() - 7200)
        with managed_session() as session:
            session.get(User, user_id).conversation_state = stale.to_dict()

        assert await get_conversation_state(user_id) is None
        assert load_user(user_id).conversation_state is None, "Expired state must be cleared"

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        with pytest.raises(UserNotFound):
            await set_conversation_state("missing-user", ConversationState(intent="x"))

    def test_from_dict_requires_intent(self):
        assert ConversationState.from_dict(None) is None
        assert ConversationState.from_dict({"awaitingInput": "amount"}) is None


class TestSessionStore:
    """JSON values with per-key TTL"""

    @pytest.mark.asyncio
    async def test_values_expire(self):
        clock = FakeClock()
        store = SessionStore(InMemoryTTLStore(clock=clock))

        await store.set("session:abc", {"screen": "AMOUNT"}, ttl=300)
        assert await store.get("session:abc") == {"screen": "AMOUNT"}

        clock.now += 301
        assert await store.get("session:abc") is None

    @pytest.mark.asyncio
    async def test_no_ttl_keeps_value(self):
        clock = FakeClock()
        store = SessionStore(InMemoryTTLStore(clock=clock))
        await store.set("otp:+234", {"otp": "123456"})

        clock.now += 100000
        assert await store.get("otp:+234") == {"otp": "123456"}

    @pytest.mark.asyncio
    async def test_scan_by_prefix_skips_expired(self):
        clock = FakeClock()
        store = SessionStore(InMemoryTTLStore(clock=clock))
        await store.set(transfer_processing_key("u1", 1), {"a": 1}, ttl=10)
        await store.set(transfer_processing_key("u2", 2), {"a": 2}, ttl=1000)
        await store.set(flow_session_key("tok"), {"a": 3}, ttl=1000)

        clock.now += 20
        keys = await store.scan("transfer_processing:")

        assert keys == ["transfer_processing:u2:2"]

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self):
        store = SessionStore(InMemoryTTLStore())
        await store.set("k", 1)

        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    async def test_corrupt_entry_dropped(self):
        backend = InMemoryTTLStore()
        store = SessionStore(backend)
        await backend.set("k", b"{not json", None)

        assert await store.get("k") is None
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await SessionStore(InMemoryTTLStore()).health_check() is True

    def test_key_shapes(self):
        assert flow_session_key("flow_x") == "session:flow_x"
        assert transfer_processing_key("u1", 42) == "transfer_processing:u1:42"
        assert chat_session_key("+234") == "whatsapp:+234"
