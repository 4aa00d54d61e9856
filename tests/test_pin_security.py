"""
PIN Security Tests
Hash format, constant-time check, attempt counting and lockout
"""

from datetime import timedelta

import pytest

from database import managed_session
from models import User, utcnow
from utils.exception_handler import AuthError, UserBanned, ValidationError
from utils.pin_security import (
    authenticate_transaction_pin, check_pin, hash_pin, mask_phone, validate_pin_format
)
from tests.wallet_test_foundation import load_user


class TestPinHashing:
    """salt$hash storage"""

    def test_hash_is_salted(self):
        first = hash_pin("1234")
        second = hash_pin("1234")

        assert "$" in first
        assert first != second, "Each hash must carry its own salt"
        assert check_pin("1234", first) and check_pin("1234", second)

    def test_wrong_pin_does_not_match(self):
        assert not check_pin("4321", hash_pin("1234"))

    def test_malformed_stored_hash(self):
        assert not check_pin("1234", "not-a-hash")
        assert not check_pin("1234", None)

    @pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", None])
    def test_pin_format(self, pin):
        with pytest.raises(ValidationError) as exc_info:
            validate_pin_format(pin)
        assert exc_info.value.user_message == "PIN must be exactly 4 digits."

    def test_mask_phone(self):
        assert mask_phone("+2348012345678") == "***5678"
        assert mask_phone(None) == "[EMPTY]"


class TestTransactionPinAuthentication:
    """Attempt counter persists across failures"""

    @pytest.mark.asyncio
    async def test_correct_pin_resets_attempts(self, user_factory):
        user_id = user_factory()

        with pytest.raises(AuthError):
            await authenticate_transaction_pin(user_id, "9999")
        assert load_user(user_id).pin_attempts == 1

        await authenticate_transaction_pin(user_id, "1234")
        assert load_user(user_id).pin_attempts == 0

    @pytest.mark.asyncio
    async def test_remaining_attempts_reported(self, user_factory):
        user_id = user_factory()

        with pytest.raises(AuthError) as exc_info:
            await authenticate_transaction_pin(user_id, "0000")

        assert exc_info.value.user_message == "Incorrect PIN. 2 attempt(s) left."

    @pytest.mark.asyncio
    async def test_third_failure_locks_pin(self, user_factory):
        user_id = user_factory()

        for _ in range(2):
            with pytest.raises(AuthError):
                await authenticate_transaction_pin(user_id, "0000")
        with pytest.raises(AuthError) as exc_info:
            await authenticate_transaction_pin(user_id, "0000")

        assert "locked for 30 minutes" in exc_info.value.user_message
        assert load_user(user_id).pin_locked_until > utcnow()

        # even the right PIN is refused while locked
        with pytest.raises(AuthError) as locked:
            await authenticate_transaction_pin(user_id, "1234")
        assert locked.value.user_message.startswith("Too many wrong PIN attempts")

    @pytest.mark.asyncio
    async def test_expired_lock_allows_retry(self, user_factory):
        user_id = user_factory()
        with managed_session() as session:
            session.get(User, user_id).pin_locked_until = utcnow() - timedelta(minutes=1)

        await authenticate_transaction_pin(user_id, "1234")

    @pytest.mark.asyncio
    async def test_banned_user_refused(self, user_factory):
        user_id = user_factory(is_banned=True)
        with pytest.raises(UserBanned):
            await authenticate_transaction_pin(user_id, "1234")

    @pytest.mark.asyncio
    async def test_user_without_pin(self, user_factory):
        user_id = user_factory(pin=None)
        with pytest.raises(AuthError) as exc_info:
            await authenticate_transaction_pin(user_id, "1234")
        assert exc_info.value.user_message == "Please set up your PIN first."
