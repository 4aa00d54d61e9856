"""
Transaction PIN hashing and verification

PINs are stored as "salt$hash" (both url-safe Base64) using PBKDF2-HMAC-SHA256
with a per-user random salt. Verification is constant-time. Repeated
failures lock the PIN for a cool-down period.
"""

import base64
import hmac
import logging
import os
import re
from datetime import timedelta
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from database import run_in_transaction
from models import User, utcnow
from utils.background_task_runner import run_io_task
from utils.exception_handler import AuthError, UserBanned, UserNotFound, ValidationError

logger = logging.getLogger(__name__)

PIN_PATTERN = re.compile(r"^\d{4}$")
PBKDF2_ITERATIONS = 100_000
MAX_PIN_ATTEMPTS = 3
PIN_LOCK_MINUTES = 30


def _derive(pin: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(pin.encode())


def validate_pin_format(pin: Optional[str], field: str = "pin") -> str:
    pin = (pin or "").strip()
    if not PIN_PATTERN.match(pin):
        raise ValidationError("PIN must be exactly 4 digits.", field=field)
    return pin


def hash_pin(pin: str) -> str:
    pin = validate_pin_format(pin)
    salt = os.urandom(16)
    digest = _derive(pin, salt)
    return f"{base64.urlsafe_b64encode(salt).decode()}${base64.urlsafe_b64encode(digest).decode()}"


def check_pin(pin: Optional[str], stored: Optional[str]) -> bool:
    """Constant-time comparison of `pin` against a stored "salt$hash" value"""
    if not pin or not stored or "$" not in stored:
        return False
    salt_b64, hash_b64 = stored.split("$", 1)
    try:
        salt = base64.urlsafe_b64decode(salt_b64)
        expected = base64.urlsafe_b64decode(hash_b64)
    except (ValueError, TypeError):
        logger.error("❌ Stored PIN hash is malformed")
        return False
    return hmac.compare_digest(_derive(pin.strip(), salt), expected)


def verify_user_pin(user: User, pin: Optional[str]) -> None:
    """
    Verify the user's transaction PIN, tracking failed attempts on the row.
    The caller commits the session so attempt counters persist.

    Raises:
        AuthError: PIN missing, wrong, or locked
    """
    now = utcnow()
    if user.pin_locked_until and user.pin_locked_until > now:
        minutes = int((user.pin_locked_until - now).total_seconds() // 60) + 1
        raise AuthError(
            f"PIN locked for user {user.id}",
            user_message=f"Too many wrong PIN attempts. Try again in {minutes} minute(s).",
        )
    if not user.pin_hash:
        raise AuthError(f"User {user.id} has no PIN", user_message="Please set up your PIN first.")

    if check_pin(pin, user.pin_hash):
        user.pin_attempts = 0
        user.pin_locked_until = None
        return

    user.pin_attempts = (user.pin_attempts or 0) + 1
    remaining = MAX_PIN_ATTEMPTS - user.pin_attempts
    logger.warning(f"🔐 PIN_INVALID: user={user.id} attempts={user.pin_attempts}")
    if remaining <= 0:
        user.pin_locked_until = now + timedelta(minutes=PIN_LOCK_MINUTES)
        user.pin_attempts = 0
        raise AuthError(
            f"PIN locked for user {user.id}",
            user_message=f"Too many wrong PIN attempts. Your PIN is locked for {PIN_LOCK_MINUTES} minutes.",
        )
    raise AuthError(
        f"Invalid PIN for user {user.id}",
        user_message=f"Incorrect PIN. {remaining} attempt(s) left.",
    )


def mask_phone(phone_number: Optional[str]) -> str:
    """Phone numbers in logs keep only the last 4 digits"""
    if not phone_number:
        return "[EMPTY]"
    return f"***{phone_number[-4:]}"


def _pin_check_unit(session, user_id: str, pin: Optional[str]) -> Optional[AuthError]:
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found", user_id=user_id)
    if user.is_banned or not user.is_active:
        raise UserBanned(f"User {user_id} is restricted", user_id=user_id)
    try:
        verify_user_pin(user, pin)
    except AuthError as e:
        # returned, not raised, so the attempt counter commits
        return e
    return None


async def authenticate_transaction_pin(user_id: str, pin: Optional[str]) -> None:
    """
    Check a transaction PIN for `user_id` in its own unit of work.

    Raises:
        ValidationError: PIN is not 4 digits
        AuthError: wrong or locked PIN
        UserBanned / UserNotFound
    """
    validate_pin_format(pin)
    error = await run_io_task(run_in_transaction, lambda s: _pin_check_unit(s, user_id, pin))
    if error is not None:
        raise error
