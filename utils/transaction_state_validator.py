"""
Transaction State Transition Validator
======================================

Transactions only move forward. Prevents backward edges like
COMPLETED -> PENDING and resurrection of FAILED transactions.
"""

import logging
from typing import Dict, Set, Optional, Tuple, Union

from models import TransactionStatus
from utils.exception_handler import IllegalTransition

logger = logging.getLogger(__name__)


class TransactionStateValidator:
    """Validates ledger transaction status changes"""

    VALID_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        TransactionStatus.PENDING: {
            TransactionStatus.PROCESSING,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        },
        TransactionStatus.PROCESSING: {
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.PENDING_SETTLEMENT,
        },
        TransactionStatus.PENDING_SETTLEMENT: set(),
        TransactionStatus.COMPLETED: set(),
        TransactionStatus.FAILED: set(),
        TransactionStatus.CANCELLED: set(),
    }

    TERMINAL_STATES: Set[TransactionStatus] = {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }

    @staticmethod
    def _coerce(status: Union[str, TransactionStatus]) -> TransactionStatus:
        return status if isinstance(status, TransactionStatus) else TransactionStatus(status)

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, TransactionStatus],
        to_status: Union[str, TransactionStatus],
        reference: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason). Same status is a valid no-op.
        """
        ref = f"Transaction {reference}" if reference else "Transaction"
        try:
            from_enum = cls._coerce(from_status)
            to_enum = cls._coerce(to_status)
        except ValueError:
            return False, f"Unknown status: {from_status} -> {to_status}"

        if from_enum == to_enum:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum in valid_next_states:
            logger.debug(f"✅ VALID_TRANSITION: {ref} {from_enum.value} -> {to_enum.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
            f"Valid transitions from {from_enum.value}: "
            f"{sorted(s.value for s in valid_next_states)}"
        )
        logger.error(f"❌ INVALID_TRANSITION: {ref} {from_enum.value} -> {to_enum.value}")
        return False, error_msg

    @classmethod
    def ensure_transition(
        cls,
        from_status: Union[str, TransactionStatus],
        to_status: Union[str, TransactionStatus],
        reference: Optional[str] = None,
    ) -> bool:
        """
        Raise IllegalTransition when the edge is not allowed.

        Returns:
            bool: False when the status is unchanged (nothing to apply), True otherwise
        """
        is_valid, reason = cls.validate_transition(from_status, to_status, reference)
        if not is_valid:
            raise IllegalTransition(reason, reference=reference)
        return cls._coerce(from_status) != cls._coerce(to_status)

    @classmethod
    def is_terminal(cls, status: Union[str, TransactionStatus]) -> bool:
        return cls._coerce(status) in cls.TERMINAL_STATES
