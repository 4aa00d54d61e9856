"""
Transaction State Validator Tests
Forward-only status edges for ledger transactions
"""

import pytest

from models import TransactionStatus
from utils.exception_handler import IllegalTransition
from utils.transaction_state_validator import TransactionStateValidator


class TestTransactionStateValidator:
    """Allowed and forbidden transitions"""

    @pytest.mark.parametrize("from_status,to_status", [
        ("pending", "processing"),
        ("pending", "completed"),
        ("pending", "failed"),
        ("processing", "completed"),
        ("processing", "failed"),
        ("processing", "pending_settlement"),
    ])
    def test_forward_edges_allowed(self, from_status, to_status):
        is_valid, reason = TransactionStateValidator.validate_transition(from_status, to_status, "TRF1")
        assert is_valid, f"{from_status} -> {to_status} should be allowed: {reason}"

    @pytest.mark.parametrize("from_status,to_status", [
        ("completed", "pending"),
        ("completed", "failed"),
        ("failed", "completed"),
        ("failed", "pending"),
        ("pending_settlement", "completed"),
        ("pending", "pending_settlement"),
        ("cancelled", "processing"),
    ])
    def test_backward_or_skipping_edges_rejected(self, from_status, to_status):
        is_valid, reason = TransactionStateValidator.validate_transition(from_status, to_status)
        assert not is_valid
        assert "Invalid transition" in reason

    def test_same_status_is_valid_no_op(self):
        assert TransactionStateValidator.validate_transition("completed", "completed")[0] is True
        assert TransactionStateValidator.ensure_transition("completed", "completed") is False

    def test_ensure_transition_raises_on_illegal_edge(self):
        with pytest.raises(IllegalTransition):
            TransactionStateValidator.ensure_transition(TransactionStatus.FAILED, TransactionStatus.COMPLETED, "TRF2")

    def test_unknown_status_rejected(self):
        is_valid, reason = TransactionStateValidator.validate_transition("pending", "teleported")
        assert not is_valid and "Unknown status" in reason

    def test_terminal_states(self):
        assert TransactionStateValidator.is_terminal("completed")
        assert TransactionStateValidator.is_terminal(TransactionStatus.FAILED)
        assert TransactionStateValidator.is_terminal("cancelled")
        assert not TransactionStateValidator.is_terminal("pending_settlement")
        assert not TransactionStateValidator.is_terminal("processing")
