"""
Wallet Test Foundation
Read-back helpers shared by the test modules: balances, ledger rows, users,
outbound chat messages and signed provider payloads.
"""

import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, List, Optional

import orjson

from database import managed_session
from models import Beneficiary, Transaction, User, Wallet

TEST_PHONE = "+2348012345678"
TEST_PIN = "1234"


def wallet_balance(user_id: str) -> Decimal:
    with managed_session() as session:
        wallet = session.query(Wallet).filter(Wallet.user_id == user_id).one()
        return Decimal(str(wallet.balance))


def ledger_balance(user_id: str) -> Decimal:
    with managed_session() as session:
        wallet = session.query(Wallet).filter(Wallet.user_id == user_id).one()
        return Decimal(str(wallet.ledger_balance))


def load_transaction(reference: str) -> Optional[Transaction]:
    with managed_session() as session:
        return session.query(Transaction).filter(Transaction.reference == reference).one_or_none()


def user_transactions(user_id: str) -> List[Transaction]:
    with managed_session() as session:
        return (
            session.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .order_by(Transaction.created_at)
            .all()
        )


def load_user(user_id: str) -> User:
    with managed_session() as session:
        return session.get(User, user_id)


def active_beneficiaries(user_id: str) -> List[Beneficiary]:
    with managed_session() as session:
        return (
            session.query(Beneficiary)
            .filter(Beneficiary.user_id == user_id, Beneficiary.is_active.is_(True))
            .all()
        )


def sent_texts(whatsapp_mock) -> List[str]:
    """Bodies of every send_text call, in order"""
    return [
        c.args[1] if len(c.args) > 1 else c.kwargs.get("body")
        for c in whatsapp_mock.send_text.call_args_list
    ]


def signed_body(payload: Dict[str, Any], secret: str) -> Dict[str, Any]:
    """Raw JSON body plus its hex HMAC-SHA256 signature"""
    raw = orjson.dumps(payload)
    return {"raw": raw, "signature": hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()}
