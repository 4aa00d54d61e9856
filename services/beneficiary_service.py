"""
Beneficiary Service - saved transfer recipients

Nickname resolution for chat transfers ("send 1k to my mum"), idempotent
auto-save after a successful transfer, category tagging and usage stats.
"""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session

from database import run_in_transaction
from models import Beneficiary, BeneficiaryCategory, utcnow
from utils.background_task_runner import run_io_task
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = {
    BeneficiaryCategory.FAMILY: (
        "mum", "mom", "mummy", "mommy", "mama", "mother", "dad", "daddy", "papa", "father",
        "brother", "sister", "bro", "sis", "son", "daughter", "wife", "husband", "uncle",
        "aunt", "aunty", "auntie", "cousin", "grandma", "grandpa", "family", "baby", "nephew", "niece",
    ),
    BeneficiaryCategory.FRIEND: ("friend", "buddy", "mate", "pal", "bestie", "bff", "guy", "paddy"),
    BeneficiaryCategory.BUSINESS: (
        "boss", "client", "customer", "vendor", "supplier", "shop", "store", "business",
        "office", "work", "company", "landlord", "tailor", "mechanic",
    ),
}

# Favourites first, then most used, then most recent
RESOLUTION_ORDER = (
    Beneficiary.is_favorite.desc(),
    Beneficiary.total_transactions.desc(),
    Beneficiary.last_used_at.desc().nulls_last(),
)


def categorize(nickname: Optional[str]) -> str:
    """Keyword match on the nickname; defaults to `other`"""
    if not nickname:
        return BeneficiaryCategory.OTHER.value
    words = set(re.findall(r"[a-z]+", nickname.lower()))
    for category, keywords in CATEGORY_KEYWORDS.items():
        if words.intersection(keywords):
            return category.value
    return BeneficiaryCategory.OTHER.value


def beneficiary_to_dict(b: Beneficiary) -> Dict[str, Any]:
    return {
        "id": b.id,
        "nickname": b.nickname,
        "name": b.name,
        "accountNumber": b.account_number,
        "bankCode": b.bank_code,
        "bankName": b.bank_name,
        "category": b.category,
        "isFavorite": b.is_favorite,
        "totalTransactions": b.total_transactions,
        "totalAmount": float(b.total_amount or 0),
        "averageAmount": float(b.average_amount or 0),
        "lastUsedAt": b.last_used_at.isoformat() if b.last_used_at else None,
    }


class BeneficiaryService:
    """Beneficiary operations bound to one SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def _active(self, user_id: str):
        return select(Beneficiary).where(Beneficiary.user_id == user_id, Beneficiary.is_active.is_(True))

    def _get_owned(self, user_id: str, beneficiary_id: str) -> Beneficiary:
        beneficiary = self.db.execute(
            self._active(user_id).where(Beneficiary.id == beneficiary_id)
        ).scalar_one_or_none()
        if beneficiary is None:
            raise ValidationError("Beneficiary not found.", field="beneficiaryId")
        return beneficiary

    def find_by_account(self, user_id: str, account_number: str, bank_code: str) -> Optional[Beneficiary]:
        return self.db.execute(
            self._active(user_id).where(
                Beneficiary.account_number == account_number,
                Beneficiary.bank_code == bank_code,
            )
        ).scalar_one_or_none()

    def find_by_nickname(self, user_id: str, nickname: str) -> Optional[Beneficiary]:
        """
        Case-insensitive exact nickname match, falling back to a case-insensitive
        substring of the resolved account name.
        """
        needle = (nickname or "").strip().lower()
        if not needle:
            return None

        exact = self.db.execute(
            self._active(user_id)
            .where(func.lower(Beneficiary.nickname) == needle)
            .order_by(*RESOLUTION_ORDER)
        ).scalars().first()
        if exact is not None:
            return exact

        return self.db.execute(
            self._active(user_id)
            .where(func.lower(Beneficiary.name).contains(needle, autoescape=True))
            .order_by(*RESOLUTION_ORDER)
        ).scalars().first()

    def auto_save(
        self,
        user_id: str,
        account_number: str,
        bank_code: str,
        name: str,
        bank_name: Optional[str] = None,
        nickname: Optional[str] = None,
        amount=None,
    ) -> Beneficiary:
        """Idempotent on (user, account, bank); an existing row only gains a nickname it lacked"""
        nickname = nickname.strip() if nickname else None
        existing = self.find_by_account(user_id, account_number, bank_code)
        if existing is not None:
            if nickname and not existing.nickname:
                existing.nickname = nickname
                existing.category = categorize(nickname)
                self.db.flush()
                logger.info(f"📇 BENEFICIARY_NICKNAMED: user={user_id} id={existing.id} nickname={nickname}")
            return existing

        amount = Decimal(str(amount)) if amount is not None else None
        beneficiary = Beneficiary(
            user_id=user_id,
            nickname=nickname,
            name=name or account_number,
            account_number=account_number,
            bank_code=bank_code,
            bank_name=bank_name,
            category=categorize(nickname),
            total_transactions=1 if amount else 0,
            total_amount=amount or Decimal("0.00"),
            average_amount=amount or Decimal("0.00"),
            last_used_at=utcnow() if amount else None,
        )
        self.db.add(beneficiary)
        self.db.flush()
        logger.info(
            f"📇 BENEFICIARY_SAVED: user={user_id} id={beneficiary.id} nickname={nickname or 'none'} "
            f"category={beneficiary.category}"
        )
        return beneficiary

    def record_usage(self, user_id: str, account_number: str, bank_code: str, amount) -> Optional[Beneficiary]:
        """Bump usage stats of a matching active beneficiary; None when there is no match"""
        beneficiary = self.find_by_account(user_id, account_number, bank_code)
        if beneficiary is None:
            return None
        amount = Decimal(str(amount))
        beneficiary.total_transactions = (beneficiary.total_transactions or 0) + 1
        beneficiary.total_amount = Decimal(str(beneficiary.total_amount or 0)) + amount
        beneficiary.average_amount = (beneficiary.total_amount / beneficiary.total_transactions).quantize(Decimal("0.01"))
        beneficiary.last_used_at = utcnow()
        self.db.flush()
        return beneficiary

    def list(self, user_id: str, category: Optional[str] = None, favorites_only: bool = False,
             limit: int = 50) -> List[Beneficiary]:
        stmt = self._active(user_id)
        if category:
            BeneficiaryCategory(category)
            stmt = stmt.where(Beneficiary.category == category)
        if favorites_only:
            stmt = stmt.where(Beneficiary.is_favorite.is_(True))
        return list(self.db.execute(stmt.order_by(*RESOLUTION_ORDER).limit(limit)).scalars().all())

    def toggle_favorite(self, user_id: str, beneficiary_id: str) -> Beneficiary:
        beneficiary = self._get_owned(user_id, beneficiary_id)
        beneficiary.is_favorite = not beneficiary.is_favorite
        self.db.flush()
        return beneficiary

    def soft_delete(self, user_id: str, beneficiary_id: str) -> bool:
        beneficiary = self._get_owned(user_id, beneficiary_id)
        beneficiary.is_active = False
        self.db.flush()
        logger.info(f"🗑️ BENEFICIARY_REMOVED: user={user_id} id={beneficiary_id}")
        return True

    def search(self, user_id: str, text: str, limit: int = 20) -> List[Beneficiary]:
        needle = (text or "").strip().lower()
        if not needle:
            return []
        stmt = self._active(user_id).where(or_(
            func.lower(Beneficiary.nickname).contains(needle, autoescape=True),
            func.lower(Beneficiary.name).contains(needle, autoescape=True),
            func.lower(Beneficiary.bank_name).contains(needle, autoescape=True),
            Beneficiary.account_number.contains(needle, autoescape=True),
        ))
        return list(self.db.execute(stmt.order_by(*RESOLUTION_ORDER).limit(limit)).scalars().all())

    def suggestions(self, user_id: str, limit: int = 5) -> List[Beneficiary]:
        return self.list(user_id, limit=limit)

    def stats(self, user_id: str) -> Dict[str, Any]:
        rows = self.list(user_id, limit=1000)
        by_category = {c.value: 0 for c in BeneficiaryCategory}
        for b in rows:
            by_category[b.category] = by_category.get(b.category, 0) + 1
        top = sorted(rows, key=lambda b: Decimal(str(b.total_amount or 0)), reverse=True)[:3]
        return {
            "total": len(rows),
            "favorites": sum(1 for b in rows if b.is_favorite),
            "byCategory": by_category,
            "totalTransactions": sum(b.total_transactions or 0 for b in rows),
            "totalAmount": float(sum(Decimal(str(b.total_amount or 0)) for b in rows)),
            "topRecipients": [beneficiary_to_dict(b) for b in top],
        }


# ---------------------------------------------------------------------------
# Async facade (returns plain dicts so nothing lazy-loads outside the session)
# ---------------------------------------------------------------------------

def _as_dict(result):
    return beneficiary_to_dict(result) if isinstance(result, Beneficiary) else result


async def _run(fn):
    return await run_io_task(run_in_transaction, lambda s: _as_dict(fn(BeneficiaryService(s))))


async def find_by_nickname(user_id: str, nickname: str) -> Optional[Dict[str, Any]]:
    return await _run(lambda svc: svc.find_by_nickname(user_id, nickname))


async def find_by_account(user_id: str, account_number: str, bank_code: str) -> Optional[Dict[str, Any]]:
    return await _run(lambda svc: svc.find_by_account(user_id, account_number, bank_code))


async def auto_save(user_id: str, account_number: str, bank_code: str, name: str, **kwargs) -> Dict[str, Any]:
    return await _run(lambda svc: svc.auto_save(user_id, account_number, bank_code, name, **kwargs))


async def record_usage(user_id: str, account_number: str, bank_code: str, amount) -> Optional[Dict[str, Any]]:
    return await _run(lambda svc: svc.record_usage(user_id, account_number, bank_code, amount))


async def list_beneficiaries(user_id: str, **filters) -> List[Dict[str, Any]]:
    return await _run(lambda svc: [beneficiary_to_dict(b) for b in svc.list(user_id, **filters)])


async def toggle_favorite(user_id: str, beneficiary_id: str) -> Dict[str, Any]:
    return await _run(lambda svc: svc.toggle_favorite(user_id, beneficiary_id))


async def soft_delete(user_id: str, beneficiary_id: str) -> bool:
    return await _run(lambda svc: svc.soft_delete(user_id, beneficiary_id))


async def search(user_id: str, text: str) -> List[Dict[str, Any]]:
    return await _run(lambda svc: [beneficiary_to_dict(b) for b in svc.search(user_id, text)])


async def suggestions(user_id: str, limit: int = 5) -> List[Dict[str, Any]]:
    return await _run(lambda svc: [beneficiary_to_dict(b) for b in svc.suggestions(user_id, limit)])


async def stats(user_id: str) -> Dict[str, Any]:
    return await _run(lambda svc: svc.stats(user_id))
