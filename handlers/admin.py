"""
Admin HTTP surface for wallet management and data pricing
Every route requires the X-Admin-Key header to match ADMIN_API_KEY.
"""

import hmac
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field

from config import Config
from models import TransactionCategory
from services import data_plan_service, wallet_service
from services.wallet_service import transaction_to_dict

logger = logging.getLogger(__name__)


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> str:
    if not Config.ADMIN_API_KEY:
        logger.critical("🚨 ADMIN_API_KEY not configured - admin routes disabled")
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, Config.ADMIN_API_KEY):
        logger.warning("🚫 ADMIN_AUTH_REJECTED: bad or missing X-Admin-Key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return x_admin_key


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


class FreezeRequest(BaseModel):
    reason: Optional[str] = None


class AdminCreditRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = "Admin credit"
    reference: Optional[str] = None


class PlanPriceRequest(BaseModel):
    network: str
    planId: str
    sellingPrice: Decimal = Field(..., gt=0)


def _wallet_view(wallet) -> dict:
    return {
        "userId": wallet.user_id,
        "balance": float(wallet.balance),
        "isFrozen": wallet.is_frozen,
        "freezeReason": wallet.freeze_reason,
    }


@router.post("/users/{user_id}/wallet/freeze")
async def freeze_wallet(user_id: str, body: FreezeRequest = FreezeRequest()):
    wallet = await wallet_service.set_wallet_frozen(user_id, True, body.reason or "Frozen by admin")
    logger.warning(f"🧊 ADMIN_WALLET_FREEZE: user={user_id} reason={body.reason}")
    return _wallet_view(wallet)


@router.post("/users/{user_id}/wallet/unfreeze")
async def unfreeze_wallet(user_id: str):
    wallet = await wallet_service.set_wallet_frozen(user_id, False)
    logger.info(f"🔓 ADMIN_WALLET_UNFREEZE: user={user_id}")
    return _wallet_view(wallet)


@router.post("/users/{user_id}/wallet/credit")
async def credit_wallet(user_id: str, body: AdminCreditRequest):
    result = await wallet_service.credit_wallet(
        user_id,
        body.amount,
        body.description,
        category=TransactionCategory.ADMIN_ADJUSTMENT.value,
        reference=body.reference,
        admin_credit=True,
    )
    logger.warning(
        f"💳 ADMIN_WALLET_CREDIT: user={user_id} amount={body.amount} ref={result['transaction'].reference}"
    )
    return {
        "transaction": transaction_to_dict(result["transaction"]),
        "newBalance": float(result["new_balance"]),
        "previousBalance": float(result["previous_balance"]),
    }


@router.post("/data-pricing/plan")
async def set_plan_price(body: PlanPriceRequest):
    overrides = await data_plan_service.set_selling_price(body.network, body.planId, body.sellingPrice)
    logger.info(f"📶 ADMIN_DATA_PRICE: network={body.network} plan={body.planId} price={body.sellingPrice}")
    return {"overrides": overrides}


@router.get("/users/{user_id}/transactions")
async def user_transactions(
    user_id: str,
    limit: int = Query(20, ge=1, le=200),
    include_hidden: bool = Query(False, alias="includeHidden"),
):
    return {"transactions": await wallet_service.list_transactions(user_id, limit, include_hidden)}
