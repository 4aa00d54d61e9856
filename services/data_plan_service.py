"""
Data plan catalogue with admin selling-price overrides

The catalogue is static, keyed by (network, planId). Admin overrides live in
KVStore under `data_pricing_overrides` as {network: {planId: sellingPrice}};
the effective price is the override when present, else the retail price.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from database import run_in_transaction
from models import KVStore, utcnow
from utils.background_task_runner import run_io_task
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

PRICING_OVERRIDES_KEY = "data_pricing_overrides"

NETWORK_IDS = {"MTN": 1, "AIRTEL": 2, "GLO": 3, "9MOBILE": 4}


@dataclass(frozen=True)
class DataPlan:
    id: int
    network: str
    title: str
    retail_price: Decimal
    validity: str
    type: str

    def to_dict(self, selling_price: Optional[Decimal] = None) -> Dict:
        data = asdict(self)
        data["retailPrice"] = float(data.pop("retail_price"))
        data["sellingPrice"] = float(selling_price if selling_price is not None else self.retail_price)
        return data


def _plans(network: str, rows) -> Dict[int, DataPlan]:
    return {
        plan_id: DataPlan(plan_id, network, title, Decimal(str(price)), validity, plan_type)
        for plan_id, title, price, validity, plan_type in rows
    }


DATA_PLAN_CATALOGUE: Dict[str, Dict[int, DataPlan]] = {
    "MTN": _plans("MTN", [
        (1, "500MB", 350, "30 days", "SME"),
        (2, "1GB", 550, "30 days", "SME"),
        (3, "2GB", 1100, "30 days", "SME"),
        (4, "3GB", 1650, "30 days", "SME"),
        (5, "5GB", 2750, "30 days", "SME"),
        (6, "10GB", 5500, "30 days", "SME"),
        (19, "500MB", 420, "30 days", "COOPERATE GIFTING"),
        (20, "1GB", 820, "30 days", "COOPERATE GIFTING"),
        (21, "2GB", 1660, "30 days", "COOPERATE GIFTING"),
        (23, "5GB", 4150, "30 days", "COOPERATE GIFTING"),
        (24, "10GB", 8300, "30 days", "COOPERATE GIFTING"),
    ]),
    "AIRTEL": _plans("AIRTEL", [
        (7, "500MB", 493, "7 days", "SME"),
        (8, "1GB", 784, "7 days", "SME"),
        (9, "2GB", 1500, "30 days", "SME"),
        (10, "4GB", 2525, "30 days", "SME"),
        (26, "10GB", 4000, "30 days", "SME"),
    ]),
    "GLO": _plans("GLO", [
        (11, "1.5GB", 460, "30 days", "GIFTING"),
        (12, "2.9GB", 940, "30 days", "GIFTING"),
        (13, "4.1GB", 1290, "30 days", "GIFTING"),
        (14, "5.8GB", 1850, "30 days", "GIFTING"),
        (15, "10GB", 3030, "30 days", "GIFTING"),
        (29, "200MB", 110, "30 days", "COOPERATE GIFTING"),
    ]),
    "9MOBILE": _plans("9MOBILE", [
        (25, "1.1GB", 400, "30 days", "SME"),
        (27, "1.5GB", 880, "30 days", "GIFTING"),
        (28, "500MB", 450, "30 days", "GIFTING"),
    ]),
}


def normalize_network(network: Optional[str]) -> str:
    value = (network or "").strip().upper().replace(" ", "")
    if value in ("ETISALAT", "T2"):
        value = "9MOBILE"
    if value not in DATA_PLAN_CATALOGUE:
        raise ValidationError(f"Unsupported network: {network}", field="network")
    return value


def get_plan(network: str, plan_id) -> DataPlan:
    network = normalize_network(network)
    try:
        plan = DATA_PLAN_CATALOGUE[network].get(int(plan_id))
    except (TypeError, ValueError):
        plan = None
    if plan is None:
        raise ValidationError(f"Plan {plan_id} is not available on {network}", field="plan")
    return plan


class DataPlanService:
    """Catalogue lookups priced through the KVStore override overlay"""

    def __init__(self, db: Session):
        self.db = db

    def overrides(self) -> Dict[str, Dict[str, float]]:
        row = self.db.get(KVStore, PRICING_OVERRIDES_KEY)
        return dict(row.value or {}) if row is not None else {}

    def selling_price(self, plan: DataPlan) -> Decimal:
        override = self.overrides().get(plan.network, {}).get(str(plan.id))
        return Decimal(str(override)) if override is not None else plan.retail_price

    def list_plans(self, network: str) -> List[Dict]:
        network = normalize_network(network)
        overlay = self.overrides().get(network, {})
        plans = []
        for plan in DATA_PLAN_CATALOGUE[network].values():
            override = overlay.get(str(plan.id))
            plans.append(plan.to_dict(Decimal(str(override)) if override is not None else None))
        return plans

    def set_selling_price(self, network: str, plan_id, selling_price) -> Dict[str, Dict[str, float]]:
        plan = get_plan(network, plan_id)
        price = Decimal(str(selling_price))
        if price <= 0:
            raise ValidationError("Selling price must be positive", field="sellingPrice")

        row = self.db.get(KVStore, PRICING_OVERRIDES_KEY, with_for_update=True)
        if row is None:
            row = KVStore(key=PRICING_OVERRIDES_KEY, value={})
            self.db.add(row)
        overrides = {net: dict(prices) for net, prices in (row.value or {}).items()}
        overrides.setdefault(plan.network, {})[str(plan.id)] = float(price)
        # reassign so the JSON column is flagged dirty
        row.value = overrides
        row.updated_at = utcnow()
        self.db.flush()
        logger.info(
            f"💲 DATA_PRICE_OVERRIDE: {plan.network} plan={plan.id} retail={plan.retail_price} selling={price}"
        )
        return overrides


async def list_plans(network: str) -> List[Dict]:
    return await run_io_task(run_in_transaction, lambda s: DataPlanService(s).list_plans(network))


async def set_selling_price(network: str, plan_id, selling_price) -> Dict[str, Dict[str, float]]:
    return await run_io_task(
        run_in_transaction, lambda s: DataPlanService(s).set_selling_price(network, plan_id, selling_price)
    )


async def price_plan(network: str, plan_id) -> Dict:
    """Plan dict with retailPrice and effective sellingPrice"""
    plan = get_plan(network, plan_id)
    price = await run_io_task(run_in_transaction, lambda s: DataPlanService(s).selling_price(plan))
    return plan.to_dict(price)
