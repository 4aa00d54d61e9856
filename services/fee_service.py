"""
Fee Service - Centralized fee calculation for every chargeable service
Pure calculations: no database or network access
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Any, Optional, Tuple

from config import Config

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class FeeServiceType(Enum):
    BANK_TRANSFER = "bank_transfer"
    INTERNAL_TRANSFER = "internal_transfer"
    INCOMING_TRANSFER = "incoming_transfer"
    AIRTIME = "airtime"
    DATA = "data"
    ELECTRICITY = "electricity"
    CABLE = "cable"
    WATER = "water"
    INTERNET = "internet"
    MAINTENANCE = "maintenance"


class TransferFeeStrategy(Enum):
    FLAT = "flat"
    TIERED = "tiered"


@dataclass
class FeeBreakdown:
    service: str
    amount: Decimal
    base_fee: Decimal = ZERO
    percentage_fee: Decimal = ZERO
    total_fee: Decimal = ZERO
    total_amount: Decimal = ZERO
    policy: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Auditable form stored under Transaction.metadata['feeBreakdown']"""
        return {
            "service": self.service,
            "policy": self.policy,
            "amount": str(self.amount),
            "baseFee": str(self.base_fee),
            "percentageFee": str(self.percentage_fee),
            "totalFee": str(self.total_fee),
            "totalAmount": str(self.total_amount),
            **self.details,
        }


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class FeeService:
    """Centralized fee calculation service"""

    # Historical tiered bank-transfer schedule: (upper bound inclusive, fee)
    TIERED_TRANSFER_FEES: Tuple[Tuple[Optional[Decimal], Decimal], ...] = (
        (Decimal("10000"), Decimal("15")),
        (Decimal("50000"), Decimal("25")),
        (None, Decimal("50")),
    )

    INCOMING_FREE_THRESHOLD = Decimal("1000")
    INCOMING_FEE_RATE = Decimal("0.005")

    # Bill payment rules: rate, min, max
    UTILITY_RULES: Dict[FeeServiceType, Tuple[Decimal, Decimal, Decimal]] = {
        FeeServiceType.ELECTRICITY: (Decimal("0.015"), Decimal("25"), Decimal("500")),
        FeeServiceType.CABLE: (Decimal("0.02"), Decimal("25"), Decimal("500")),
        FeeServiceType.WATER: (Decimal("0.02"), Decimal("25"), Decimal("500")),
        FeeServiceType.INTERNET: (Decimal("0.02"), Decimal("25"), Decimal("500")),
    }

    @classmethod
    def calculate(
        cls,
        service,
        amount,
        strategy: Optional[str] = None,
        selling_price=None,
        retail_price=None,
        balance=None,
    ) -> FeeBreakdown:
        """
        Total fee function over every FeeServiceType.

        Args:
            service: FeeServiceType or its value
            amount: transaction amount in NGN
            strategy: bank-transfer strategy ('flat' | 'tiered'); defaults to Config
            selling_price / retail_price: data plan prices for margin bookkeeping
            balance: wallet balance, consulted only by the maintenance fee
        """
        service = service if isinstance(service, FeeServiceType) else FeeServiceType(service)
        amount = _money(amount)
        if amount < 0:
            raise ValueError(f"Fee amount must not be negative: {amount}")

        if service == FeeServiceType.BANK_TRANSFER:
            return cls.bank_transfer_fee(amount, strategy)
        if service == FeeServiceType.INTERNAL_TRANSFER:
            return cls._breakdown(service, amount, policy="internal_free")
        if service == FeeServiceType.INCOMING_TRANSFER:
            return cls.incoming_transfer_fee(amount)
        if service == FeeServiceType.AIRTIME:
            # Airtime margin is booked by the revenue aggregator, not charged to the user
            return cls._breakdown(
                service, amount, policy="airtime_free",
                details={"bookedMargin": str(_money(Config.AIRTIME_MARGIN_PER_PURCHASE))},
            )
        if service == FeeServiceType.DATA:
            return cls.data_margin(amount, selling_price, retail_price)
        if service in cls.UTILITY_RULES:
            return cls.utility_fee(service, amount)
        if service == FeeServiceType.MAINTENANCE:
            return cls.maintenance_fee(balance if balance is not None else amount)
        raise ValueError(f"Unsupported fee service: {service}")

    @classmethod
    def _breakdown(cls, service: FeeServiceType, amount: Decimal, base_fee=ZERO,
                   percentage_fee=ZERO, policy: str = "", details=None) -> FeeBreakdown:
        base_fee = _money(base_fee)
        percentage_fee = _money(percentage_fee)
        total_fee = base_fee + percentage_fee
        return FeeBreakdown(
            service=service.value,
            amount=amount,
            base_fee=base_fee,
            percentage_fee=percentage_fee,
            total_fee=total_fee,
            total_amount=amount + total_fee,
            policy=policy,
            details=details or {},
        )

    @classmethod
    def bank_transfer_fee(cls, amount: Decimal, strategy: Optional[str] = None) -> FeeBreakdown:
        amount = _money(amount)
        strategy_name = (strategy or Config.TRANSFER_FEE_STRATEGY or "flat").lower()
        try:
            active = TransferFeeStrategy(strategy_name)
        except ValueError:
            logger.warning(f"⚠️ Unknown transfer fee strategy {strategy_name!r}, using flat")
            active = TransferFeeStrategy.FLAT

        if active == TransferFeeStrategy.TIERED:
            fee = next(f for bound, f in cls.TIERED_TRANSFER_FEES if bound is None or amount <= bound)
        else:
            fee = Config.BANK_TRANSFER_FLAT_FEE

        return cls._breakdown(FeeServiceType.BANK_TRANSFER, amount, base_fee=fee,
                              policy=f"bank_transfer_{active.value}")

    @classmethod
    def incoming_transfer_fee(cls, amount: Decimal) -> FeeBreakdown:
        amount = _money(amount)
        if amount <= cls.INCOMING_FREE_THRESHOLD:
            return cls._breakdown(FeeServiceType.INCOMING_TRANSFER, amount, policy="incoming_free_threshold")
        return cls._breakdown(
            FeeServiceType.INCOMING_TRANSFER, amount,
            percentage_fee=amount * cls.INCOMING_FEE_RATE,
            policy="incoming_percentage",
            details={"rate": str(cls.INCOMING_FEE_RATE)},
        )

    @classmethod
    def utility_fee(cls, service: FeeServiceType, amount: Decimal) -> FeeBreakdown:
        rate, minimum, maximum = cls.UTILITY_RULES[service]
        raw = _money(amount) * rate
        fee = min(max(raw, minimum), maximum)
        return cls._breakdown(
            service, _money(amount), percentage_fee=fee,
            policy=f"{service.value}_percentage",
            details={"rate": str(rate), "minFee": str(minimum), "maxFee": str(maximum)},
        )

    @classmethod
    def data_margin(cls, amount: Decimal, selling_price=None, retail_price=None) -> FeeBreakdown:
        """The user pays the selling price; the margin is recorded, never added on top"""
        selling = _money(selling_price if selling_price is not None else amount)
        retail = _money(retail_price if retail_price is not None else selling)
        breakdown = cls._breakdown(
            FeeServiceType.DATA, selling, policy="data_margin",
            details={"sellingPrice": str(selling), "retailPrice": str(retail), "margin": str(selling - retail)},
        )
        return breakdown

    @classmethod
    def maintenance_fee(cls, balance) -> FeeBreakdown:
        balance = _money(balance)
        fee = _money(Config.MAINTENANCE_FEE_AMOUNT)
        if balance < fee:
            return cls._breakdown(FeeServiceType.MAINTENANCE, ZERO, policy="maintenance_skipped_low_balance")
        return cls._breakdown(FeeServiceType.MAINTENANCE, ZERO, base_fee=fee, policy="maintenance_monthly")
