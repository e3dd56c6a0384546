"""
Financial derivation: target cost and markup ladder.

    total_cost = (base_cost + LOGISTICS_FEE + PACKAGING_FEE) / (1 - commission / 100)
    markup(p)  = total_cost * (1 + p / 100),  p in MARKUP_STEPS

``derive_financials`` is the only producer of these numbers; callers never
update the total or a single markup tier on their own.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pricedesk.config import config
from pricedesk.observability import get_logger

logger = get_logger(__name__)

LOGISTICS_FEE: float = config.pricing.logistics_fee
PACKAGING_FEE: float = config.pricing.packaging_fee
DEFAULT_COMMISSION_PERCENT: float = config.pricing.default_commission
MARKUP_STEPS = config.pricing.markup_steps


@dataclass(frozen=True)
class Financials:
    """Total cost together with every markup tier derived from it."""

    total_cost: float
    markups: Dict[int, float] = field(default_factory=dict)

    def markup(self, percent: int) -> float:
        return self.markups[percent]

    def to_dict(self) -> Dict[str, float]:
        result = {"totalCost": self.total_cost}
        for percent, value in self.markups.items():
            result[f"markup{percent}"] = value
        return result


def calculate_total_cost(
    base_cost: float,
    commission_percent: float,
    logistics_fee: float = LOGISTICS_FEE,
    packaging_fee: float = PACKAGING_FEE,
) -> float:
    """
    Target cost that covers fixed fees and the marketplace commission.

    Args:
        base_cost: Purchase cost of the item
        commission_percent: Commission in percent, 0 <= value < 100

    Raises:
        ValueError: If commission is 100% or more (no finite answer)
    """
    if commission_percent >= 100:
        raise ValueError(f"Commission must be below 100%, got {commission_percent}")
    return (base_cost + logistics_fee + packaging_fee) / (1 - commission_percent / 100)


def calculate_markup(total_cost: float, percent: float) -> float:
    """Price with ``percent`` markup on top of the total cost."""
    return total_cost * (1 + percent / 100)


def derive_financials(base_cost: float, commission_percent: float) -> Financials:
    """Compute total cost and the full markup ladder in one step."""
    total = calculate_total_cost(base_cost, commission_percent)
    return Financials(
        total_cost=total,
        markups={step: calculate_markup(total, step) for step in MARKUP_STEPS},
    )


def normalize_commission(raw: Optional[Any]) -> float:
    """
    Turn a raw commission cell into an effective percentage.

    Rules, applied in this order:
        1. a value strictly between 0 and 1 is a fraction -> multiply by 100
        2. zero, empty or negative -> DEFAULT_COMMISSION_PERCENT

    Values of 100 or more cannot produce a finite total cost and fall back
    to the default as well.

    Examples:
        >>> normalize_commission(0.17)
        17.0
        >>> normalize_commission(0)
        17.0
        >>> normalize_commission(45)
        45.0
    """
    try:
        value = float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        value = 0.0

    if 0 < value < 1:
        # 0.17 * 100 == 17.000000000000004
        value = round(value * 100, 10)

    if not value or value < 0:
        return float(DEFAULT_COMMISSION_PERCENT)

    if value >= 100:
        logger.warning(
            "Commission out of range, using default",
            extra={"commission": value, "default": DEFAULT_COMMISSION_PERCENT},
        )
        return float(DEFAULT_COMMISSION_PERCENT)

    return value
