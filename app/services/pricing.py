"""Credit prices per tier/feature and USD conversion."""

import math
from decimal import Decimal
from enum import Enum

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.models.account import Tier


class Operation(str, Enum):
    CONTENT_GENERATION = "content_generation"
    CLONE_ME = "clone_me"
    PLAGIARISM_CHECK = "plagiarism_check"
    EXPORT_PDF = "export_pdf"
    EXPORT_WORD = "export_word"


# Content generation is priced per tier; every other operation is flat.
GENERATION_COST_BY_TIER: dict[Tier, int] = {
    Tier.LITE: 10,
    Tier.PRO: 5,
    Tier.PREMIUM: 5,
    Tier.ENTERPRISE: 3,
}

FEATURE_COSTS: dict[Operation, int] = {
    Operation.CLONE_ME: 20,
    Operation.PLAGIARISM_CHECK: 5,
    Operation.EXPORT_PDF: 2,
    Operation.EXPORT_WORD: 2,
}

FEATURE_OPERATIONS = tuple(FEATURE_COSTS)


def _check_tables() -> None:
    missing_tiers = set(Tier) - set(GENERATION_COST_BY_TIER)
    if missing_tiers:
        raise RuntimeError(f"No generation cost for tiers: {sorted(t.value for t in missing_tiers)}")
    missing_ops = set(Operation) - set(FEATURE_COSTS) - {Operation.CONTENT_GENERATION}
    if missing_ops:
        raise RuntimeError(f"No cost for operations: {sorted(o.value for o in missing_ops)}")
    for cost in [*GENERATION_COST_BY_TIER.values(), *FEATURE_COSTS.values()]:
        if not isinstance(cost, int) or cost < 0:
            raise RuntimeError(f"Invalid credit cost: {cost!r}")


_check_tables()


def cost_of(operation: Operation, tier: Tier) -> int:
    """Base credit cost of one unit of `operation` for an account on `tier`."""
    if operation is Operation.CONTENT_GENERATION:
        return GENERATION_COST_BY_TIER[tier]
    return FEATURE_COSTS[operation]


def parse_operation(name: str) -> Operation:
    try:
        return Operation(name.strip().lower())
    except ValueError:
        raise BadRequestError(f"Unknown operation: {name}") from None


def bulk_quote(base_cost: int, quantity: int) -> dict:
    """Discounted quote for large batches; informational, the guard charges base * quantity."""
    s = get_settings()
    original = base_cost * quantity
    if quantity >= s.bulk_generation_threshold:
        total = math.floor(original * (1 - s.bulk_discount_percent))
        return {
            "total_cost": total,
            "discount_percent": round(s.bulk_discount_percent * 100),
            "savings": original - total,
        }
    return {"total_cost": original, "discount_percent": 0, "savings": 0}


def usd_to_credits(usd_amount: float) -> int:
    # Decimal via str so 0.29 * 100 is 29, not 28
    return math.floor(Decimal(str(usd_amount)) * get_settings().credits_per_dollar)


def credits_to_usd(credits: int) -> float:
    return credits / get_settings().credits_per_dollar


def generations_remaining(balance: int, tier: Tier) -> int:
    """Whole generations the balance covers; 0 for a non-positive balance."""
    return max(0, balance) // GENERATION_COST_BY_TIER[tier]


def get_pricing() -> dict:
    s = get_settings()
    return {
        "tiers": {tier.value: {"credits_per_generation": cost} for tier, cost in GENERATION_COST_BY_TIER.items()},
        "features": {op.value: cost for op, cost in FEATURE_COSTS.items()},
        "credits_per_dollar": s.credits_per_dollar,
        "minimum_purchase_usd": s.min_purchase_usd,
        "minimum_purchase_credits": usd_to_credits(s.min_purchase_usd),
        "bulk": {
            "threshold": s.bulk_generation_threshold,
            "discount_percent": round(s.bulk_discount_percent * 100),
        },
    }
