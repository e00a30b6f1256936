"""BANT (Budget / Authority / Need / Timeline) qualification."""
import logging
from typing import Optional

from cosell.models.schemas import Bant, BantFacets, BantScore, Budget

logger = logging.getLogger(__name__)

FACET_NAMES = ("budget", "authority", "need", "timeline")
FACET_WEIGHT = 25


def qualify(facets: BantFacets) -> BantScore:
    """
    Score BANT completeness (0-100).

    Every present facet contributes 25 x its confidence, so a facet found
    with low confidence still counts proportionally. Only absent facets are
    reported as missing.
    """
    total = 0.0
    missing = []
    for name in FACET_NAMES:
        facet = getattr(facets, name)
        if facet is None:
            missing.append(name)
            continue
        total += FACET_WEIGHT * facet.confidence

    score = min(max(round(total), 0), 100)
    return BantScore(score=score, missing_elements=missing)


def convert_to_usd(
    amount: Optional[float],
    currency: str,
    rates: dict[str, float],
) -> Optional[float]:
    """Convert an amount using a USD-per-unit rate table. None if unknown."""
    if amount is None:
        return None
    rate = rates.get((currency or "USD").upper())
    if rate is None:
        logger.warning(f"No USD rate for currency {currency!r}; amount_usd left empty")
        return None
    return round(amount * rate, 2)


def build_bant(facets: BantFacets, rates: Optional[dict[str, float]] = None) -> Bant:
    """Attach the derived score to a set of facets, filling amount_usd when possible."""
    budget = facets.budget
    if budget is not None and budget.amount_usd is None and rates:
        budget = Budget(
            amount=budget.amount,
            currency=budget.currency,
            amount_usd=convert_to_usd(budget.amount, budget.currency, rates),
            confidence=budget.confidence,
        )

    result = qualify(facets)
    return Bant(
        budget=budget,
        authority=facets.authority,
        need=facets.need,
        timeline=facets.timeline,
        score=result.score,
        missing_elements=result.missing_elements,
    )
