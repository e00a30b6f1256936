"""Opportunity confidence scoring."""
from typing import Optional

from cosell.models.schemas import Entity

BASE_CONFIDENCE = 0.3
KEYWORD_WEIGHT = 0.1
KEYWORD_CAP = 0.3
ENTITY_WEIGHT = 0.2


def score_confidence(
    matched_keyword_count: int,
    partner: Optional[Entity],
    customer: Optional[Entity],
) -> float:
    """
    Score how likely a communication is a real co-sell opportunity (0-1).

    Base 0.3, plus 0.1 per matched keyword (capped at 0.3), plus 0.2 x the
    extraction confidence of each entity found. Without both entities the
    score cannot reach 1.0.
    """
    confidence = BASE_CONFIDENCE
    confidence += min(max(matched_keyword_count, 0) * KEYWORD_WEIGHT, KEYWORD_CAP)

    if partner is not None:
        confidence += partner.confidence * ENTITY_WEIGHT
    if customer is not None:
        confidence += customer.confidence * ENTITY_WEIGHT

    return min(round(confidence, 2), 1.0)
