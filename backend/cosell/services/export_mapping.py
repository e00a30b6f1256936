"""Converts between DetectedOpportunity and the flat row shape used for storage and export."""
import logging
from typing import Any, Optional

from cosell.core.config import get_settings
from cosell.models.schemas import (
    Bant, CRMAction, Communication, CommunicationType, ConfidenceCounts,
    DetectedOpportunity, Entity, EntityKind, OpportunityStatus,
)

logger = logging.getLogger(__name__)

# Stored review status <-> app status. "new" and "review" both await review.
STATUS_TO_REVIEW = {
    OpportunityStatus.NEW: "pending",
    OpportunityStatus.REVIEW: "pending",
    OpportunityStatus.CONFIRMED: "confirmed",
    OpportunityStatus.SYNCED: "synced",
    OpportunityStatus.REJECTED: "rejected",
}
REVIEW_TO_STATUS = {
    "pending": OpportunityStatus.REVIEW,
    "confirmed": OpportunityStatus.CONFIRMED,
    "synced": OpportunityStatus.SYNCED,
    "rejected": OpportunityStatus.REJECTED,
}


def confidence_bucket(confidence: float) -> str:
    settings = get_settings()
    if confidence >= settings.high_confidence_threshold:
        return "high"
    if confidence >= settings.medium_confidence_threshold:
        return "medium"
    return "low"


def count_by_confidence(opportunities: list[DetectedOpportunity]) -> ConfidenceCounts:
    counts = ConfidenceCounts()
    for opp in opportunities:
        bucket = confidence_bucket(opp.confidence)
        setattr(counts, bucket, getattr(counts, bucket) + 1)
    return counts


def opportunity_to_record(opp: DetectedOpportunity, scan_id: Optional[str] = None) -> dict:
    """Flatten an opportunity into a detected_opportunities row."""
    comm = opp.communication
    return {
        "id": opp.id,
        "scan_id": scan_id,
        "communication_id": comm.id,
        "communication_type": comm.type.value,
        "communication_subject": comm.subject,
        "communication_from": comm.sender,
        "communication_date": comm.occurred_at,
        "communication_preview": comm.preview,
        "communication_content": comm.content,
        "participants": list(comm.participants),
        "partner_name": opp.partner.name if opp.partner else None,
        "partner_confidence": opp.partner.confidence if opp.partner else None,
        "customer_name": opp.customer.name if opp.customer else None,
        "customer_confidence": opp.customer.confidence if opp.customer else None,
        "solution_area": opp.solution_area.value if opp.solution_area else None,
        "summary": opp.summary,
        "keywords": list(opp.matched_keywords),
        "confidence": opp.confidence,
        "crm_action": opp.crm_action.value,
        "linked_opportunity_id": opp.existing_opportunity_id,
        "linked_opportunity_name": opp.existing_opportunity_name,
        "linked_referral_id": opp.existing_referral_id,
        "bant": opp.bant.model_dump(mode="json") if opp.bant else None,
        "bant_score": opp.bant.score if opp.bant else None,
        "review_status": STATUS_TO_REVIEW[opp.status],
        "review_notes": opp.review_notes,
        "created_at": opp.created_at,
        "updated_at": opp.updated_at,
    }


def _entity(name: Any, confidence: Any, kind: EntityKind) -> Optional[Entity]:
    if not name:
        return None
    return Entity(name=name, kind=kind, confidence=confidence or 0.0)


def record_to_opportunity(record: dict) -> DetectedOpportunity:
    """Rebuild an opportunity from a stored row (inverse of opportunity_to_record)."""
    communication = Communication(
        id=record["communication_id"],
        type=CommunicationType(record["communication_type"]),
        subject=record.get("communication_subject") or "",
        sender=record.get("communication_from") or "",
        occurred_at=record.get("communication_date") or record["created_at"],
        preview=record.get("communication_preview") or "",
        content=record.get("communication_content") or "",
        participants=record.get("participants") or [],
    )
    status = REVIEW_TO_STATUS.get(record.get("review_status") or "pending", OpportunityStatus.REVIEW)
    crm_action = record.get("crm_action") or CRMAction.CREATE.value
    if crm_action not in {a.value for a in CRMAction}:
        # Rows written by the older create|update|link taxonomy
        logger.debug(f"Mapping legacy crm_action {crm_action!r} to create")
        crm_action = CRMAction.CREATE.value

    return DetectedOpportunity(
        id=record["id"],
        communication=communication,
        partner=_entity(record.get("partner_name"), record.get("partner_confidence"), EntityKind.PARTNER),
        customer=_entity(record.get("customer_name"), record.get("customer_confidence"), EntityKind.CUSTOMER),
        solution_area=record.get("solution_area"),
        summary=record.get("summary") or "",
        matched_keywords=record.get("keywords") or [],
        confidence=record["confidence"],
        status=status,
        crm_action=crm_action,
        existing_opportunity_id=record.get("linked_opportunity_id"),
        existing_opportunity_name=record.get("linked_opportunity_name"),
        existing_referral_id=record.get("linked_referral_id"),
        bant=Bant(**record["bant"]) if record.get("bant") else None,
        review_notes=record.get("review_notes"),
        created_at=record["created_at"],
        updated_at=record.get("updated_at") or record["created_at"],
    )


EXPORT_COLUMNS = (
    "id", "communication_type", "communication_date", "communication_subject",
    "communication_from", "partner_name", "customer_name", "solution_area",
    "summary", "keywords", "confidence", "confidence_bucket", "crm_action",
    "linked_opportunity_id", "linked_opportunity_name", "linked_referral_id",
    "bant_score", "bant_missing", "review_status", "review_notes",
)


def export_row(opp: DetectedOpportunity) -> dict:
    """One CSV / Excel row per opportunity; datetimes as ISO strings, lists joined."""
    record = opportunity_to_record(opp)
    record["communication_date"] = opp.communication.occurred_at.isoformat()
    record["keywords"] = ", ".join(opp.matched_keywords)
    record["confidence_bucket"] = confidence_bucket(opp.confidence)
    record["bant_missing"] = ", ".join(opp.bant.missing_elements) if opp.bant else ""
    return {column: record.get(column) for column in EXPORT_COLUMNS}
