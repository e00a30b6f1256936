"""Tests for the opportunity <-> stored record mapping."""
from cosell.models.schemas import (
    Bant, CRMAction, CommunicationType, DetectedOpportunity, Entity, EntityKind,
    Need, OpportunityStatus,
)
from cosell.services.export_mapping import (
    EXPORT_COLUMNS, confidence_bucket, count_by_confidence, export_row,
    opportunity_to_record, record_to_opportunity,
)
from cosell.services.normalizer import normalize
from factories import raw_chat, reset_ids


def _chat_opportunity(**overrides) -> DetectedOpportunity:
    reset_ids()
    communication = normalize(
        CommunicationType.CHAT,
        raw_chat("Co-sell kickoff: Acme Corp and Contoso want an Azure landing zone " + "z" * 200),
    )
    fields = dict(
        communication=communication,
        partner=Entity(name="Acme Corp", kind=EntityKind.PARTNER, confidence=0.9),
        customer=Entity(name="Contoso", kind=EntityKind.CUSTOMER, confidence=0.8),
        summary="Acme Corp and Contoso discuss an Azure landing zone.",
        matched_keywords=["co-sell"],
        confidence=0.74,
        crm_action=CRMAction.LINK,
        existing_opportunity_id="opp-msx-1",
        existing_opportunity_name="Contoso Azure Migration",
        bant=Bant(need=Need(description="landing zone", confidence=1.0), score=25,
                  missing_elements=["budget", "authority", "timeline"]),
    )
    fields.update(overrides)
    return DetectedOpportunity(**fields)


class TestRoundTrip:
    def test_chat_communication_preserved(self):
        opp = _chat_opportunity()
        restored = record_to_opportunity(opportunity_to_record(opp, scan_id="scan-1"))

        assert restored.communication.id == opp.communication.id
        assert restored.communication.occurred_at == opp.communication.occurred_at
        assert restored.communication.content == opp.communication.content
        assert restored.communication.type == CommunicationType.CHAT

    def test_entities_action_and_bant_preserved(self):
        opp = _chat_opportunity()
        restored = record_to_opportunity(opportunity_to_record(opp))
        assert restored.id == opp.id
        assert restored.partner == opp.partner
        assert restored.customer == opp.customer
        assert restored.crm_action == CRMAction.LINK
        assert restored.existing_opportunity_id == "opp-msx-1"
        assert restored.bant == opp.bant

    def test_new_status_stored_as_pending(self):
        record = opportunity_to_record(_chat_opportunity())
        assert record["review_status"] == "pending"
        assert record_to_opportunity(record).status == OpportunityStatus.REVIEW

    def test_confirmed_status_round_trips(self):
        opp = _chat_opportunity(status=OpportunityStatus.CONFIRMED)
        assert record_to_opportunity(opportunity_to_record(opp)).status == OpportunityStatus.CONFIRMED

    def test_review_notes_round_trip(self):
        opp = _chat_opportunity(status=OpportunityStatus.CONFIRMED, review_notes="Call booked")
        record = opportunity_to_record(opp)
        assert record["review_notes"] == "Call booked"
        assert record_to_opportunity(record).review_notes == "Call booked"

    def test_legacy_update_action_maps_to_create(self):
        record = opportunity_to_record(_chat_opportunity())
        record["crm_action"] = "update"
        assert record_to_opportunity(record).crm_action == CRMAction.CREATE


def test_confidence_buckets():
    assert confidence_bucket(0.8) == "high"
    assert confidence_bucket(0.79) == "medium"
    assert confidence_bucket(0.5) == "medium"
    assert confidence_bucket(0.49) == "low"


def test_count_by_confidence():
    opps = [_chat_opportunity(confidence=c) for c in (0.95, 0.74, 0.6, 0.3)]
    counts = count_by_confidence(opps)
    assert (counts.high, counts.medium, counts.low) == (1, 2, 1)


def test_export_row_is_flat():
    row = export_row(_chat_opportunity())
    assert list(row) == list(EXPORT_COLUMNS)
    assert row["keywords"] == "co-sell"
    assert row["confidence_bucket"] == "medium"
    assert row["bant_missing"] == "budget, authority, timeline"
    assert isinstance(row["communication_date"], str)


def test_export_row_carries_review_notes():
    row = export_row(_chat_opportunity(review_notes="Call booked"))
    assert row["review_notes"] == "Call booked"
    assert row["review_status"] == "pending"
