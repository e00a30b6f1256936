"""End-to-end tests for the opportunity detector with stubbed collaborators."""
import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError

from cosell.agents.detector import OpportunityDetector, match_keywords
from cosell.models.schemas import (
    CRMAction, CommunicationType, OpportunityStatus, PartnerReferral,
    ScanConfig, ScanStatus, ScanWindow, SolutionArea,
)
from cosell.services.crm_validator import CrmCrossValidator
from cosell.services.normalizer import normalize
from cosell.services.scan_history import InMemoryKeyValueStore, ScanHistoryTracker
from factories import (
    NOW, FixedClock, StubCrm, StubExtractor, StubSource, crm_opportunity,
    raw_chat, raw_email, raw_transcript, reset_ids,
)

EMAIL = CommunicationType.EMAIL
CHAT = CommunicationType.CHAT
MEETING = CommunicationType.MEETING

WINDOW = ScanWindow(start=NOW - timedelta(days=7), end=NOW)


def _detector(source, extractor=None, crm=None, history=None):
    all_sources = {t: source for t in CommunicationType}
    return OpportunityDetector(
        sources=all_sources,
        extractor=extractor or StubExtractor(),
        crm_validator=CrmCrossValidator(crm or StubCrm()),
        history=history or ScanHistoryTracker(InMemoryKeyValueStore()),
        clock=FixedClock(),
    )


def _config(sources=(EMAIL,), keywords=("co-sell",), incremental=True) -> ScanConfig:
    return ScanConfig(window=WINDOW, sources=list(sources), keywords=list(keywords), incremental=incremental)


def _acme_email():
    return raw_email(
        "We should co-sell with Acme Corp on the Contoso migration.",
        subject="Contoso migration",
    )


class TestScenarios:
    def setup_method(self):
        reset_ids()

    def test_create_when_crm_has_no_opportunity(self):
        source = StubSource({EMAIL: [_acme_email()]})
        [opp] = asyncio.run(_detector(source).detect(WINDOW, [EMAIL], ["co-sell"]))
        assert opp.confidence == pytest.approx(0.74)
        assert opp.crm_action == CRMAction.CREATE
        assert opp.status == OpportunityStatus.NEW
        assert opp.partner.name == "Acme Corp"
        assert opp.customer.name == "Contoso"
        assert opp.matched_keywords == ["co-sell"]

    def test_link_when_open_opportunity_without_referral(self):
        source = StubSource({EMAIL: [_acme_email()]})
        crm = StubCrm(opportunities={"Contoso": [crm_opportunity()]})
        [opp] = asyncio.run(_detector(source, crm=crm).detect(WINDOW, [EMAIL], ["co-sell"]))
        assert opp.crm_action == CRMAction.LINK
        assert opp.existing_opportunity_id == "opp-msx-1"

    def test_already_linked_when_referral_matches(self):
        source = StubSource({EMAIL: [_acme_email()]})
        crm = StubCrm(
            opportunities={"Contoso": [crm_opportunity()]},
            referrals={"opp-msx-1": [PartnerReferral(referral_id="ref-1", partner_name="Acme")]},
        )
        [opp] = asyncio.run(_detector(source, crm=crm).detect(WINDOW, [EMAIL], ["co-sell"]))
        assert opp.crm_action == CRMAction.ALREADY_LINKED
        assert opp.existing_referral_id == "ref-1"

    def test_no_keyword_match_never_reaches_extractor(self):
        quiet = raw_email("Lunch on Friday with the Contoso team?", subject="Lunch")
        source = StubSource({EMAIL: [quiet, _acme_email()]})
        extractor = StubExtractor()
        opps = asyncio.run(_detector(source, extractor).detect(WINDOW, [EMAIL], ["co-sell"]))
        assert len(opps) == 1
        assert not any("Lunch on Friday" in text for text in extractor.texts_seen())


class TestIncremental:
    def setup_method(self):
        reset_ids()
        self.history = ScanHistoryTracker(InMemoryKeyValueStore())

    def test_fetch_starts_at_last_scan(self):
        last = NOW - timedelta(days=2)
        asyncio.run(self.history.update_scan_date(EMAIL, last))
        source = StubSource({EMAIL: []})
        asyncio.run(_detector(source, history=self.history).scan(_config()))
        assert source.windows_for(EMAIL) == [(last, NOW)]

    def test_window_start_wins_when_later_than_last_scan(self):
        asyncio.run(self.history.update_scan_date(EMAIL, NOW - timedelta(days=30)))
        source = StubSource({EMAIL: []})
        asyncio.run(_detector(source, history=self.history).scan(_config()))
        assert source.windows_for(EMAIL) == [(WINDOW.start, NOW)]

    def test_non_incremental_ignores_history(self):
        asyncio.run(self.history.update_scan_date(EMAIL, NOW - timedelta(days=2)))
        source = StubSource({EMAIL: []})
        asyncio.run(_detector(source, history=self.history).scan(_config(incremental=False)))
        assert source.windows_for(EMAIL) == [(WINDOW.start, NOW)]

    def test_history_advanced_for_scanned_sources(self):
        source = StubSource({EMAIL: [], CHAT: []})
        asyncio.run(_detector(source, history=self.history).scan(_config(sources=(EMAIL, CHAT))))
        assert asyncio.run(self.history.get_last_scan_date(EMAIL)) == NOW
        assert asyncio.run(self.history.get_last_scan_date(CHAT)) == NOW
        assert asyncio.run(self.history.get_last_full_scan_date()) == NOW

    def test_failed_source_keeps_its_marker(self):
        last = NOW - timedelta(days=2)
        asyncio.run(self.history.update_scan_date(EMAIL, last))
        asyncio.run(self.history.update_full_scan_date(last))
        source = StubSource({CHAT: [raw_chat("co-sell with Acme Corp for Contoso")]}, failing=(EMAIL,))

        outcome = asyncio.run(
            _detector(source, history=self.history).scan(_config(sources=(EMAIL, CHAT)))
        )

        assert outcome.status == ScanStatus.PARTIAL
        assert "email" in outcome.failed_sources
        assert len(outcome.opportunities) == 1
        assert asyncio.run(self.history.get_last_scan_date(EMAIL)) == last
        assert asyncio.run(self.history.get_last_scan_date(CHAT)) == NOW
        assert asyncio.run(self.history.get_last_full_scan_date()) == last

    def test_cancelled_scan_records_nothing(self):
        class CancellingSource(StubSource):
            async def fetch(self, source_type, start, end):
                raise asyncio.CancelledError()

        detector = _detector(CancellingSource(), history=self.history)

        async def go():
            with pytest.raises(asyncio.CancelledError):
                await detector.scan(_config(sources=(EMAIL, CHAT)))
            return await self.history.get_history()

        history = asyncio.run(go())
        assert history["last_full_scan"] is None
        assert all(v is None for v in history["last_scan_by_source"].values())

    def test_scan_needs_at_least_one_source(self):
        with pytest.raises(ValidationError):
            _config(sources=())
        assert asyncio.run(self.history.get_last_full_scan_date()) is None

    def test_already_scanned_window_skips_fetch(self):
        asyncio.run(self.history.update_scan_date(EMAIL, NOW + timedelta(minutes=5)))
        source = StubSource({EMAIL: [_acme_email()]})
        outcome = asyncio.run(_detector(source, history=self.history).scan(_config()))
        assert source.calls == []
        assert outcome.opportunities == []


class TestDegradation:
    def setup_method(self):
        reset_ids()

    def test_malformed_records_skipped(self):
        broken = _acme_email()
        del broken["receivedDateTime"]
        source = StubSource({EMAIL: [broken, _acme_email(), "garbage"]})
        outcome = asyncio.run(_detector(source).scan(_config()))
        assert outcome.malformed_skipped == 2
        assert outcome.communications_scanned == 1
        assert len(outcome.opportunities) == 1

    def test_extraction_failure_keeps_opportunity_with_base_confidence(self):
        bad = raw_email("co-sell EXPLODE with Acme Corp for Contoso", subject="Broken")
        source = StubSource({EMAIL: [bad, _acme_email()]})
        extractor = StubExtractor(fail_on=("EXPLODE",))
        outcome = asyncio.run(_detector(source, extractor).scan(_config()))

        assert len(outcome.opportunities) == 2
        assert outcome.extraction_degraded == 1
        degraded = next(o for o in outcome.opportunities if o.communication.subject == "Broken")
        assert degraded.partner is None and degraded.customer is None
        assert degraded.confidence == pytest.approx(0.4)
        assert degraded.summary == "Discussion about Broken"
        assert degraded.bant is None
        healthy = next(o for o in outcome.opportunities if o is not degraded)
        assert healthy.confidence == pytest.approx(0.74)

    def test_summary_failure_falls_back(self):
        source = StubSource({EMAIL: [_acme_email()]})
        extractor = StubExtractor(fail_summary=True)
        [opp] = asyncio.run(_detector(source, extractor).detect(WINDOW, [EMAIL], ["co-sell"]))
        assert opp.summary == "Discussion about Contoso migration"
        assert opp.partner is not None

    def test_crm_outage_defaults_to_create(self):
        source = StubSource({EMAIL: [_acme_email(), _acme_email()]})
        crm = StubCrm(opportunities={"Contoso": [crm_opportunity()]}, fail=True)
        outcome = asyncio.run(_detector(source, crm=crm).scan(_config()))
        assert [o.crm_action for o in outcome.opportunities] == [CRMAction.CREATE] * 2
        assert crm.opportunity_queries == ["Contoso"]

    def test_unexpected_crm_error_keeps_the_scan(self):
        history = ScanHistoryTracker(InMemoryKeyValueStore())
        source = StubSource({EMAIL: [_acme_email()]})
        crm = StubCrm(error=TimeoutError("MSX did not answer"))
        outcome = asyncio.run(_detector(source, crm=crm, history=history).scan(_config()))
        assert [o.crm_action for o in outcome.opportunities] == [CRMAction.CREATE]
        assert outcome.status == ScanStatus.COMPLETED
        assert asyncio.run(history.get_last_scan_date(EMAIL)) == NOW


class TestOutcome:
    def setup_method(self):
        reset_ids()

    def test_all_sources_counts_and_bant(self):
        source = StubSource({
            EMAIL: [_acme_email()],
            CHAT: [raw_chat("Partnership kickoff with Acme Corp, customer Contoso")],
            MEETING: [raw_transcript([("Jane", "No business today")])],
        })
        extractor = StubExtractor(solution_area=SolutionArea.AZURE_MIGRATION)
        outcome = asyncio.run(_detector(source, extractor).scan(
            _config(sources=(EMAIL, CHAT, MEETING), keywords=("co-sell", "partnership"))
        ))

        assert outcome.status == ScanStatus.COMPLETED
        assert outcome.communications_scanned == 3
        assert outcome.keyword_matches == 2
        assert outcome.counts_by_confidence.medium == 2
        assert outcome.completed_at == NOW
        for opp in outcome.opportunities:
            assert opp.solution_area == SolutionArea.AZURE_MIGRATION
            assert opp.bant.score == 25
            assert opp.bant.missing_elements == ["budget", "authority", "timeline"]


def test_match_keywords_case_insensitive_across_fields():
    reset_ids()
    comm = normalize(EMAIL, raw_email("Joint Opportunity ahead", subject="CO-SELL sync"))
    assert match_keywords(comm, ["co-sell", "joint opportunity", "referral"]) == [
        "co-sell", "joint opportunity",
    ]
    assert match_keywords(comm, ["  ", "referral"]) == []
