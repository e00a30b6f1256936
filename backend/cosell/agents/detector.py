"""
Opportunity Detector: the co-sell scan pipeline.

  scan history -> fetch per source -> normalize -> keyword filter
  -> entity / BANT extraction -> confidence -> CRM cross-validation
  -> scan history update

A scan never raises for a bad record, a failed source, a failed extraction
or a CRM outage; what was skipped is reported on the ScanOutcome.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from cosell.core.auth import Credential
from cosell.core.config import get_settings
from cosell.core.database import get_warehouse_engine
from cosell.core.errors import MalformedInput
from cosell.models.schemas import (
    Communication, CommunicationType, DetectedOpportunity, ScanConfig,
    ScanOutcome, ScanWindow, as_utc, utcnow,
)
from cosell.services.bant import build_bant
from cosell.services.confidence import score_confidence
from cosell.services.crm_validator import CrmCrossValidator
from cosell.services.export_mapping import count_by_confidence
from cosell.services.extractor import ClaudeEntityExtractor, EntityExtractor
from cosell.services.graph_client import CommunicationSource, build_graph_sources
from cosell.services.msx_client import FabricReferralRepository, MSXClient, MsxCrmService
from cosell.services.normalizer import normalize
from cosell.services.scan_history import ScanHistoryTracker, get_scan_history

logger = logging.getLogger(__name__)


def match_keywords(communication: Communication, keywords: list[str]) -> list[str]:
    """Keywords found (case-insensitive substring) in subject, preview or content."""
    haystack = "\n".join(
        (communication.subject, communication.preview, communication.content)
    ).lower()
    matched = []
    for kw in keywords:
        kw_clean = kw.strip()
        if kw_clean and kw_clean.lower() in haystack and kw_clean not in matched:
            matched.append(kw_clean)
    return matched


class OpportunityDetector:
    """
    Runs one scan over the configured sources.

    Collaborators are injected so each request (or scheduled job) builds
    its own detector with its own credentials.
    """

    def __init__(
        self,
        sources: dict[CommunicationType, CommunicationSource],
        extractor: EntityExtractor,
        crm_validator: CrmCrossValidator,
        history: ScanHistoryTracker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = get_settings()
        self.sources = sources
        self.extractor = extractor
        self.crm_validator = crm_validator
        self.history = history
        self.clock = clock

    async def detect(
        self,
        window: ScanWindow,
        sources: list[CommunicationType],
        keywords: list[str],
        incremental: bool = True,
    ) -> list[DetectedOpportunity]:
        """Convenience wrapper returning only the detected opportunities."""
        config = ScanConfig(
            window=window, sources=sources, keywords=keywords, incremental=incremental
        )
        outcome = await self.scan(config)
        return outcome.opportunities

    async def scan(self, config: ScanConfig) -> ScanOutcome:
        outcome = ScanOutcome(config=config, started_at=self.clock())
        requested = list(dict.fromkeys(CommunicationType(s) for s in config.sources))

        logger.info(
            f"Scan: {config.window.start.isoformat()} → {config.window.end.isoformat()} "
            f"sources={[s.value for s in requested]} keywords={len(config.keywords)} "
            f"incremental={config.incremental}"
        )

        # 1-2. Fetch every source in parallel from its effective start
        windows = {s: await self._effective_window(s, config) for s in requested}
        results = await asyncio.gather(
            *(self._fetch(s, windows[s]) for s in requested),
            return_exceptions=True,
        )

        fetched: list[tuple[CommunicationType, list]] = []
        for source, result in zip(requested, results):
            if isinstance(result, asyncio.CancelledError):
                # Cancelled before any history write; nothing is recorded as scanned
                raise result
            if isinstance(result, Exception):
                logger.error(f"Scan: {source.value} fetch failed, source skipped: {result}")
                outcome.failed_sources[source.value] = str(result)
                continue
            outcome.fetch_windows[source.value] = windows[source]
            fetched.append((source, result))

        # 3-4. Normalize and keyword-filter before any extraction work
        candidates: list[tuple[Communication, list[str]]] = []
        for source, raw_records in fetched:
            for raw in raw_records:
                try:
                    communication = normalize(source, raw)
                except MalformedInput as e:
                    logger.warning(f"Scan: skipping malformed {source.value} record: {e}")
                    outcome.malformed_skipped += 1
                    continue
                outcome.communications_scanned += 1
                matched = match_keywords(communication, config.keywords)
                if matched:
                    candidates.append((communication, matched))
        outcome.keyword_matches = len(candidates)

        # 5. Extraction fan-out
        semaphore = asyncio.Semaphore(max(self.settings.max_concurrent_extractions, 1))

        async def bounded(communication: Communication, matched: list[str]):
            async with semaphore:
                return await self._build_opportunity(communication, matched)

        built = await asyncio.gather(*(bounded(c, m) for c, m in candidates))
        for opportunity, degraded in built:
            outcome.opportunities.append(opportunity)
            if degraded:
                outcome.extraction_degraded += 1

        # 6. CRM cross-validation over the whole batch
        await self.crm_validator.validate(outcome.opportunities)

        # 7. Advance scan history only for sources that were fully fetched
        completed_at = self.clock()
        for source, _ in fetched:
            await self.history.update_scan_date(source, completed_at)
        if not outcome.failed_sources:
            await self.history.update_full_scan_date(completed_at)

        outcome.completed_at = completed_at
        outcome.counts_by_confidence = count_by_confidence(outcome.opportunities)
        logger.info(
            f"Scan complete: {outcome.communications_scanned} scanned, "
            f"{outcome.keyword_matches} matched keywords, "
            f"{len(outcome.opportunities)} opportunities, "
            f"{outcome.malformed_skipped} malformed, "
            f"{outcome.extraction_degraded} degraded, "
            f"{len(outcome.failed_sources)} failed sources"
        )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _effective_window(self, source: CommunicationType, config: ScanConfig) -> ScanWindow:
        last_scan = None
        if config.incremental:
            last_scan = await self.history.get_last_scan_date(source)
        start = self.effective_start(config.window.start, last_scan)
        if last_scan and start == last_scan:
            logger.info(f"Scan: {source.value} incremental from {last_scan.isoformat()}")
        return ScanWindow(start=start, end=as_utc(config.window.end))

    async def _fetch(self, source: CommunicationType, window: ScanWindow) -> list:
        provider = self.sources.get(source)
        if provider is None:
            raise LookupError(f"No provider configured for {source.value}")
        if window.start >= window.end:
            logger.info(f"Scan: {source.value} already scanned up to {window.end.isoformat()}")
            return []
        return await provider.fetch(source, window.start, window.end)

    async def _build_opportunity(
        self, communication: Communication, matched: list[str]
    ) -> tuple[DetectedOpportunity, bool]:
        """Run the extractor calls concurrently; any failed call degrades to empty."""
        text = communication.content or communication.preview
        partner, customer, solution_area, summary, facets = await asyncio.gather(
            self.extractor.extract_partner(text),
            self.extractor.extract_customer(text),
            self.extractor.extract_solution_area(text),
            self.extractor.summarize(communication.subject, text),
            self.extractor.extract_bant(text),
            return_exceptions=True,
        )

        degraded = False

        def ok(name: str, value: Any) -> bool:
            nonlocal degraded
            if isinstance(value, asyncio.CancelledError):
                raise value
            if isinstance(value, Exception):
                logger.warning(
                    f"Extraction of {name} failed for {communication.type.value} "
                    f"{communication.id}: {value}"
                )
                degraded = True
                return False
            return True

        partner = partner if ok("partner", partner) else None
        customer = customer if ok("customer", customer) else None
        solution_area = solution_area if ok("solution area", solution_area) else None
        if not ok("summary", summary) or not summary:
            summary = f"Discussion about {communication.subject}"
        bant = (
            build_bant(facets, self.settings.usd_exchange_rates)
            if ok("BANT", facets) else None
        )
        if solution_area is None and bant and bant.need and bant.need.solution_area:
            solution_area = bant.need.solution_area

        opportunity = DetectedOpportunity(
            communication=communication,
            partner=partner,
            customer=customer,
            solution_area=solution_area,
            summary=summary,
            matched_keywords=matched,
            confidence=score_confidence(len(matched), partner, customer),
            bant=bant,
        )
        return opportunity, degraded

    @staticmethod
    def effective_start(window_start: datetime, last_scan: Optional[datetime]) -> datetime:
        """max(window start, last scan), the fetch start for an incremental scan."""
        start = as_utc(window_start)
        if last_scan is None:
            return start
        return max(start, as_utc(last_scan))


def build_detector(
    graph_credential: Credential,
    msx_credential: Credential,
    history: Optional[ScanHistoryTracker] = None,
) -> OpportunityDetector:
    """Wire a detector to Graph, Claude, MSX and Fabric for one request or job."""
    crm = MsxCrmService(
        MSXClient(msx_credential),
        FabricReferralRepository(get_warehouse_engine()),
    )
    return OpportunityDetector(
        sources=build_graph_sources(graph_credential),
        extractor=ClaudeEntityExtractor(),
        crm_validator=CrmCrossValidator(crm),
        history=history or get_scan_history(),
    )
