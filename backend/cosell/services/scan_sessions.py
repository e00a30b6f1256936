"""
Scan session recording and review.

ScanSessionStore turns a finished ScanOutcome into an auditable ScanSession
(config, counts by confidence bucket, opportunity batch). Sessions live in
memory and are mirrored to PostgreSQL when a DB session factory is given.
"""
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cosell.models.schemas import (
    DetectedOpportunity, OpportunityStatus, ReviewUpdate, ScanOutcome,
    ScanSession, utcnow,
)
from cosell.services.db_ops import (
    delete_scan_session_from_db, get_scan_sessions_from_db,
    save_scan_session, update_review_in_db,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[Optional[AsyncSession]]]


async def _no_db() -> Optional[AsyncSession]:
    return None


def build_scan_session(outcome: ScanOutcome) -> ScanSession:
    config = outcome.config
    completed_at = outcome.completed_at or utcnow()
    return ScanSession(
        name=config.name,
        scan_type=config.scan_type,
        window=config.window,
        sources=config.sources,
        keywords=config.keywords,
        communications_scanned=outcome.communications_scanned,
        opportunities_detected=len(outcome.opportunities),
        counts_by_confidence=outcome.counts_by_confidence,
        failed_sources=outcome.failed_sources,
        status=outcome.status,
        started_at=outcome.started_at,
        completed_at=completed_at,
        duration_seconds=round((completed_at - outcome.started_at).total_seconds(), 2),
        opportunities=outcome.opportunities,
    )


class ScanSessionStore:
    def __init__(self, session_factory: SessionFactory = _no_db):
        self._scans: dict[str, ScanSession] = {}
        self._session_factory = session_factory

    async def _with_session(self, fn, *args) -> None:
        session = await self._session_factory()
        if session is None:
            return
        try:
            await fn(session, *args)
        finally:
            await session.close()

    async def load(self, limit: int = 100) -> int:
        """Warm the in-memory cache from the DB at startup."""
        session = await self._session_factory()
        if session is None:
            return 0
        try:
            scans = await get_scan_sessions_from_db(session, limit)
        finally:
            await session.close()
        for scan in scans:
            self._scans[scan.id] = scan
        return len(scans)

    async def record(self, outcome: ScanOutcome) -> ScanSession:
        scan = build_scan_session(outcome)
        self._scans[scan.id] = scan
        await self._with_session(save_scan_session, scan)
        logger.info(
            f"Recorded scan {scan.id}: {scan.opportunities_detected} opportunities "
            f"(high={scan.counts_by_confidence.high}, medium={scan.counts_by_confidence.medium}, "
            f"low={scan.counts_by_confidence.low}), status={scan.status.value}"
        )
        return scan

    def get(self, scan_id: str) -> Optional[ScanSession]:
        return self._scans.get(scan_id)

    def list_sessions(self, limit: int = 20) -> list[ScanSession]:
        scans = sorted(self._scans.values(), key=lambda s: s.started_at, reverse=True)
        return scans[:limit]

    async def delete(self, scan_id: str) -> bool:
        if self._scans.pop(scan_id, None) is None:
            return False
        await self._with_session(delete_scan_session_from_db, scan_id)
        return True

    def find_opportunity(self, opportunity_id: str) -> Optional[DetectedOpportunity]:
        for scan in self._scans.values():
            for opp in scan.opportunities:
                if opp.id == opportunity_id:
                    return opp
        return None

    async def review(self, opportunity_id: str, update: ReviewUpdate) -> Optional[DetectedOpportunity]:
        """Apply a reviewer decision (confirm / reject / sync) to one opportunity."""
        opp = self.find_opportunity(opportunity_id)
        if opp is None:
            return None
        if update.status == OpportunityStatus.NEW:
            raise ValueError("An opportunity cannot be moved back to 'new'")
        opp.status = update.status
        if update.notes is not None:
            opp.review_notes = update.notes
        opp.updated_at = utcnow()
        await self._with_session(
            update_review_in_db, opportunity_id, update.status, opp.review_notes, opp.updated_at
        )
        return opp
