"""Database CRUD helpers for CoSell Intel.

All functions accept an optional AsyncSession. When session is None (DB not
configured or unavailable), they silently no-op so the rest of the app
continues in in-memory mode without any special-casing at the call site.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cosell.models.schemas import (
    ConfidenceCounts, OpportunityStatus, ScanSession, ScanWindow,
)
from cosell.services.export_mapping import (
    STATUS_TO_REVIEW, opportunity_to_record, record_to_opportunity,
)

logger = logging.getLogger(__name__)


def _row_to_dict(row) -> dict:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


async def _rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception as e:
        logger.debug(f"DB rollback failed: {e}")


# ---------------------------------------------------------------------------
# Scan sessions
# ---------------------------------------------------------------------------

async def save_scan_session(
    session: Optional[AsyncSession],
    scan: ScanSession,
) -> None:
    """Insert a scan session and its opportunity rows as one transaction."""
    if session is None:
        return
    try:
        from cosell.models.db_models import DetectedOpportunityRow, ScanSessionRow

        session.add(ScanSessionRow(
            id=scan.id,
            name=scan.name,
            scan_type=scan.scan_type.value,
            window_start=scan.window.start,
            window_end=scan.window.end,
            sources=[s.value for s in scan.sources],
            keywords=scan.keywords,
            communications_scanned=scan.communications_scanned,
            opportunities_detected=scan.opportunities_detected,
            high_confidence_count=scan.counts_by_confidence.high,
            medium_confidence_count=scan.counts_by_confidence.medium,
            low_confidence_count=scan.counts_by_confidence.low,
            failed_sources=scan.failed_sources,
            status=scan.status.value,
            started_at=scan.started_at,
            completed_at=scan.completed_at,
            duration_seconds=scan.duration_seconds,
        ))
        # Flush the parent first so the FK on detected_opportunities is satisfied
        await session.flush()
        session.add_all([
            DetectedOpportunityRow(**opportunity_to_record(opp, scan.id))
            for opp in scan.opportunities
        ])
        await session.commit()
        logger.debug(f"DB: saved scan {scan.id} with {len(scan.opportunities)} opportunities")
    except Exception as e:
        logger.error(f"DB save_scan_session failed: {e}")
        await _rollback(session)


def _row_to_scan(row, opportunity_rows: list) -> ScanSession:
    return ScanSession(
        id=row.id,
        name=row.name,
        scan_type=row.scan_type,
        window=ScanWindow(start=row.window_start, end=row.window_end),
        sources=row.sources or [],
        keywords=row.keywords or [],
        communications_scanned=row.communications_scanned or 0,
        opportunities_detected=row.opportunities_detected or 0,
        counts_by_confidence=ConfidenceCounts(
            high=row.high_confidence_count or 0,
            medium=row.medium_confidence_count or 0,
            low=row.low_confidence_count or 0,
        ),
        failed_sources=row.failed_sources or {},
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_seconds=row.duration_seconds or 0.0,
        opportunities=[record_to_opportunity(_row_to_dict(r)) for r in opportunity_rows],
    )


async def get_scan_sessions_from_db(
    session: Optional[AsyncSession],
    limit: int = 20,
) -> list[ScanSession]:
    """Most recent scan sessions with their opportunities."""
    if session is None:
        return []
    try:
        from cosell.models.db_models import DetectedOpportunityRow, ScanSessionRow

        result = await session.execute(
            select(ScanSessionRow).order_by(ScanSessionRow.started_at.desc()).limit(limit)
        )
        scans = []
        for row in result.scalars().all():
            opp_result = await session.execute(
                select(DetectedOpportunityRow)
                .where(DetectedOpportunityRow.scan_id == row.id)
                .order_by(DetectedOpportunityRow.confidence.desc())
            )
            try:
                scans.append(_row_to_scan(row, opp_result.scalars().all()))
            except Exception as e:
                logger.warning(f"DB: skipping scan row {row.id}, deserialise error: {e}")
        return scans
    except Exception as e:
        logger.error(f"DB get_scan_sessions failed: {e}")
        return []


async def delete_scan_session_from_db(
    session: Optional[AsyncSession],
    scan_id: str,
) -> None:
    """Delete a scan session; its opportunities go with it (ON DELETE CASCADE)."""
    if session is None:
        return
    try:
        from cosell.models.db_models import DetectedOpportunityRow, ScanSessionRow
        await session.execute(
            delete(DetectedOpportunityRow).where(DetectedOpportunityRow.scan_id == scan_id)
        )
        await session.execute(delete(ScanSessionRow).where(ScanSessionRow.id == scan_id))
        await session.commit()
        logger.debug(f"DB: deleted scan {scan_id}")
    except Exception as e:
        logger.error(f"DB delete_scan_session failed: {e}")
        await _rollback(session)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

async def update_review_in_db(
    session: Optional[AsyncSession],
    opportunity_id: str,
    status: OpportunityStatus,
    notes: Optional[str],
    updated_at: datetime,
) -> None:
    if session is None:
        return
    try:
        from cosell.models.db_models import DetectedOpportunityRow
        await session.execute(
            update(DetectedOpportunityRow)
            .where(DetectedOpportunityRow.id == opportunity_id)
            .values(
                review_status=STATUS_TO_REVIEW[status],
                review_notes=notes,
                updated_at=updated_at,
            )
        )
        await session.commit()
        logger.debug(f"DB: review {opportunity_id} -> {status.value}")
    except Exception as e:
        logger.error(f"DB update_review failed: {e}")
        await _rollback(session)
