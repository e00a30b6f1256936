"""API routes for CoSell Intel."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query
from pydantic import BaseModel, Field

from cosell.agents import detector as detector_module
from cosell.core.auth import Credential, bearer_token
from cosell.core.config import get_settings
from cosell.core.database import get_db_session
from cosell.models.schemas import (
    CommunicationType, DetectedOpportunity, ReviewUpdate, ScanConfig,
    ScanSession, ScanType, ScanWindow, as_utc, utcnow,
)
from cosell.services.export_mapping import EXPORT_COLUMNS, export_row
from cosell.services.scan_history import get_scan_history
from cosell.services.scan_sessions import ScanSessionStore

logger = logging.getLogger(__name__)
router = APIRouter()

# Sessions live in memory, mirrored to PostgreSQL when DATABASE_URL is set
scan_store = ScanSessionStore(get_db_session)


class ScanRequest(BaseModel):
    start: datetime
    end: Optional[datetime] = None
    sources: list[CommunicationType] = Field(default_factory=lambda: list(CommunicationType), min_length=1)
    keywords: Optional[list[str]] = None
    incremental: bool = True
    name: Optional[str] = None


def _credentials(
    authorization: Optional[str], msx_token: Optional[str]
) -> tuple[Credential, Credential]:
    graph = bearer_token(authorization)
    if not graph:
        raise HTTPException(status_code=401, detail="Missing Graph bearer token (Authorization header)")
    # X-MSX-Token may be sent bare or as "Bearer <token>"
    msx = bearer_token(msx_token) or (msx_token or "").strip()
    if not msx:
        raise HTTPException(status_code=401, detail="Missing MSX token (X-MSX-Token header)")
    return Credential(access_token=graph), Credential(access_token=msx)


# --- Scans ---

@router.post("/scans", tags=["Scans"], response_model=ScanSession)
async def run_scan(
    request: ScanRequest,
    authorization: Optional[str] = Header(default=None),
    x_msx_token: Optional[str] = Header(default=None),
):
    """
    Scan the caller's mailbox, chats and meeting transcripts for co-sell signals.

    Each detected opportunity carries the recommended MSX action (create, link
    or already_linked). Sources that fail are listed on the session and the
    session status is 'partial'.
    """
    graph_credential, msx_credential = _credentials(authorization, x_msx_token)
    settings = get_settings()

    start = as_utc(request.start)
    end = as_utc(request.end) if request.end else utcnow()
    if start >= end:
        raise HTTPException(status_code=422, detail="Scan window start must be before end")

    config = ScanConfig(
        window=ScanWindow(start=start, end=end),
        sources=request.sources,
        keywords=request.keywords or settings.default_keywords,
        incremental=request.incremental,
        name=request.name,
        scan_type=ScanType.INCREMENTAL if request.incremental else ScanType.MANUAL,
    )
    detector = detector_module.build_detector(graph_credential, msx_credential)
    outcome = await detector.scan(config)
    return await scan_store.record(outcome)


@router.get("/scans", tags=["Scans"], response_model=list[ScanSession])
async def list_scans(limit: int = Query(default=20, ge=1, le=100)):
    return scan_store.list_sessions(limit)


@router.get("/scans/{scan_id}", tags=["Scans"], response_model=ScanSession)
async def get_scan(scan_id: str):
    scan = scan_store.get(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return scan


@router.delete("/scans/{scan_id}", tags=["Scans"])
async def delete_scan(scan_id: str):
    if not await scan_store.delete(scan_id):
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return {"deleted": scan_id}


@router.get("/scans/{scan_id}/export", tags=["Export"])
async def export_scan(
    scan_id: str,
    format: str = Query(default="csv", description="Export format: csv or xlsx"),
):
    """Download a scan's detected opportunities as CSV or Excel."""
    import csv
    import io
    from fastapi.responses import StreamingResponse

    scan = scan_store.get(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")

    rows = [export_row(opp) for opp in sorted(scan.opportunities, key=lambda o: -o.confidence)]
    filename = f"cosell-scan-{scan_id[:8]}"

    if format == "xlsx":
        import openpyxl
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Opportunities"
        ws.append(list(EXPORT_COLUMNS))
        for row in rows:
            ws.append([row.get(h) for h in EXPORT_COLUMNS])
        buf = io.BytesIO()
        wb.save(buf)
        buf.seek(0)
        return StreamingResponse(
            buf,
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": f"attachment; filename={filename}.xlsx"},
        )
    else:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=list(EXPORT_COLUMNS))
        writer.writeheader()
        writer.writerows(rows)
        buf.seek(0)
        return StreamingResponse(
            iter([buf.getvalue()]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}.csv"},
        )


# --- Review ---

@router.patch(
    "/opportunities/{opportunity_id}/review",
    tags=["Review"],
    response_model=DetectedOpportunity,
)
async def review_opportunity(opportunity_id: str, update: ReviewUpdate):
    """Confirm, reject or mark an opportunity as synced to MSX."""
    try:
        opp = await scan_store.review(opportunity_id, update)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if opp is None:
        raise HTTPException(status_code=404, detail=f"Opportunity {opportunity_id} not found")
    return opp


# --- Scan history ---

@router.get("/scan-history", tags=["Scan history"])
async def scan_history():
    """Last successful scan per source, plus scheduler state."""
    from cosell.agents.scheduler import get_last_scan_id, get_scheduler

    history = await get_scan_history().get_history()
    scheduler = get_scheduler()

    next_run = None
    if scheduler and scheduler.running:
        job = scheduler.get_job("scheduled_scan")
        if job and job.next_run_time:
            next_run = job.next_run_time.isoformat()

    return {
        **history,
        "scheduler_running": scheduler.running if scheduler else False,
        "next_scheduled_scan_at": next_run,
        "last_scheduled_scan_id": get_last_scan_id(),
    }


@router.delete("/scan-history", tags=["Scan history"])
async def clear_scan_history():
    """Forget all scan markers; the next scan of each source covers its full window."""
    await get_scan_history().clear()
    return {"cleared": True}
