"""
APScheduler-based scheduled incremental scans.

Runs an incremental scan every SCHEDULED_SCAN_INTERVAL_HOURS hours against
one mailbox using app-only credentials. Disabled unless
SCHEDULED_SCAN_ENABLED is set. The scheduler is started inside the FastAPI
lifespan context manager and shares its event loop, so scans recorded here
use the same database engine as the API.
"""
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cosell.core.auth import GRAPH_APP_SCOPE, Credential, acquire_app_token
from cosell.core.config import get_settings
from cosell.models.schemas import ScanConfig, ScanType, ScanWindow, utcnow
from cosell.services.scan_sessions import ScanSessionStore

logger = logging.getLogger(__name__)

# Module-level scheduler instance, read by the scan-history endpoint
_scheduler: AsyncIOScheduler | None = None
_last_scan_id: str | None = None


def get_scheduler() -> AsyncIOScheduler | None:
    return _scheduler


def get_last_scan_id() -> str | None:
    return _last_scan_id


async def run_scheduled_scan(store: ScanSessionStore) -> None:
    """One unattended incremental scan; errors are logged, never raised into APScheduler."""
    global _last_scan_id
    from cosell.agents.detector import build_detector

    settings = get_settings()
    try:
        graph_token = await acquire_app_token(GRAPH_APP_SCOPE)
        msx_token = await acquire_app_token(f"{settings.msx_base_url.rstrip('/')}/.default")
        user_id = settings.scheduled_scan_user_id
        detector = build_detector(
            Credential(access_token=graph_token, user_id=user_id),
            Credential(access_token=msx_token, user_id=user_id),
        )

        now = utcnow()
        config = ScanConfig(
            window=ScanWindow(
                start=now - timedelta(days=settings.scheduled_scan_lookback_days),
                end=now,
            ),
            keywords=settings.default_keywords,
            incremental=True,
            name=f"Scheduled scan {now:%Y-%m-%d %H:%M}",
            scan_type=ScanType.SCHEDULED,
        )
        outcome = await detector.scan(config)
        scan = await store.record(outcome)
        _last_scan_id = scan.id
        logger.info(
            f"Scheduled scan complete: {scan.opportunities_detected} opportunities, "
            f"status={scan.status.value}"
        )
    except Exception as e:
        logger.error(f"Scheduled scan failed: {e}", exc_info=True)


def start_scheduler(store: ScanSessionStore) -> AsyncIOScheduler | None:
    """
    Create and start the scheduler if scheduled scans are configured.

    Must be called from within the running event loop (FastAPI lifespan).
    """
    global _scheduler
    settings = get_settings()
    if not settings.scheduled_scan_enabled:
        logger.info("Scheduled scans disabled (SCHEDULED_SCAN_ENABLED=false)")
        return None
    if not (settings.azure_tenant_id and settings.azure_client_id and settings.scheduled_scan_user_id):
        logger.warning(
            "Scheduled scans enabled but AZURE_TENANT_ID / AZURE_CLIENT_ID / "
            "SCHEDULED_SCAN_USER_ID are not all set; scheduler not started"
        )
        return None

    interval_hours = settings.scheduled_scan_interval_hours
    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        func=run_scheduled_scan,
        trigger=IntervalTrigger(hours=interval_hours),
        args=[store],
        id="scheduled_scan",
        name="Scheduled incremental scan",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=300,  # 5-minute grace window
    )
    _scheduler.start()
    logger.info(
        f"Scheduler started: incremental scan every {interval_hours}h "
        f"(next: {_scheduler.get_job('scheduled_scan').next_run_time})"
    )
    return _scheduler


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler (called in FastAPI lifespan shutdown)."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
