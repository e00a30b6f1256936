"""CoSell Intel - FastAPI Application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cosell.agents.scheduler import start_scheduler, stop_scheduler
from cosell.api.routes import router, scan_store
from cosell.core.config import get_settings
from cosell.core.database import close_db, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialise DB first, then load persisted scans
    db_ready = await init_db()
    if db_ready:
        loaded = await scan_store.load()
        if loaded:
            logger.info(f"Loaded {loaded} scan sessions from DB")

    start_scheduler(scan_store)
    yield
    # Shutdown
    stop_scheduler()
    await close_db()


app = FastAPI(
    title="CoSell Intel API",
    description=(
        "Detects partner co-sell opportunities in Microsoft 365 communications "
        "and cross-validates them against MSX.\n\n"
        "**Sources**: Outlook email, Teams chats, Teams meeting transcripts (Microsoft Graph).\n\n"
        "**Pipeline**: keyword filter, Claude entity and BANT extraction, confidence scoring, "
        "MSX opportunity and partner referral lookup.\n\n"
        "**Endpoints**:\n"
        "- `/api/v1/scans`: Run and browse scans\n"
        "- `/api/v1/opportunities`: Review detected opportunities\n"
        "- `/api/v1/scans/{id}/export`: CSV / Excel download\n"
        "- `/api/v1/scan-history`: Incremental scan markers and scheduler state\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scans", "description": "Run a scan and browse recorded scan sessions"},
        {"name": "Review", "description": "Reviewer decisions on detected opportunities"},
        {"name": "Scan history", "description": "Per-source incremental scan markers"},
        {"name": "Export", "description": "CSV and Excel export of a scan's opportunities"},
    ],
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    from cosell.core.database import _session_factory, db_enabled
    return {
        "status": "healthy",
        "anthropic_configured": bool(settings.anthropic_api_key),
        "msx_configured": bool(settings.msx_base_url),
        "fabric_configured": bool(settings.fabric_database_url),
        "db_connected": db_enabled() and _session_factory is not None,
    }
