"""Data models for CoSell Intel."""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so windows and history compare cleanly."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CommunicationType(str, Enum):
    EMAIL = "email"
    CHAT = "chat"
    MEETING = "meeting"


class OpportunityStatus(str, Enum):
    NEW = "new"
    REVIEW = "review"
    CONFIRMED = "confirmed"
    SYNCED = "synced"
    REJECTED = "rejected"


class CRMAction(str, Enum):
    """What the salesperson should do in MSX for a detected opportunity."""
    CREATE = "create"                  # no open opportunity for the customer
    LINK = "link"                      # open opportunity exists, partner not on it
    ALREADY_LINKED = "already_linked"  # partner referral already on the opportunity


class SolutionArea(str, Enum):
    AZURE_MIGRATION = "azure-migration"
    MODERN_WORKPLACE = "modern-workplace"
    SECURITY = "security"
    DATA_AI = "data-ai"
    APP_MODERNIZATION = "app-modernization"
    INFRASTRUCTURE = "infrastructure"


class EntityKind(str, Enum):
    PARTNER = "partner"
    CUSTOMER = "customer"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ScanType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    INCREMENTAL = "incremental"


class ScanStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"  # at least one source failed to fetch


class Communication(BaseModel):
    """One email, chat message or meeting transcript, normalized."""
    id: str = Field(min_length=1)
    type: CommunicationType
    subject: str = ""
    sender: str = ""
    occurred_at: datetime
    preview: str = ""
    content: str = ""
    participants: list[str] = Field(default_factory=list)


class Entity(BaseModel):
    """A partner or customer named in a communication."""
    name: str
    kind: EntityKind
    confidence: float = Field(ge=0, le=1)
    partner_network_id: Optional[str] = None
    crm_account_id: Optional[str] = None


# ---------------------------------------------------------------------------
# BANT
# ---------------------------------------------------------------------------

class Budget(BaseModel):
    amount: Optional[float] = None
    currency: str = "USD"
    amount_usd: Optional[float] = None
    confidence: float = Field(ge=0, le=1)


class Contact(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    role: Optional[str] = None


class Authority(BaseModel):
    customer_contact: Optional[Contact] = None
    partner_contact: Optional[Contact] = None
    confidence: float = Field(ge=0, le=1)


class Need(BaseModel):
    description: str = ""
    solution_area: Optional[SolutionArea] = None
    products: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)


class Timeline(BaseModel):
    estimated_close_date: Optional[date] = None
    timeframe: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    confidence: float = Field(ge=0, le=1)


class BantFacets(BaseModel):
    """The four qualification facets; any of them may be absent."""
    budget: Optional[Budget] = None
    authority: Optional[Authority] = None
    need: Optional[Need] = None
    timeline: Optional[Timeline] = None


class BantScore(BaseModel):
    score: int = Field(ge=0, le=100)
    missing_elements: list[str] = Field(default_factory=list)


class Bant(BantFacets):
    """Facets plus the derived completeness score."""
    score: int = Field(default=0, ge=0, le=100)
    missing_elements: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _opportunity_id() -> str:
    return f"opp-{uuid.uuid4().hex[:12]}"


class DetectedOpportunity(BaseModel):
    """A co-sell signal found in one communication."""
    id: str = Field(default_factory=_opportunity_id)
    communication: Communication
    partner: Optional[Entity] = None
    customer: Optional[Entity] = None
    solution_area: Optional[SolutionArea] = None
    summary: str = ""
    matched_keywords: list[str] = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    status: OpportunityStatus = OpportunityStatus.NEW
    crm_action: CRMAction = CRMAction.CREATE
    existing_opportunity_id: Optional[str] = None
    existing_opportunity_name: Optional[str] = None
    existing_referral_id: Optional[str] = None
    bant: Optional[Bant] = None
    review_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ScanWindow(BaseModel):
    start: datetime
    end: datetime


class ScanConfig(BaseModel):
    """What to scan: time window, sources and keywords."""
    window: ScanWindow
    sources: list[CommunicationType] = Field(default_factory=lambda: list(CommunicationType), min_length=1)
    keywords: list[str] = Field(min_length=1)
    incremental: bool = True
    name: Optional[str] = None
    scan_type: ScanType = ScanType.MANUAL


class ConfidenceCounts(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class ScanOutcome(BaseModel):
    """Result of one detector run, including what had to be skipped."""
    config: ScanConfig
    opportunities: list[DetectedOpportunity] = Field(default_factory=list)
    counts_by_confidence: ConfidenceCounts = Field(default_factory=ConfidenceCounts)
    communications_scanned: int = 0
    keyword_matches: int = 0
    malformed_skipped: int = 0
    extraction_degraded: int = 0
    failed_sources: dict[str, str] = Field(default_factory=dict)
    fetch_windows: dict[str, ScanWindow] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def status(self) -> ScanStatus:
        return ScanStatus.PARTIAL if self.failed_sources else ScanStatus.COMPLETED


class ScanSession(BaseModel):
    """A recorded scan: configuration, counts and the opportunity batch."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    scan_type: ScanType = ScanType.MANUAL
    window: ScanWindow
    sources: list[CommunicationType]
    keywords: list[str]
    communications_scanned: int = 0
    opportunities_detected: int = 0
    counts_by_confidence: ConfidenceCounts = Field(default_factory=ConfidenceCounts)
    failed_sources: dict[str, str] = Field(default_factory=dict)
    status: ScanStatus = ScanStatus.COMPLETED
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    opportunities: list[DetectedOpportunity] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# CRM
# ---------------------------------------------------------------------------

class CrmOpportunity(BaseModel):
    """An open MSX opportunity."""
    id: str
    name: str
    modified_at: datetime
    account_name: Optional[str] = None
    estimated_value: Optional[float] = None


class PartnerReferral(BaseModel):
    referral_id: str
    partner_name: str
    opportunity_id: Optional[str] = None


class EngagementCheck(BaseModel):
    """Transient per-run CRM decision for one (customer, partner) pair."""
    opportunity_exists: bool = False
    partner_already_linked: bool = False
    opportunity_id: Optional[str] = None
    opportunity_name: Optional[str] = None
    referral_id: Optional[str] = None

    @property
    def action(self) -> CRMAction:
        if not self.opportunity_exists:
            return CRMAction.CREATE
        if self.partner_already_linked:
            return CRMAction.ALREADY_LINKED
        return CRMAction.LINK


class ReviewUpdate(BaseModel):
    status: OpportunityStatus
    notes: Optional[str] = None
