"""SQLAlchemy ORM table definitions for CoSell Intel.

These are the persistent representations. The Pydantic models in schemas.py
remain the canonical runtime models; these classes are for DB I/O only.
"""
from datetime import datetime

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Integer, String, Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from cosell.core.database import Base


class ScanSessionRow(Base):
    __tablename__ = "scan_sessions"

    id = Column(String, primary_key=True)
    name = Column(String)
    scan_type = Column(String, default="manual")
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    sources = Column(JSONB, default=list)
    keywords = Column(JSONB, default=list)
    communications_scanned = Column(Integer, default=0)
    opportunities_detected = Column(Integer, default=0)
    high_confidence_count = Column(Integer, default=0)
    medium_confidence_count = Column(Integer, default=0)
    low_confidence_count = Column(Integer, default=0)
    failed_sources = Column(JSONB, default=dict)
    # completed | partial
    status = Column(String, default="completed")
    started_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    completed_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Float, default=0.0)


class DetectedOpportunityRow(Base):
    __tablename__ = "detected_opportunities"

    id = Column(String, primary_key=True)
    scan_id = Column(String, ForeignKey("scan_sessions.id", ondelete="CASCADE"), index=True)

    communication_id = Column(String, nullable=False)
    communication_type = Column(String, nullable=False)
    communication_subject = Column(String)
    communication_from = Column(String)
    communication_date = Column(DateTime(timezone=True))
    communication_preview = Column(Text)
    communication_content = Column(Text)
    participants = Column(JSONB, default=list)

    partner_name = Column(String)
    partner_confidence = Column(Float)
    customer_name = Column(String)
    customer_confidence = Column(Float)
    solution_area = Column(String)

    summary = Column(Text)
    keywords = Column(JSONB, default=list)
    confidence = Column(Float, nullable=False)

    # create | link | already_linked
    crm_action = Column(String, default="create")
    linked_opportunity_id = Column(String)
    linked_opportunity_name = Column(String)
    linked_referral_id = Column(String)

    bant = Column(JSONB)
    bant_score = Column(Integer)

    # pending → confirmed / rejected → synced
    review_status = Column(String, default="pending")
    review_notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)
