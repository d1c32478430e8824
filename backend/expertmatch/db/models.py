# backend/expertmatch/db/models.py
"""
SQLAlchemy ORM models.

Matching core tables:
- Brief: the client request plus its lifecycle status, rollover counter and allocation lock
- CandidateProfile: read-only expert snapshot consumed by the scorer
- MatchingConfigVersion: versioned admin weights/synonyms/settings (one active row)
- ShortlistSnapshot / MatchResultRecord: the full ordered scoring output of one run
- Invitation: one (brief, candidate) pair, unique per pair

Collaborator tables written by the default gateways:
- DraftQuote, Project, Notification, BriefEvent
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.utils import now_utc
from .session import Base


def new_id() -> str:
    return str(uuid.uuid4())


class Brief(Base):
    __tablename__ = "briefs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    client_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # structured fields (immutable once submitted)
    goal: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    constraints: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    budget_range: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    timeline: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    urgency: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    style: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tools: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    industries: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    preferred_locales: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # lifecycle
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="submitted", index=True)
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rollover_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_rollover_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    allocated_candidate_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    def __repr__(self) -> str:
        return f"<Brief id={self.id} status={self.status} rollovers={self.rollover_count}>"


class CandidateProfile(Base):
    __tablename__ = "candidate_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    skills: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    tools: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    industries: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    certifications: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    locales: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # pence
    price_band_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    price_band_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    availability_weekly_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # outcome-history aggregate
    pass_at_qa_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    csat_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    on_time_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dispute_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)


class MatchingConfigVersion(Base):
    __tablename__ = "matching_config_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    weights: Mapped[Dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    tool_synonyms: Mapped[Dict[str, List[str]]] = mapped_column(JSON, nullable=False, default=dict)
    industry_synonyms: Mapped[Dict[str, List[str]]] = mapped_column(JSON, nullable=False, default=dict)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)

    def __repr__(self) -> str:
        return f"<MatchingConfigVersion v{self.version} active={self.is_active}>"


class ShortlistSnapshot(Base):
    __tablename__ = "shortlist_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brief_id: Mapped[str] = mapped_column(ForeignKey("briefs.id"), nullable=False, index=True)
    min_score: Mapped[float] = mapped_column(Float, nullable=False)
    max_results: Mapped[int] = mapped_column(Integer, nullable=False)
    widen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    config_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_evaluated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, index=True)

    results: Mapped[List["MatchResultRecord"]] = relationship(
        back_populates="snapshot",
        order_by="MatchResultRecord.rank",
        cascade="all, delete-orphan",
    )


class MatchResultRecord(Base):
    __tablename__ = "match_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(ForeignKey("shortlist_snapshots.id"), nullable=False, index=True)
    brief_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    candidate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    breakdown: Mapped[Dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    reasons: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    flags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    populated_factors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    snapshot: Mapped[ShortlistSnapshot] = relationship(back_populates="results")


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        UniqueConstraint("brief_id", "candidate_id", name="uq_invitation_brief_candidate"),
        Index("ix_invitations_status_expires", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    brief_id: Mapped[str] = mapped_column(ForeignKey("briefs.id"), nullable=False, index=True)
    candidate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="sent")
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="shortlist")
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    score_at_invite: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    decline_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Invitation id={self.id} brief={self.brief_id} candidate={self.candidate_id} status={self.status}>"


class DraftQuote(Base):
    __tablename__ = "draft_quotes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    brief_id: Mapped[str] = mapped_column(ForeignKey("briefs.id"), nullable=False, index=True)
    candidate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invitation_id: Mapped[str] = mapped_column(ForeignKey("invitations.id"), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    total_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validity_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    brief_id: Mapped[str] = mapped_column(ForeignKey("briefs.id"), nullable=False, unique=True)
    candidate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)


class BriefEvent(Base):
    __tablename__ = "brief_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brief_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)
