# backend/expertmatch/pipeline/state.py
"""
Shared shapes for the matching pipeline:
- BriefSignals (feature extractor output)
- CandidateData (read-only candidate snapshot handed to the scorer)
- ConfigSnapshot (weights + synonyms + settings, injected into every run)
- MatchResult (one scored candidate)
- lifecycle enums for briefs and invitations

Everything here is plain data; no I/O.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

# ---------- scoring factors ----------
FACTORS: tuple = ("skills", "domain", "outcomes", "availability", "price", "locale", "vetting")

DEFAULT_WEIGHTS: Dict[str, float] = {
    "skills": 0.30,
    "domain": 0.15,
    "outcomes": 0.20,
    "availability": 0.12,
    "price": 0.13,
    "locale": 0.05,
    "vetting": 0.05,
}

# admin sliders go 0..100
MAX_WEIGHT = 100.0

# "no upper limit" budget, in pence; an int so it survives JSON round-trips
UNBOUNDED_BUDGET = 999_999_999_999

SynonymMap = Dict[str, List[str]]
WeightVector = Dict[str, float]


class BudgetRange(TypedDict):
    min: int
    max: int


class BriefSignals(TypedDict):
    required_skills: List[str]
    required_tools: List[str]
    industries: List[str]
    budget_range: BudgetRange
    urgency: str
    preferred_locales: List[str]


class CandidateData(TypedDict, total=False):
    id: str
    display_name: Optional[str]
    skills: List[str]
    tools: List[str]
    industries: List[str]
    certifications: List[str]
    locales: List[str]
    price_band_min: Optional[int]
    price_band_max: Optional[int]
    availability_weekly_hours: Optional[int]
    pass_at_qa_rate: Optional[float]
    csat_score: Optional[float]
    on_time_rate: Optional[float]
    dispute_rate: Optional[float]


class ConfigSnapshot(TypedDict):
    version: int
    weights: WeightVector
    tool_synonyms: SynonymMap
    industry_synonyms: SynonymMap
    settings: Dict[str, Any]


class ScoreOutcome(TypedDict):
    total: float
    breakdown: Dict[str, float]


class MatchResult(TypedDict):
    candidate_id: str
    score: float
    breakdown: Dict[str, float]
    reasons: List[str]
    flags: List[str]
    populated_factors: int


# ---------- lifecycle ----------
class BriefStatus(str, Enum):
    SUBMITTED = "submitted"
    MATCHED = "matched"
    INVITATIONS_SENT = "invitations_sent"
    PROJECT_CREATED = "project_created"
    NEEDS_MORE_EXPERTS = "needs_more_experts"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    ARCHIVED = "archived"


class InvitationStatus(str, Enum):
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


ACTIVE_INVITATION_STATUSES = (InvitationStatus.SENT.value, InvitationStatus.ACCEPTED.value)
ALREADY_ALLOCATED = "already allocated"


__all__ = [
    "FACTORS", "DEFAULT_WEIGHTS", "MAX_WEIGHT", "UNBOUNDED_BUDGET",
    "SynonymMap", "WeightVector", "BudgetRange", "BriefSignals", "CandidateData",
    "ConfigSnapshot", "ScoreOutcome", "MatchResult",
    "BriefStatus", "InvitationStatus", "ACTIVE_INVITATION_STATUSES", "ALREADY_ALLOCATED",
]
