# backend/expertmatch/db/crud.py
"""
CRUD helpers for the matching core.
Usage (with context manager):
    from .session import session_scope
    with session_scope(factory) as s:
        brief = get_brief(s, brief_id)

Commit is always the caller's job (session_scope or FastAPI dependency).
State-changing helpers are written as conditional statements so two
concurrent writers cannot both win:
- insert_invitation_if_absent: INSERT ... ON CONFLICT DO NOTHING
- cas_invitation_status / cas_brief_*: UPDATE ... WHERE <expected state>
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..pipeline.state import ACTIVE_INVITATION_STATUSES, CandidateData, MatchResult
from .models import (
    Brief,
    BriefEvent,
    CandidateProfile,
    DraftQuote,
    Invitation,
    MatchResultRecord,
    ShortlistSnapshot,
    new_id,
)


# ----------------- Briefs -----------------

def create_brief(session: Session, fields: Dict[str, Any], created_at: Optional[datetime] = None) -> Brief:
    row = Brief(
        client_user_id=fields.get("client_user_id"),
        goal=fields["goal"],
        context=fields.get("context"),
        constraints=fields.get("constraints"),
        budget_range=fields.get("budget_range"),
        timeline=fields.get("timeline"),
        urgency=fields.get("urgency") or "standard",
        style=fields.get("style"),
        tools=list(fields.get("tools") or []),
        industries=list(fields.get("industries") or []),
        preferred_locales=list(fields.get("preferred_locales") or []),
        status="submitted",
    )
    if created_at is not None:
        row.created_at = created_at
        row.updated_at = created_at
    session.add(row)
    session.flush()
    return row


def get_brief(session: Session, brief_id: str, fresh: bool = False) -> Optional[Brief]:
    """`fresh` reloads from the database even if the row is already in the session."""
    return session.get(Brief, brief_id, populate_existing=fresh)


def list_pending_briefs(session: Session, created_after: datetime) -> Sequence[Brief]:
    q = (
        select(Brief)
        .where(Brief.status == "submitted", Brief.matched_at.is_(None), Brief.created_at >= created_after)
        .order_by(Brief.created_at)
    )
    return session.execute(q).scalars().all()


def update_brief(session: Session, brief_id: str, *, now: datetime, **values: Any) -> None:
    session.execute(
        update(Brief)
        .where(Brief.id == brief_id)
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )


def advance_brief_status(
    session: Session, brief_id: str, allowed_from: Iterable[str], status: str, *, now: datetime, **extra: Any
) -> bool:
    """Move the brief to `status` only if it is currently in one of `allowed_from`."""
    res = session.execute(
        update(Brief)
        .where(Brief.id == brief_id, Brief.status.in_(list(allowed_from)))
        .values(status=status, updated_at=now, **extra)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def cas_brief_rollover(session: Session, brief_id: str, seen_count: int, now: datetime) -> bool:
    """Claim the next rollover round; False if another sweep already claimed it."""
    res = session.execute(
        update(Brief)
        .where(
            Brief.id == brief_id,
            Brief.rollover_count == seen_count,
            Brief.allocated_candidate_id.is_(None),
        )
        .values(rollover_count=seen_count + 1, last_rollover_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def cas_brief_allocation(session: Session, brief_id: str, candidate_id: str, now: datetime) -> bool:
    """Take the allocation lock; False if the brief is already allocated."""
    res = session.execute(
        update(Brief)
        .where(Brief.id == brief_id, Brief.allocated_candidate_id.is_(None))
        .values(allocated_candidate_id=candidate_id, status="project_created", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# ----------------- Candidates -----------------

def candidate_to_data(row: CandidateProfile) -> CandidateData:
    return {
        "id": row.id,
        "display_name": row.display_name,
        "skills": list(row.skills or []),
        "tools": list(row.tools or []),
        "industries": list(row.industries or []),
        "certifications": list(row.certifications or []),
        "locales": list(row.locales or []),
        "price_band_min": row.price_band_min,
        "price_band_max": row.price_band_max,
        "availability_weekly_hours": row.availability_weekly_hours,
        "pass_at_qa_rate": row.pass_at_qa_rate,
        "csat_score": row.csat_score,
        "on_time_rate": row.on_time_rate,
        "dispute_rate": row.dispute_rate,
    }


def list_active_candidates(session: Session) -> List[CandidateData]:
    q = select(CandidateProfile).where(CandidateProfile.is_active.is_(True)).order_by(CandidateProfile.id)
    return [candidate_to_data(r) for r in session.execute(q).scalars().all()]


def known_candidate_ids(session: Session, ids: Iterable[str]) -> set[str]:
    ids = list(ids)
    if not ids:
        return set()
    q = select(CandidateProfile.id).where(CandidateProfile.id.in_(ids))
    return set(session.execute(q).scalars().all())


def get_candidates(session: Session, ids: Iterable[str]) -> Dict[str, CandidateData]:
    ids = list(ids)
    if not ids:
        return {}
    q = select(CandidateProfile).where(CandidateProfile.id.in_(ids))
    return {r.id: candidate_to_data(r) for r in session.execute(q).scalars().all()}


def upsert_candidate(session: Session, data: Dict[str, Any]) -> CandidateProfile:
    row = session.get(CandidateProfile, data["id"])
    if row is None:
        row = CandidateProfile(id=data["id"])
        session.add(row)
    for key, value in data.items():
        if key != "id" and hasattr(row, key):
            setattr(row, key, value)
    session.flush()
    return row


# ----------------- Snapshots -----------------

def save_snapshot(
    session: Session,
    brief_id: str,
    results: Iterable[MatchResult],
    *,
    min_score: float,
    max_results: int,
    widen: bool,
    config_version: int,
    total_evaluated: int,
    created_at: datetime,
) -> ShortlistSnapshot:
    snap = ShortlistSnapshot(
        brief_id=brief_id,
        min_score=min_score,
        max_results=max_results,
        widen=widen,
        config_version=config_version,
        total_evaluated=total_evaluated,
        created_at=created_at,
    )
    for rank, r in enumerate(results, start=1):
        snap.results.append(
            MatchResultRecord(
                brief_id=brief_id,
                candidate_id=r["candidate_id"],
                rank=rank,
                score=r["score"],
                breakdown=dict(r["breakdown"]),
                reasons=list(r["reasons"]),
                flags=list(r["flags"]),
                populated_factors=r["populated_factors"],
            )
        )
    session.add(snap)
    session.flush()
    return snap


def latest_snapshot(session: Session, brief_id: str) -> Optional[ShortlistSnapshot]:
    q = (
        select(ShortlistSnapshot)
        .where(ShortlistSnapshot.brief_id == brief_id)
        .order_by(desc(ShortlistSnapshot.created_at), desc(ShortlistSnapshot.id))
        .limit(1)
    )
    return session.execute(q).scalars().first()


def record_to_result(rec: MatchResultRecord) -> MatchResult:
    return {
        "candidate_id": rec.candidate_id,
        "score": rec.score,
        "breakdown": dict(rec.breakdown or {}),
        "reasons": list(rec.reasons or []),
        "flags": list(rec.flags or []),
        "populated_factors": rec.populated_factors,
    }


# ----------------- Invitations -----------------

def insert_invitation_if_absent(session: Session, values: Dict[str, Any]) -> Optional[str]:
    """
    Conditional insert guarded by UNIQUE(brief_id, candidate_id).
    Returns the new invitation id, or None when the pair already exists.
    """
    values = dict(values)
    values.setdefault("id", new_id())
    dialect = session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        stmt = (
            dialect_insert(Invitation)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["brief_id", "candidate_id"])
            .returning(Invitation.id)
        )
        return session.execute(stmt).scalar_one_or_none()

    try:
        with session.begin_nested():
            session.add(Invitation(**values))
    except IntegrityError:
        return None
    return values["id"]


def get_invitation(session: Session, invitation_id: str, fresh: bool = False) -> Optional[Invitation]:
    return session.get(Invitation, invitation_id, populate_existing=fresh)


def invitations_for_brief(session: Session, brief_id: str) -> Sequence[Invitation]:
    q = select(Invitation).where(Invitation.brief_id == brief_id).order_by(Invitation.sent_at, Invitation.id)
    return session.execute(q).scalars().all()


def invited_candidate_ids(session: Session, brief_id: str) -> set[str]:
    q = select(Invitation.candidate_id).where(Invitation.brief_id == brief_id)
    return set(session.execute(q).scalars().all())


def count_active_invitations(session: Session, brief_id: str) -> int:
    q = select(func.count(Invitation.id)).where(
        Invitation.brief_id == brief_id, Invitation.status.in_(ACTIVE_INVITATION_STATUSES)
    )
    return int(session.execute(q).scalar_one())


def stranded_brief_ids(session: Session) -> List[str]:
    """Briefs still marked invitations_sent that have no sent/accepted invitation left."""
    active = (
        select(Invitation.id)
        .where(Invitation.brief_id == Brief.id, Invitation.status.in_(ACTIVE_INVITATION_STATUSES))
        .exists()
    )
    q = (
        select(Brief.id)
        .where(Brief.status == "invitations_sent", Brief.allocated_candidate_id.is_(None), ~active)
        .order_by(Brief.id)
    )
    return list(session.execute(q).scalars().all())


def has_expired_invitation(session: Session, brief_id: str, round_: int) -> bool:
    q = select(Invitation.id).where(
        Invitation.brief_id == brief_id, Invitation.round == round_, Invitation.status == "expired"
    )
    return session.execute(q.limit(1)).first() is not None


def find_expired_candidates(session: Session, now: datetime) -> Sequence[Invitation]:
    q = (
        select(Invitation)
        .where(Invitation.status == "sent", Invitation.expires_at <= now)
        .order_by(Invitation.expires_at, Invitation.id)
    )
    return session.execute(q).scalars().all()


def cas_invitation_status(
    session: Session,
    invitation_id: str,
    expected: str,
    new_status: str,
    *,
    not_expired_at: Optional[datetime] = None,
    **extra: Any,
) -> bool:
    """
    Move one invitation from `expected` to `new_status`.
    `not_expired_at` additionally requires expires_at > that instant (responses).
    """
    conds = [Invitation.id == invitation_id, Invitation.status == expected]
    if not_expired_at is not None:
        conds.append(Invitation.expires_at > not_expired_at)
    res = session.execute(
        update(Invitation)
        .where(*conds)
        .values(status=new_status, **extra)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def decline_other_invitations(session: Session, brief_id: str, keep_invitation_id: str, reason: str, now: datetime) -> int:
    """Decline every other invitation on the brief, whatever its state; earlier responded_at is kept."""
    res = session.execute(
        update(Invitation)
        .where(Invitation.brief_id == brief_id, Invitation.id != keep_invitation_id)
        .values(status="declined", decline_reason=reason, responded_at=func.coalesce(Invitation.responded_at, now))
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)


def mark_invitation_viewed(session: Session, invitation_id: str, now: datetime) -> bool:
    res = session.execute(
        update(Invitation)
        .where(Invitation.id == invitation_id, Invitation.viewed_at.is_(None))
        .values(viewed_at=now)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


# ----------------- Quotes / events -----------------

def create_draft_quote(session: Session, invitation: Invitation, validity_until: datetime) -> DraftQuote:
    row = DraftQuote(
        brief_id=invitation.brief_id,
        candidate_id=invitation.candidate_id,
        invitation_id=invitation.id,
        status="draft",
        total_price=0,
        validity_until=validity_until,
    )
    session.add(row)
    session.flush()
    return row


def log_event(session: Session, brief_id: str, type_: str, payload: Optional[Dict[str, Any]] = None, at: Optional[datetime] = None) -> None:
    row = BriefEvent(brief_id=brief_id, type=type_, payload=dict(payload or {}))
    if at is not None:
        row.created_at = at
    session.add(row)


def events_for_brief(session: Session, brief_id: str) -> Sequence[BriefEvent]:
    q = select(BriefEvent).where(BriefEvent.brief_id == brief_id).order_by(BriefEvent.id)
    return session.execute(q).scalars().all()
