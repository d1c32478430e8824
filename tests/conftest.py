"""
Shared fixtures: in-memory SQLite, a fixed clock, a recording notifier and a
small candidate pool whose scores against BRIEF are known.

Against BRIEF (react + stripe, £3,000-£5,000, standard urgency) with the
default weights and synonyms the active pool ranks:
    alice (~0.89) > dave (~0.81) > gina (~0.79) > bob (~0.69) > erin (~0.59) > carol (~0.40)
frank is inactive and never scored.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from expertmatch.db import crud
from expertmatch.db.session import ensure_tables, make_engine, make_session_factory, session_scope
from expertmatch.pipeline.orchestrator import MatchingEngine

T0 = datetime(2025, 3, 3, 9, 0, 0)

BRIEF: Dict[str, Any] = {
    "goal": "Build a React storefront with Stripe payments",
    "context": "Existing catalogue, needs checkout and order emails.",
    "budget_range": "£3,000-£5,000",
    "timeline": "6 weeks",
    "urgency": "standard",
    "client_user_id": "client-1",
}

CANDIDATES: List[Dict[str, Any]] = [
    {
        "id": "alice", "display_name": "Alice",
        "skills": ["React", "Stripe"], "industries": ["ecommerce"],
        "price_band_min": 300000, "price_band_max": 450000, "availability_weekly_hours": 30,
        "pass_at_qa_rate": 0.9, "csat_score": 4.8, "on_time_rate": 0.95,
        "certifications": ["aws", "stripe partner"], "locales": ["en-GB"],
    },
    {
        "id": "bob", "display_name": "Bob",
        "tools": ["React", "Payment"],
        "price_band_min": 0, "price_band_max": 400000, "availability_weekly_hours": 25,
    },
    {
        "id": "carol", "display_name": "Carol",
        "skills": ["Python", "Data"], "industries": ["fintech"],
        "price_band_min": 500000, "price_band_max": 800000, "availability_weekly_hours": 35,
        "pass_at_qa_rate": 0.8, "csat_score": 4.0, "on_time_rate": 0.9,
    },
    {
        "id": "dave", "display_name": "Dave",
        "skills": ["React"], "tools": ["Stripe Connect"],
        "price_band_min": 350000, "price_band_max": 500000, "availability_weekly_hours": 45,
        "pass_at_qa_rate": 0.7, "csat_score": 4.0, "on_time_rate": 0.8,
        "certifications": ["scrum master"], "locales": ["en"],
    },
    {
        "id": "erin", "display_name": "Erin",
        "skills": ["React"],
        "price_band_min": 200000, "price_band_max": 350000, "availability_weekly_hours": 20,
        "pass_at_qa_rate": 0.85, "csat_score": 4.5, "on_time_rate": 0.9,
    },
    {
        "id": "frank", "display_name": "Frank", "is_active": False,
        "skills": ["React", "Stripe"], "price_band_min": 300000, "price_band_max": 500000,
    },
    {
        "id": "gina", "display_name": "Gina",
        "skills": ["React", "Stripe"], "availability_weekly_hours": 60,
        "pass_at_qa_rate": 0.95, "csat_score": 5.0, "on_time_rate": 1.0,
        "certifications": ["a", "b", "c"], "locales": ["fr"],
    },
]


class FixedClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Dict[str, Optional[str]]] = []

    def notify(self, user_id, type_, title, message, related_id=None) -> None:
        self.sent.append(
            {"user_id": user_id, "type": type_, "title": title, "message": message, "related_id": related_id}
        )

    def types_for(self, user_id: str) -> List[str]:
        return [n["type"] for n in self.sent if n["user_id"] == user_id]


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://", echo=False)
    ensure_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def seed_candidates(session_factory):
    def _seed(rows: Optional[List[Dict[str, Any]]] = None) -> None:
        with session_scope(session_factory) as s:
            for row in CANDIDATES if rows is None else rows:
                crud.upsert_candidate(s, row)

    return _seed


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(session_factory, clock, notifier):
    return MatchingEngine(
        session_factory,
        notifier=notifier,
        clock=clock,
        admin_user_id="admin-1",
        llm_factory=lambda: None,
    )


@pytest.fixture
def pool(seed_candidates):
    seed_candidates()


@pytest.fixture
def brief_id(engine, pool):
    res = engine.submit_brief(BRIEF)
    assert res["status"] == "ok"
    return res["brief_id"]
