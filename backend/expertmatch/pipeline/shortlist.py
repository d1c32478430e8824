# backend/expertmatch/pipeline/shortlist.py
"""
Shortlist selection.

Entry:
    compute_shortlist(session, brief_id, pool, config, ...) -> envelope dict

Scores every active candidate, keeps those at or above min_score, orders them
by (score desc, populated factors desc, candidate id) and persists the whole
eligible list as a snapshot. The invitation manager reads rollover candidates
from that untruncated list; callers only see the top max_results.

A snapshot is reused when it is younger than cache_hours and was computed
with the same min_score, widen flag and config version.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from ..core.errors import InputError, NotFoundError
from ..core.utils import iso
from ..db import crud
from ..db.models import ShortlistSnapshot
from .features import extract_signals
from .gateways import CandidatePool
from .score import normalize_weights, score_candidate
from .state import BriefSignals, BriefStatus, CandidateData, ConfigSnapshot, MatchResult

EMPTY_MESSAGE = "No matches yet. Try widening the search or send the brief for manual review."
EMPTY_SUGGESTIONS = ["widen_search", "manual_review"]


def rank_key(result: MatchResult):
    return (-result["score"], -result["populated_factors"], result["candidate_id"])


def rank_candidates(
    signals: BriefSignals, candidates: Sequence[CandidateData], config: ConfigSnapshot
) -> List[MatchResult]:
    """Score and order everyone; no filtering."""
    results = [score_candidate(signals, c, config) for c in candidates]
    results.sort(key=rank_key)
    return results


def _resolve_params(config: ConfigSnapshot, min_score: Optional[float], max_results: Optional[int]):
    settings = config.get("settings") or {}
    ms = settings.get("min_score", 0.65) if min_score is None else min_score
    mr = settings.get("max_results", 5) if max_results is None else max_results
    if isinstance(ms, bool) or not isinstance(ms, (int, float)) or not (0.0 <= float(ms) <= 1.0):
        raise InputError("min_score must be a number between 0 and 1")
    if isinstance(mr, bool) or not isinstance(mr, int) or mr < 1:
        raise InputError("max_results must be a positive integer")
    return float(ms), int(mr)


def _cache_usable(
    snap: Optional[ShortlistSnapshot],
    now: datetime,
    cache_hours: float,
    min_score: float,
    widen: bool,
    config_version: int,
) -> bool:
    if snap is None or cache_hours <= 0:
        return False
    return (
        snap.created_at >= now - timedelta(hours=cache_hours)
        and math.isclose(snap.min_score, min_score, abs_tol=1e-9)
        and bool(snap.widen) == bool(widen)
        and snap.config_version == config_version
    )


def _envelope(
    brief_id: str,
    snap: ShortlistSnapshot,
    eligible: List[MatchResult],
    max_results: int,
    config: ConfigSnapshot,
    cached: bool,
) -> Dict[str, Any]:
    top = eligible[:max_results]
    w = normalize_weights(config["weights"])
    return {
        "status": "ok",
        "brief_id": brief_id,
        "candidates": top,
        "total_eligible": len(eligible),
        "total_evaluated": snap.total_evaluated,
        "cached": cached,
        "computed_at": iso(snap.created_at),
        "snapshot_id": snap.id,
        "config_version": config["version"],
        "weights_used": {f: round(v, 4) for f, v in w.items()},
        "message": None if top else EMPTY_MESSAGE,
        "suggestions": [] if top else list(EMPTY_SUGGESTIONS),
    }


def compute_shortlist(
    session: Session,
    brief_id: str,
    pool: CandidatePool,
    config: ConfigSnapshot,
    *,
    now: datetime,
    min_score: Optional[float] = None,
    max_results: Optional[int] = None,
    widen: bool = False,
    force_recompute: bool = False,
) -> Dict[str, Any]:
    brief = crud.get_brief(session, brief_id, fresh=True)
    if brief is None:
        raise NotFoundError(f"brief {brief_id} not found")
    min_score, max_results = _resolve_params(config, min_score, max_results)
    cache_hours = float((config.get("settings") or {}).get("cache_hours", 24))

    snap = crud.latest_snapshot(session, brief_id)
    if not force_recompute and _cache_usable(snap, now, cache_hours, min_score, widen, config["version"]):
        eligible = [crud.record_to_result(r) for r in snap.results]
        logger.info("shortlist for {} served from snapshot {}", brief_id, snap.id)
        return _envelope(brief_id, snap, eligible, max_results, config, cached=True)

    signals = extract_signals(brief, config["tool_synonyms"], config["industry_synonyms"], widen=widen)
    candidates = pool.list_active_candidates()
    ranked = rank_candidates(signals, candidates, config)
    eligible = [r for r in ranked if r["score"] >= min_score]

    snap = crud.save_snapshot(
        session,
        brief_id,
        eligible,
        min_score=min_score,
        max_results=max_results,
        widen=widen,
        config_version=config["version"],
        total_evaluated=len(ranked),
        created_at=now,
    )
    crud.update_brief(session, brief_id, now=now, matched_at=now)
    if eligible:
        crud.advance_brief_status(session, brief_id, [BriefStatus.SUBMITTED.value], BriefStatus.MATCHED.value, now=now)
    crud.log_event(
        session,
        brief_id,
        "shortlist_computed",
        {
            "snapshot_id": snap.id,
            "evaluated": len(ranked),
            "eligible": len(eligible),
            "min_score": min_score,
            "widen": widen,
            "config_version": config["version"],
        },
        at=now,
    )
    logger.info("scored {} candidates for {}: {} eligible at >= {}", len(ranked), brief_id, len(eligible), min_score)
    return _envelope(brief_id, snap, eligible, max_results, config, cached=False)


__all__ = ["compute_shortlist", "rank_candidates", "rank_key", "EMPTY_MESSAGE", "EMPTY_SUGGESTIONS"]
