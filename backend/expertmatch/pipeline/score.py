# backend/expertmatch/pipeline/score.py
"""
Candidate scoring.

Entry:
    score(signals, candidate, weights, tool_synonyms, industry_synonyms) -> {total, breakdown}
    score_candidate(signals, candidate, config) -> MatchResult   (adds reasons / flags)

One canonical factor list (state.FACTORS) and one weight source: the active
configuration snapshot, re-normalized here at read time.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from loguru import logger

from ..core.utils import clamp01, fold, uniq_preserve
from ..core.vocabulary import (
    GENERAL_SKILL,
    HEALTHY_HOURS_CEILING,
    OVERCOMMIT_HOURS,
    URGENCY_HOURS_FLOOR,
)
from .state import (
    DEFAULT_WEIGHTS,
    FACTORS,
    BriefSignals,
    CandidateData,
    ConfigSnapshot,
    MatchResult,
    ScoreOutcome,
    SynonymMap,
    WeightVector,
)
from .synonyms import build_alias_index

# neutral values used when there is nothing to score against
SKILLS_NEUTRAL = 0.6
DOMAIN_NEUTRAL = 0.5
OUTCOMES_NEUTRAL = 0.5
AVAILABILITY_NEUTRAL = 0.5
PRICE_NEUTRAL = 0.5
PRICE_NEAR_MISS = 0.1
LOCALE_NEUTRAL = 0.5

OUTCOME_BLEND = {"pass_at_qa_rate": 0.40, "csat": 0.35, "on_time_rate": 0.25}
DISPUTE_FLAG_RATE = 0.1
CERTS_FOR_FULL_VETTING = 3

MAX_REASONS = 3
MAX_FLAGS = 3


# ---------- weights ----------
def normalize_weights(weights: Optional[WeightVector]) -> WeightVector:
    """
    Restrict to canonical factors and scale so the values sum to 1.0.
    Missing factors count as 0. An all-zero vector falls back to DEFAULT_WEIGHTS.
    """
    raw = {f: max(0.0, float((weights or {}).get(f) or 0.0)) for f in FACTORS}
    total = sum(raw.values())
    if total <= 0:
        logger.warning("weight vector sums to zero; using default weights")
        raw = dict(DEFAULT_WEIGHTS)
        total = sum(raw.values())
    return {f: raw[f] / total for f in FACTORS}


# ---------- factor functions ----------
def _norm_all(terms: Sequence[str], index: Dict[str, str]) -> List[str]:
    return [fold(index.get(fold(t), t)) for t in terms or [] if fold(t)]


def _matched_requirements(
    required: Sequence[str], offered: Sequence[str], index: Dict[str, str], both_ways: bool = False
) -> List[str]:
    offered_n = _norm_all(offered, index)
    hits: List[str] = []
    for req in required:
        r = fold(index.get(fold(req), req))
        if any(r in o or (both_ways and o in r) for o in offered_n):
            hits.append(req)
    return hits


def skills_requirements(signals: BriefSignals) -> List[str]:
    reqs = list(signals.get("required_skills") or []) + list(signals.get("required_tools") or [])
    return uniq_preserve([r for r in reqs if fold(r) != GENERAL_SKILL])


def skills_score(signals: BriefSignals, candidate: CandidateData, index: Dict[str, str]) -> float:
    required = skills_requirements(signals)
    offered = list(candidate.get("skills") or []) + list(candidate.get("tools") or [])
    if not required or not offered:
        return SKILLS_NEUTRAL
    return clamp01(len(_matched_requirements(required, offered, index)) / len(required))


def domain_score(signals: BriefSignals, candidate: CandidateData, index: Dict[str, str]) -> float:
    required = signals.get("industries") or []
    offered = candidate.get("industries") or []
    if not required or not offered:
        return DOMAIN_NEUTRAL
    return clamp01(len(_matched_requirements(required, offered, index, both_ways=True)) / len(required))


def outcomes_score(candidate: CandidateData) -> float:
    parts: Dict[str, float] = {}
    if candidate.get("pass_at_qa_rate") is not None:
        parts["pass_at_qa_rate"] = clamp01(candidate["pass_at_qa_rate"])
    if candidate.get("csat_score") is not None:
        parts["csat"] = clamp01(float(candidate["csat_score"]) / 5.0)
    if candidate.get("on_time_rate") is not None:
        parts["on_time_rate"] = clamp01(candidate["on_time_rate"])
    if not parts:
        return OUTCOMES_NEUTRAL
    wsum = sum(OUTCOME_BLEND[k] for k in parts)
    return clamp01(sum(OUTCOME_BLEND[k] * v for k, v in parts.items()) / wsum)


def availability_score(weekly_hours: Optional[float], urgency: str = "standard") -> float:
    """
    Banded: full inside [floor, 40]h, where floor depends on urgency.
    Very low availability and overcommitment both score lower.
    """
    if weekly_hours is None:
        return AVAILABILITY_NEUTRAL
    hours = float(weekly_hours)
    floor = URGENCY_HOURS_FLOOR.get(urgency, URGENCY_HOURS_FLOOR["standard"])
    if floor <= hours <= HEALTHY_HOURS_CEILING:
        return 1.0
    if hours > OVERCOMMIT_HOURS:
        return 0.5
    if hours > HEALTHY_HOURS_CEILING:
        return 0.8
    if hours >= floor / 2.0:
        return 0.7
    return 0.3


def price_score(cand_min: Optional[int], cand_max: Optional[int], budget_min: int, budget_max: int) -> float:
    """
    Overlap of the candidate band and the budget band, normalized by the
    smaller range. Disjoint bands score PRICE_NEAR_MISS, not zero.
    """
    if cand_min is None and cand_max is None:
        return PRICE_NEUTRAL
    lo_c = cand_min if cand_min is not None else cand_max
    hi_c = cand_max if cand_max is not None else cand_min
    lo_c, hi_c = min(lo_c, hi_c), max(lo_c, hi_c)
    lo_b, hi_b = min(budget_min, budget_max), max(budget_min, budget_max)

    overlap_lo = max(lo_c, lo_b)
    overlap_hi = min(hi_c, hi_b)
    if overlap_lo > overlap_hi:
        return PRICE_NEAR_MISS

    denom = min(hi_c - lo_c, hi_b - lo_b)
    if denom <= 0:
        return 1.0
    # touching bands never score below a near miss
    return max(PRICE_NEAR_MISS, clamp01((overlap_hi - overlap_lo) / denom))


def _locale_overlap(candidate_locales: Sequence[str], preferred: Sequence[str]) -> bool:
    cand = [fold(c) for c in candidate_locales if fold(c)]
    for p in (fold(x) for x in preferred):
        if not p:
            continue
        for c in cand:
            # "en" matches "en-gb" and the other way round
            if c == p or c.startswith(p + "-") or p.startswith(c + "-"):
                return True
    return False


def locale_score(candidate_locales: Sequence[str], preferred: Sequence[str]) -> float:
    if not candidate_locales:
        return LOCALE_NEUTRAL
    if not preferred:
        return 0.8
    return 1.0 if _locale_overlap(candidate_locales, preferred) else 0.3


def vetting_score(certifications: Sequence[str]) -> float:
    return clamp01(len(uniq_preserve(certifications)) / float(CERTS_FOR_FULL_VETTING))


# ---------- main entry ----------
def _preferred_locales(signals: BriefSignals, settings: Optional[Dict]) -> List[str]:
    return list(signals.get("preferred_locales") or (settings or {}).get("preferred_locales") or [])


def score(
    signals: BriefSignals,
    candidate: CandidateData,
    weights: Optional[WeightVector],
    tool_synonyms: Optional[SynonymMap] = None,
    industry_synonyms: Optional[SynonymMap] = None,
    settings: Optional[Dict] = None,
) -> ScoreOutcome:
    tool_index = build_alias_index(tool_synonyms)
    industry_index = build_alias_index(industry_synonyms)
    budget = signals["budget_range"]

    breakdown = {
        "skills": skills_score(signals, candidate, tool_index),
        "domain": domain_score(signals, candidate, industry_index),
        "outcomes": outcomes_score(candidate),
        "availability": availability_score(candidate.get("availability_weekly_hours"), signals.get("urgency", "standard")),
        "price": price_score(candidate.get("price_band_min"), candidate.get("price_band_max"), budget["min"], budget["max"]),
        "locale": locale_score(candidate.get("locales") or [], _preferred_locales(signals, settings)),
        "vetting": vetting_score(candidate.get("certifications") or []),
    }
    breakdown = {f: round(clamp01(breakdown[f]), 4) for f in FACTORS}

    w = normalize_weights(weights)
    total = sum(w[f] * breakdown[f] for f in FACTORS)
    return {"total": round(clamp01(total), 4), "breakdown": breakdown}


def populated_factor_count(candidate: CandidateData) -> int:
    """How much of the profile is filled in; used to break score ties."""
    checks = [
        bool(candidate.get("skills") or candidate.get("tools")),
        bool(candidate.get("industries")),
        any(candidate.get(k) is not None for k in ("pass_at_qa_rate", "csat_score", "on_time_rate")),
        candidate.get("availability_weekly_hours") is not None,
        candidate.get("price_band_min") is not None or candidate.get("price_band_max") is not None,
        bool(candidate.get("locales")),
        bool(candidate.get("certifications")),
    ]
    return sum(1 for c in checks if c)


def score_candidate(signals: BriefSignals, candidate: CandidateData, config: ConfigSnapshot) -> MatchResult:
    outcome = score(
        signals,
        candidate,
        config["weights"],
        config["tool_synonyms"],
        config["industry_synonyms"],
        config.get("settings"),
    )
    bd = outcome["breakdown"]
    tool_index = build_alias_index(config["tool_synonyms"])
    industry_index = build_alias_index(config["industry_synonyms"])
    required = skills_requirements(signals)
    offered = list(candidate.get("skills") or []) + list(candidate.get("tools") or [])
    matched = _matched_requirements(required, offered, tool_index) if offered else []
    budget = signals["budget_range"]

    # ---------- reasons ----------
    reasons: List[str] = []
    if required and matched and bd["skills"] > 0.5:
        reasons.append(f"Skills/tools: {', '.join(matched[:3])}")
    if signals.get("industries") and bd["domain"] > 0.5:
        hits = _matched_requirements(signals["industries"], candidate.get("industries") or [], industry_index, both_ways=True)
        if hits:
            reasons.append(f"Domain fit: {', '.join(hits[:2])}")
    if bd["outcomes"] >= 0.8:
        reasons.append(f"Strong track record ({int(round(100 * bd['outcomes']))}%)")
    if bd["price"] >= 0.8:
        reasons.append("Budget fit")
    if bd["availability"] >= 1.0:
        reasons.append("Availability OK")
    certs = uniq_preserve(candidate.get("certifications") or [])
    if certs:
        reasons.append(f"{len(certs)} verified cert{'s' if len(certs) > 1 else ''}")

    # ---------- flags ----------
    flags: List[str] = []
    if required and offered and bd["skills"] < 0.3:
        missing = [r for r in required if r not in matched]
        flags.append(f"Missing: {', '.join(missing[:2])}")
    if bd["price"] <= 0.1:
        cmin = candidate.get("price_band_min")
        flags.append("Budget band misaligned" + (" (above budget)" if cmin is not None and cmin > budget["max"] else ""))
    hours = candidate.get("availability_weekly_hours")
    if hours is not None and hours > OVERCOMMIT_HOURS:
        flags.append(f"Possible overcommitment ({hours}h/week)")
    elif hours is not None and bd["availability"] <= 0.3:
        flags.append(f"Limited availability ({hours}h/week)")
    if (candidate.get("dispute_rate") or 0.0) > DISPUTE_FLAG_RATE:
        flags.append("Dispute history")
    if all(candidate.get(k) is None for k in ("pass_at_qa_rate", "csat_score", "on_time_rate")):
        flags.append("No outcome history")

    return {
        "candidate_id": str(candidate.get("id")),
        "score": outcome["total"],
        "breakdown": bd,
        "reasons": reasons[:MAX_REASONS],
        "flags": flags[:MAX_FLAGS],
        "populated_factors": populated_factor_count(candidate),
    }


__all__ = [
    "normalize_weights",
    "skills_requirements",
    "skills_score", "domain_score", "outcomes_score", "availability_score",
    "price_score", "locale_score", "vetting_score",
    "score", "score_candidate", "populated_factor_count",
    "SKILLS_NEUTRAL", "DOMAIN_NEUTRAL", "OUTCOMES_NEUTRAL", "PRICE_NEAR_MISS",
]
