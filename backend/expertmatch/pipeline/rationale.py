# backend/expertmatch/pipeline/rationale.py
"""
Human-readable rationale for a shortlist.

generate_rationale(brief, results, profiles, llm=None) -> {
    overall_rationale, candidate_analysis: [{candidate_id, strengths, risks}], source
}

Uses the Gemini chat model when one is available; any LLM or parse failure
falls back to a deterministic summary built from each result's reasons/flags.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from langchain_core.prompts import ChatPromptTemplate
from loguru import logger

from ..core.prompts import PROMPTS
from ..core.utils import clip, json_loose
from .state import CandidateData, MatchResult

FALLBACK_OVERALL = (
    "These candidates were selected by algorithmic matching on skills, domain experience, "
    "track record, availability and budget fit. Manual review is recommended before the final selection."
)
EMPTY_OVERALL = "No candidates met the minimum score for this brief. Consider widening the search or a manual review."


def _field(brief: Any, name: str) -> Any:
    if isinstance(brief, Mapping):
        return brief.get(name)
    return getattr(brief, name, None)


def _pct(x: Optional[float]) -> str:
    return f"{int(round(100 * float(x or 0.0)))}%"


def _candidate_line(i: int, r: MatchResult, profile: Optional[CandidateData]) -> str:
    p = profile or {}
    bd = r["breakdown"]
    band = ""
    if p.get("price_band_min") is not None or p.get("price_band_max") is not None:
        band = f"{(p.get('price_band_min') or 0) / 100:.0f}-{(p.get('price_band_max') or 0) / 100:.0f} GBP"
    hours = p.get("availability_weekly_hours")
    skills = ", ".join((list(p.get("skills") or []) + list(p.get("tools") or []))[:5])
    return (
        f"{i}. candidate_id={r['candidate_id']} (score {r['score']:.2f})\n"
        f"   - Skills match: {_pct(bd.get('skills'))}; domain fit: {_pct(bd.get('domain'))}; track record: {_pct(bd.get('outcomes'))}\n"
        f"   - Availability: {hours if hours is not None else 'unknown'} h/week; price band: {band or 'unknown'}\n"
        f"   - Key skills: {skills or 'none listed'}\n"
        f"   - Reasons: {'; '.join(r['reasons']) or '-'}; flags: {'; '.join(r['flags']) or '-'}"
    )


def fallback_rationale(results: Sequence[MatchResult]) -> Dict[str, Any]:
    analysis = []
    for r in results:
        bd = r["breakdown"]
        strengths = list(r["reasons"]) or [f"{_pct(bd.get('skills'))} skills match", f"{_pct(bd.get('domain'))} domain fit"]
        risks = list(r["flags"]) or ["Manual review recommended"]
        analysis.append({"candidate_id": r["candidate_id"], "strengths": strengths, "risks": risks})
    return {
        "overall_rationale": FALLBACK_OVERALL if results else EMPTY_OVERALL,
        "candidate_analysis": analysis,
        "source": "fallback",
    }


def _clean_list(xs: Any) -> List[str]:
    if not isinstance(xs, list):
        return []
    return [str(x).strip() for x in xs if str(x).strip()][:3]


def generate_rationale(
    brief: Any,
    results: Sequence[MatchResult],
    profiles: Mapping[str, CandidateData],
    llm: Optional[Any] = None,
) -> Dict[str, Any]:
    if not results or llm is None:
        return fallback_rationale(results)

    payload = {
        "goal": clip(_field(brief, "goal"), 600),
        "context": clip(_field(brief, "context"), 1200) or "-",
        "budget": _field(brief, "budget_range") or "not specified",
        "timeline": _field(brief, "timeline") or "not specified",
        "urgency": _field(brief, "urgency") or "standard",
        "candidates": "\n".join(
            _candidate_line(i, r, profiles.get(r["candidate_id"])) for i, r in enumerate(results, start=1)
        ),
    }
    try:
        chain = ChatPromptTemplate.from_template(PROMPTS["shortlist_rationale"]) | llm
        raw = chain.invoke(payload)
        obj = json_loose(getattr(raw, "content", str(raw)) or "{}")
    except Exception:
        logger.exception("LLM rationale failed; using fallback")
        return fallback_rationale(results)

    if not isinstance(obj, dict) or not str(obj.get("overall_rationale") or "").strip():
        logger.warning("LLM rationale had no overall_rationale; using fallback")
        return fallback_rationale(results)

    by_id: Dict[str, Dict[str, Any]] = {}
    for item in obj.get("candidate_analysis") or []:
        if isinstance(item, dict) and item.get("candidate_id"):
            by_id[str(item["candidate_id"])] = item

    base = {a["candidate_id"]: a for a in fallback_rationale(results)["candidate_analysis"]}
    analysis = []
    for r in results:
        item = by_id.get(r["candidate_id"], {})
        analysis.append({
            "candidate_id": r["candidate_id"],
            "strengths": _clean_list(item.get("strengths")) or base[r["candidate_id"]]["strengths"],
            "risks": _clean_list(item.get("risks")) or base[r["candidate_id"]]["risks"],
        })
    return {
        "overall_rationale": str(obj["overall_rationale"]).strip(),
        "candidate_analysis": analysis,
        "source": "llm",
    }


__all__ = ["generate_rationale", "fallback_rationale", "FALLBACK_OVERALL", "EMPTY_OVERALL"]
