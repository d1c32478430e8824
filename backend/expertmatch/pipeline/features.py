# backend/expertmatch/pipeline/features.py
"""
Brief feature extraction.

Entry:
    extract_signals(brief, tool_synonyms, industry_synonyms, widen=False) -> BriefSignals

Skills/tools/industries come from fixed vocabularies matched as
case-insensitive substrings of goal + context + constraints (plus any explicit
tools/industries lists on the brief). Budget text becomes a pence range.
Everything is a pure function of its inputs, so widening twice equals once.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import InputError
from ..core.utils import fold, uniq_preserve
from ..core.vocabulary import (
    DEFAULT_URGENCY,
    GENERAL_SKILL,
    URGENCY_CLASSES,
    vocabulary_for,
)
from .state import UNBOUNDED_BUDGET, BriefSignals, BudgetRange, SynonymMap
from .synonyms import normalize_terms

TEXT_FIELDS = ("goal", "context", "constraints", "budget_range", "timeline", "style")
LIST_FIELDS = ("tools", "industries", "preferred_locales")

# "3,000" / "4000.50" / "5k"
_AMOUNT_RE = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*(k\b)?", re.I)

BUDGET_SINGLE_BAND = 0.20


# ---------- validation ----------
def validate_brief_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Check a brief submission and return the cleaned field dict.
    Raises InputError with a message naming the offending field.
    """
    if not isinstance(payload, Mapping):
        raise InputError("brief payload must be an object")

    goal = payload.get("goal")
    if not isinstance(goal, str) or not goal.strip():
        raise InputError("goal is required")

    clean: Dict[str, Any] = {"goal": goal.strip()}
    for field in TEXT_FIELDS[1:]:
        value = payload.get(field)
        if value is None:
            clean[field] = None
        elif isinstance(value, str):
            clean[field] = value.strip() or None
        else:
            raise InputError(f"{field} must be a string")

    for field in LIST_FIELDS:
        value = payload.get(field) or []
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise InputError(f"{field} must be a list of strings")
        clean[field] = uniq_preserve(value)

    urgency = payload.get("urgency")
    if urgency is None or (isinstance(urgency, str) and not urgency.strip()):
        clean["urgency"] = DEFAULT_URGENCY
    elif isinstance(urgency, str) and fold(urgency) in URGENCY_CLASSES:
        clean["urgency"] = fold(urgency)
    else:
        raise InputError(f"urgency must be one of {', '.join(URGENCY_CLASSES)}")

    client = payload.get("client_user_id")
    clean["client_user_id"] = str(client) if client else None
    return clean


# ---------- parsing ----------
def parse_budget_range(text: Optional[str]) -> BudgetRange:
    """
    Budget text -> {min, max} in pence.
    Two or more numbers: smallest/largest. One number: +/-20% band.
    None: unconstrained.
    """
    amounts: List[float] = []
    for number, k_suffix in _AMOUNT_RE.findall(text or ""):
        try:
            value = float(number.replace(",", ""))
        except ValueError:
            continue
        if k_suffix:
            value *= 1000
        amounts.append(value)

    if not amounts:
        return {"min": 0, "max": UNBOUNDED_BUDGET}

    pence = [int(round(a * 100)) for a in amounts]
    if len(pence) == 1:
        centre = pence[0]
        return {
            "min": int(round(centre * (1 - BUDGET_SINGLE_BAND))),
            "max": int(round(centre * (1 + BUDGET_SINGLE_BAND))),
        }
    return {"min": min(pence), "max": max(pence)}


def parse_urgency(value: Optional[str]) -> str:
    u = fold(value)
    return u if u in URGENCY_CLASSES else DEFAULT_URGENCY


def _keyword_hits(text: str, vocabulary: List[str]) -> List[str]:
    haystack = text.lower()
    return [term for term in vocabulary if term.lower() in haystack]


def _field(brief: Any, name: str) -> Any:
    if isinstance(brief, Mapping):
        return brief.get(name)
    return getattr(brief, name, None)


# ---------- extraction ----------
def extract_signals(
    brief: Any,
    tool_synonyms: Optional[SynonymMap] = None,
    industry_synonyms: Optional[SynonymMap] = None,
    widen: bool = False,
) -> BriefSignals:
    """
    `brief` may be a mapping or an ORM Brief; only the structured fields are read.
    """
    text = " ".join(
        str(_field(brief, f) or "") for f in ("goal", "context", "constraints")
    )

    skills = _keyword_hits(text, vocabulary_for("skills", widen=widen))
    skills = uniq_preserve(normalize_terms(skills, tool_synonyms))
    if not skills:
        skills = [GENERAL_SKILL]

    tools = list(_field(brief, "tools") or []) + _keyword_hits(text, vocabulary_for("tools"))
    tools = uniq_preserve(normalize_terms(tools, tool_synonyms))

    industries = list(_field(brief, "industries") or []) + _keyword_hits(text, vocabulary_for("industries"))
    industries = uniq_preserve(normalize_terms(industries, industry_synonyms))

    return {
        "required_skills": skills,
        "required_tools": tools,
        "industries": industries,
        "budget_range": parse_budget_range(_field(brief, "budget_range")),
        "urgency": parse_urgency(_field(brief, "urgency")),
        "preferred_locales": uniq_preserve(_field(brief, "preferred_locales") or []),
    }


__all__ = [
    "validate_brief_payload",
    "parse_budget_range",
    "parse_urgency",
    "extract_signals",
    "BUDGET_SINGLE_BAND",
]
