# backend/expertmatch/core/vocabulary.py
"""
Fixed keyword vocabularies used by brief feature extraction.
Matching is plain case-insensitive substring search, not NLP.
"""

from __future__ import annotations

from typing import Dict, List, Tuple

SKILL_VOCABULARY: Tuple[str, ...] = (
    "react", "vue", "angular", "javascript", "typescript", "python", "java",
    "ui/ux", "design", "marketing", "seo", "content", "copywriting",
    "project management", "agile", "scrum", "analytics", "data",
    "automation", "crm", "hubspot", "salesforce", "stripe", "payment",
)

# product domain only; bare "make" is ordinary prose
TOOL_VOCABULARY: Tuple[str, ...] = (
    "n8n", "mcp", "openai", "anthropic", "claude", "gpt", "elevenlabs",
    "whisper", "pinecone", "langchain", "supabase", "airtable", "zapier",
    "make.com", "retool", "bubble",
)

INDUSTRY_VOCABULARY: Tuple[str, ...] = (
    "fintech", "healthcare", "education", "ecommerce", "saas",
    "consulting", "agency", "startup", "enterprise", "nonprofit",
)

# Broader terms unioned into the skills scan when a shortlist comes back too small.
WIDEN_VOCABULARY: Tuple[str, ...] = (
    "web", "website", "app", "mobile", "frontend", "backend", "api",
    "integration", "ai", "dashboard", "branding", "strategy", "research",
    "support",
)

GENERAL_SKILL = "general"

URGENCY_CLASSES: Tuple[str, ...] = ("urgent", "standard", "flexible")
DEFAULT_URGENCY = "standard"

# weekly hours below which availability stops being "healthy", per urgency class
URGENCY_HOURS_FLOOR: Dict[str, int] = {
    "urgent": 30,
    "standard": 20,
    "flexible": 10,
}

HEALTHY_HOURS_CEILING = 40
OVERCOMMIT_HOURS = 50

# seed synonym maps (canonical -> aliases) used until an admin saves a version
DEFAULT_TOOL_SYNONYMS: Dict[str, List[str]] = {
    "hubspot": ["hubspot ai"],
    "notion": ["notion ai"],
    "automation": ["zapier"],
    "openai": ["chatgpt"],
    "anthropic": ["claude"],
    "stripe": ["payment", "payments", "stripe connect"],
    "react": ["reactjs", "react.js"],
}

DEFAULT_INDUSTRY_SYNONYMS: Dict[str, List[str]] = {
    "construction": ["construction & trades"],
    "ecommerce": ["e-commerce"],
    "saas": ["software as a service"],
}


def vocabulary_for(kind: str, widen: bool = False) -> List[str]:
    if kind == "skills":
        terms = list(SKILL_VOCABULARY)
        if widen:
            terms += [t for t in WIDEN_VOCABULARY if t not in terms]
        return terms
    if kind == "tools":
        return list(TOOL_VOCABULARY)
    if kind == "industries":
        return list(INDUSTRY_VOCABULARY)
    raise KeyError(kind)


__all__ = [
    "SKILL_VOCABULARY", "TOOL_VOCABULARY", "INDUSTRY_VOCABULARY", "WIDEN_VOCABULARY",
    "GENERAL_SKILL", "URGENCY_CLASSES", "DEFAULT_URGENCY", "URGENCY_HOURS_FLOOR",
    "HEALTHY_HOURS_CEILING", "OVERCOMMIT_HOURS",
    "DEFAULT_TOOL_SYNONYMS", "DEFAULT_INDUSTRY_SYNONYMS", "vocabulary_for",
]
